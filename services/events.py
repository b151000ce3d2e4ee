from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, List, Tuple, TypeVar

from core.logs import get_logger


logger = get_logger("events")

T = TypeVar("T")


@dataclass(frozen=True)
class StoreEvent:
    kind: str  # created / updated / deleted / replaced / reset / reassigned
    record_ids: Tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Notice:
    level: str  # info / success / error
    message: str


class EventEmitter(Generic[T]):
    """Per-owner listener registry; a failing listener never breaks the emitter."""

    def __init__(self) -> None:
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        if callback not in self._listeners:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def emit(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %r", listener, event)

    def __len__(self) -> int:
        return len(self._listeners)


__all__ = ["EventEmitter", "Notice", "StoreEvent"]
