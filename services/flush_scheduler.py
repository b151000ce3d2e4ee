"""When and how the pending queue is drained to the remote store.

State machine::

    IDLE --record()--> DIRTY --timer / hidden / sync now / terminating--> FLUSHING
    FLUSHING --all acked--> IDLE
    FLUSHING --some failed--> DIRTY_WITH_ERRORS --retry timer--> FLUSHING

Only one flush runs at a time (``is_flushing``); a trigger that arrives while
a flush is running is skipped and the queue is left for the next trigger.
Entries are sent concurrently and fail independently of each other.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from core.errors import MalformedResponseError, TransportError
from core.logs import get_logger
from core.settings import SYNC
from models.record import Record
from services.entity_store import EntityStore
from services.events import EventEmitter, Notice
from services.pending_queue import CREATE, DELETE, PendingMutation, PendingMutationQueue
from services.remote_client import RemoteSyncClient


logger = get_logger("flush")


class HostLifecycleSignal(str, Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"
    TERMINATING = "terminating"


class SchedulerState(str, Enum):
    IDLE = "idle"
    DIRTY = "dirty"
    FLUSHING = "flushing"
    DIRTY_WITH_ERRORS = "dirty-with-errors"


@dataclass
class FlushResult:
    sent: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.failed


def _next_delay(attempts: int, ceiling: float) -> float:
    return float(min(ceiling, 2 ** max(attempts, 0)))


class FlushScheduler:
    def __init__(
        self,
        queue: PendingMutationQueue,
        client: RemoteSyncClient,
        store: Optional[EntityStore] = None,
        *,
        debounce_sec: float = SYNC.debounce_sec,
        timeout_sec: float = SYNC.request_timeout_sec,
        max_backoff_sec: float = SYNC.max_backoff_sec,
        notices: Optional[EventEmitter[Notice]] = None,
        on_complete: Optional[Callable[[FlushResult], None]] = None,
    ):
        self.queue = queue
        self.client = client
        self.store = store
        self.debounce_sec = debounce_sec
        self.timeout_sec = timeout_sec
        self.max_backoff_sec = max_backoff_sec
        self.notices = notices or EventEmitter()
        self.on_complete = on_complete
        self.is_flushing = False
        self.last_result: Optional[FlushResult] = None
        self._had_errors = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> SchedulerState:
        if self.is_flushing:
            return SchedulerState.FLUSHING
        if not self.queue.has_pending():
            return SchedulerState.IDLE
        if self._had_errors:
            return SchedulerState.DIRTY_WITH_ERRORS
        return SchedulerState.DIRTY

    # ------------------------------------------------------------------
    # triggers
    def notify_dirty(self) -> None:
        """A queue mutation happened: (re)start the debounce timer."""

        self._arm(self.debounce_sec, "debounce")

    def handle_lifecycle(self, signal: HostLifecycleSignal) -> Optional[asyncio.Task]:
        signal = HostLifecycleSignal(signal)
        if signal is HostLifecycleSignal.VISIBLE:
            return None
        if not self.queue.has_pending():
            return None
        logger.info("Host %s with %d pending change(s), flushing", signal.value, self.queue.size())
        self._cancel_timer()
        return self._spawn(signal.value)

    async def sync_now(self) -> FlushResult:
        self._cancel_timer()
        task = self.run_background(self.flush("manual"))
        return await asyncio.shield(task)

    def cancel(self) -> None:
        self._cancel_timer()

    async def wait_idle(self) -> None:
        """Wait for every flush started by a timer, a lifecycle signal or ``sync_now``."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # flushing
    async def flush(self, reason: str = "timer") -> FlushResult:
        if self.is_flushing:
            logger.debug("Flush (%s) skipped: another flush is running", reason)
            return FlushResult(skipped=True)
        entries = self.queue.drain()
        if not entries:
            self._had_errors = False
            return FlushResult()

        self.is_flushing = True
        result = FlushResult()
        logger.info("Flushing %d pending change(s) (%s)", len(entries), reason)
        try:
            outcomes = await asyncio.gather(*(self._send(entry) for entry in entries))
        finally:
            self.is_flushing = False

        for entry, error in zip(entries, outcomes):
            if error is None:
                result.sent.append(entry.record_id)
            else:
                result.failed[entry.record_id] = error

        self._had_errors = bool(result.failed)
        self.last_result = result
        if result.failed:
            logger.warning("Flush finished with %d failure(s): %s", len(result.failed), result.failed)
            self.notices.emit(
                Notice("error", f"{len(result.failed)} change(s) could not be saved, will retry")
            )
            self._arm(_next_delay(self.queue.max_attempts(), self.max_backoff_sec), "retry")
        elif self.queue.has_pending():
            # edited while the flush was in flight
            self.notify_dirty()
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:
                logger.exception("Flush completion hook failed")
        return result

    async def _send(self, entry: PendingMutation) -> Optional[str]:
        try:
            await asyncio.wait_for(self._dispatch(entry), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout_sec}s"
        except TransportError as exc:
            if entry.kind == DELETE and exc.is_not_found:
                self.queue.ack(entry.record_id, entry.revision)
                return None
            error = str(exc)
        except MalformedResponseError as exc:
            error = f"malformed response: {exc}"
        except Exception as exc:
            logger.exception("Push of %s %s crashed", entry.kind, entry.record_id)
            error = str(exc) or exc.__class__.__name__
        else:
            return None
        logger.warning("Push of %s %s failed: %s", entry.kind, entry.record_id, error)
        self.queue.fail(entry.record_id, error)
        return error

    async def _dispatch(self, entry: PendingMutation) -> None:
        rid = entry.record_id
        if entry.kind == DELETE:
            await self.client.delete(rid)
            self.queue.ack(rid, entry.revision)
            return

        if entry.kind == CREATE:
            remote = await self.client.create(entry.fields)
        else:
            remote = await self.client.update(rid, entry.fields)
        self.queue.ack(rid, entry.revision)
        self._adopt(rid, remote)

    def _adopt(self, local_id: int, remote: Record) -> None:
        if remote.id != local_id:
            logger.info("Remote assigned id %s to local record %s", remote.id, local_id)
            self.queue.rekey(local_id, remote.id)
            if self.store is not None:
                self.store.reassign_id(local_id, remote.id)
        if self.store is not None:
            self.store.absorb_remote(remote)

    # ------------------------------------------------------------------
    # timers
    def _arm(self, delay: float, reason: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, %s timer not armed", reason)
            return
        self._cancel_timer()
        self._timer = loop.call_later(delay, self._fire, reason)

    def _fire(self, reason: str) -> None:
        self._timer = None
        self._spawn(reason)

    def _spawn(self, reason: str) -> Optional[asyncio.Task]:
        return self.run_background(self.flush(reason))

    def run_background(self, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task]:
        """Run ``coro`` on the loop; tracked so ``wait_idle()`` can await it."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None


__all__ = [
    "FlushResult",
    "FlushScheduler",
    "HostLifecycleSignal",
    "SchedulerState",
]
