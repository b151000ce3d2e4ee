from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from core.errors import MalformedResponseError, TransportError
from core.logs import get_logger
from core.settings import SYNC
from models.record import Record
from services.entity_store import EntityStore
from services.events import EventEmitter, Notice
from services.remote_client import RemoteSyncClient


logger = get_logger("fetch")


@dataclass
class FetchOutcome:
    records: List[Record] = field(default_factory=list)
    fetched: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StalenessGatedFetchPolicy:
    """Decides whether the full collection has to be pulled from the remote."""

    def __init__(
        self,
        store: EntityStore,
        client: RemoteSyncClient,
        *,
        threshold_sec: float = SYNC.stale_after_sec,
        revisit_sec: float = SYNC.revisit_refresh_sec,
        clock: Callable[[], float] = time.monotonic,
        notices: Optional[EventEmitter[Notice]] = None,
    ):
        self.store = store
        self.client = client
        self.threshold_sec = threshold_sec
        self.revisit_sec = revisit_sec
        self.clock = clock
        self.notices = notices or EventEmitter()
        self.last_fetch_time: Optional[float] = None
        self.last_sync_time: Optional[float] = None

    def is_fresh(self) -> bool:
        if self.last_fetch_time is None or len(self.store) == 0:
            return False
        return (self.clock() - self.last_fetch_time) < self.threshold_sec

    async def fetch_all(self, force: bool = False) -> FetchOutcome:
        if not force and self.is_fresh():
            logger.debug("Collection is fresh, serving %d local record(s)", len(self.store))
            return FetchOutcome(records=self.store.get_all())

        try:
            remote = await self.client.fetch_all()
        except (TransportError, MalformedResponseError) as exc:
            logger.warning("Fetch failed, keeping local collection: %s", exc)
            self.notices.emit(Notice("error", f"Could not load records from the server: {exc}"))
            return FetchOutcome(records=self.store.get_all(), error=exc)

        records = self.store.apply_remote_snapshot(remote)
        self.last_fetch_time = self.clock()
        self.mark_synced()
        logger.info("Fetched %d record(s) from %s", len(remote), self.client.endpoint)
        if force:
            self.notices.emit(Notice("success", f"Loaded {len(remote)} records from the server"))
        return FetchOutcome(records=records, fetched=True)

    def mark_synced(self) -> None:
        self.last_sync_time = self.clock()

    def should_refresh_on_visible(self) -> bool:
        if self.last_sync_time is None:
            return True
        return (self.clock() - self.last_sync_time) > self.revisit_sec

    def reset(self) -> None:
        self.last_fetch_time = None
        self.last_sync_time = None


__all__ = ["FetchOutcome", "StalenessGatedFetchPolicy"]
