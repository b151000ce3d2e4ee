from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import httpx
from sqlmodel import Session

from core.errors import MalformedResponseError, TransportError
from core.logs import get_logger
from core.settings import CACHE_KEYS, SYNC
from models.record import Record, RecordStatus
from services.entity_store import EntityStore
from services.events import EventEmitter, Notice
from services.fetch_policy import FetchOutcome, StalenessGatedFetchPolicy
from services.flush_scheduler import FlushResult, FlushScheduler, HostLifecycleSignal
from services.pending_queue import PendingMutationQueue
from services.remote_client import RemoteSyncClient
from storage.cache import CachePort, SQLiteCache
from storage.db import get_session, init_db


logger = get_logger("engine")


@dataclass
class ImportSummary:
    success: bool
    imported_count: int = 0
    total_count: int = 0
    source_title: str = ""


def is_valid_endpoint(url: Optional[str]) -> bool:
    value = (url or "").strip()
    return value.startswith("http://") or value.startswith("https://")


class SyncEngine:
    """Local-first working copy of the records plus its reconciliation loop."""

    def __init__(
        self,
        cache: CachePort,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
        client_factory: Optional[Callable[[str], RemoteSyncClient]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        debounce_sec: float = SYNC.debounce_sec,
        timeout_sec: float = SYNC.request_timeout_sec,
        stale_after_sec: float = SYNC.stale_after_sec,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.notices: EventEmitter[Notice] = EventEmitter()
        self._client_factory = client_factory or (
            lambda endpoint: RemoteSyncClient(endpoint, timeout=timeout_sec, transport=transport)
        )
        self.queue = PendingMutationQueue(session_factory)
        self.store = EntityStore(cache, self.queue)
        self.client = self._client_factory(self.endpoint)
        self.scheduler = FlushScheduler(
            self.queue,
            self.client,
            self.store,
            debounce_sec=debounce_sec,
            timeout_sec=timeout_sec,
            notices=self.notices,
            on_complete=self._on_flushed,
        )
        self.fetch_policy = StalenessGatedFetchPolicy(
            self.store,
            self.client,
            threshold_sec=stale_after_sec,
            clock=clock,
            notices=self.notices,
        )

    @classmethod
    def open_default(cls, **kwargs: Any) -> "SyncEngine":
        """Engine over the on-disk cache database in ``DATA_DIR``."""

        init_db()
        return cls(SQLiteCache(get_session), session_factory=get_session, **kwargs)

    # ------------------------------------------------------------------
    # session state
    @property
    def identity(self) -> Optional[str]:
        return self.store.identity

    @property
    def has_pending_changes(self) -> bool:
        return self.queue.has_pending()

    @property
    def is_flushing(self) -> bool:
        return self.scheduler.is_flushing

    @property
    def last_fetch_time(self) -> Optional[float]:
        return self.fetch_policy.last_fetch_time

    @property
    def endpoint(self) -> str:
        saved = self.cache.get(CACHE_KEYS.endpoint)
        if isinstance(saved, str) and is_valid_endpoint(saved):
            return saved.strip()
        return SYNC.default_endpoint

    def status(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "endpoint": self.endpoint,
            "state": self.scheduler.state.value,
            "queueSize": self.queue.size(),
            "hasPendingChanges": self.has_pending_changes,
            "isFlushing": self.is_flushing,
            "lastFetchTime": self.last_fetch_time,
            "recordCount": len(self.store),
        }

    # ------------------------------------------------------------------
    # lifecycle
    async def start(self, identity: Optional[str] = None) -> FetchOutcome:
        """Cold start: restore the cached namespace, then reconcile with the remote."""

        if identity is None:
            saved = self.cache.get(CACHE_KEYS.identity)
            identity = saved if isinstance(saved, str) and saved else None
        else:
            self.cache.set(CACHE_KEYS.identity, identity)
        self._load_identity(identity)
        if identity is None:
            logger.info("Started without an identity")
            return FetchOutcome()
        if self.queue.has_pending():
            self.scheduler.notify_dirty()
        return await self.fetch_all(force=len(self.store) == 0)

    async def switch_identity(self, identity: Optional[str]) -> FetchOutcome:
        """Tear down everything owned by the current identity and load ``identity``."""

        logger.info("Switching identity %s -> %s", self.identity, identity)
        self.scheduler.cancel()
        await self.scheduler.wait_idle()
        self.store.reset()
        self.queue.reset()
        self.fetch_policy.reset()
        if not identity:
            self.cache.delete(CACHE_KEYS.identity)
            return FetchOutcome()
        return await self.start(identity)

    async def aclose(self) -> None:
        if self.queue.has_pending():
            task = self.scheduler.handle_lifecycle(HostLifecycleSignal.TERMINATING)
            if task is not None:
                await task
        self.scheduler.cancel()
        await self.scheduler.wait_idle()
        await self.client.aclose()

    def handle_lifecycle(self, signal: HostLifecycleSignal):
        signal = HostLifecycleSignal(signal)
        if signal is HostLifecycleSignal.VISIBLE:
            if self.identity is not None and self.fetch_policy.should_refresh_on_visible():
                logger.info("Host visible again after a while, refreshing")
                return self.scheduler.run_background(self.fetch_all(force=True))
            return None
        return self.scheduler.handle_lifecycle(signal)

    # ------------------------------------------------------------------
    # reads
    def get_all(self) -> List[Record]:
        return self.store.get_all()

    def get(self, record_id: int) -> Record:
        return self.store.get(record_id)

    def search(self, query: str) -> List[Record]:
        return self.store.search(query)

    def export_data(self) -> str:
        data = self.store.export_data()
        self.notices.emit(Notice("success", "Data exported"))
        return data

    # ------------------------------------------------------------------
    # mutations
    def create(self, fields: Mapping[str, Any]) -> Record:
        record = self.store.create_local(fields)
        self.scheduler.notify_dirty()
        self.notices.emit(Notice("success", f'Added "{record.title}"'))
        return record

    def update(self, record_id: int, fields: Mapping[str, Any]) -> Record:
        record = self.store.apply_local_mutation(record_id, fields)
        self.scheduler.notify_dirty()
        return record

    def delete(self, record_id: int) -> None:
        self.store.require_identity()
        title = self.store.get(record_id).title
        self.store.delete_local(record_id)
        self.scheduler.notify_dirty()
        self.notices.emit(Notice("success", f'Deleted "{title}"'))

    def set_status_many(self, record_ids: Iterable[int], status: str) -> List[Record]:
        records = self.store.set_status_many(record_ids, status)
        if records:
            self.scheduler.notify_dirty()
        return records

    def delete_many(self, record_ids: Iterable[int]) -> int:
        count = self.store.delete_many(record_ids)
        if count:
            self.scheduler.notify_dirty()
            self.notices.emit(Notice("success", f"Deleted {count} records"))
        return count

    def mark_all_done(self) -> List[Record]:
        records = self.store.mark_all(RecordStatus.COMPLETED.value)
        if records:
            self.scheduler.notify_dirty()
        self.notices.emit(Notice("success", "All records marked as completed"))
        return records

    def reset_all_statuses(self) -> List[Record]:
        records = self.store.mark_all(RecordStatus.NOT_STARTED.value)
        if records:
            self.scheduler.notify_dirty()
        self.notices.emit(Notice("success", "All statuses reset"))
        return records

    # ------------------------------------------------------------------
    # remote reconciliation
    async def fetch_all(self, force: bool = False) -> FetchOutcome:
        if self.identity is None:
            return FetchOutcome()
        return await self.fetch_policy.fetch_all(force=force)

    async def flush(self) -> FlushResult:
        return await self.scheduler.sync_now()

    async def sync_now(self) -> bool:
        """Push pending changes, then pull the full collection."""

        self.notices.emit(Notice("info", "Syncing with the server..."))
        pushed = await self.scheduler.sync_now()
        pulled = await self.fetch_all(force=True)
        ok = pushed.ok and pulled.ok
        if ok:
            self.notices.emit(Notice("success", "Sync finished"))
        return ok

    async def push_snapshot(self) -> bool:
        """Replace the remote collection with the local one."""

        self.store.require_identity()
        try:
            remote = await self.client.replace_all(self.store.get_all())
        except (TransportError, MalformedResponseError) as exc:
            logger.warning("Snapshot push failed: %s", exc)
            self.notices.emit(Notice("error", f"Sync failed: {exc}"))
            return False
        self.queue.clear()
        self.store.apply_remote_snapshot(remote)
        self.fetch_policy.last_fetch_time = self.fetch_policy.clock()
        self.fetch_policy.mark_synced()
        logger.info("Pushed %d record(s) as the remote snapshot", len(remote))
        return True

    async def import_from_source(self, url: str) -> ImportSummary:
        self.store.require_identity()
        self.notices.emit(Notice("info", "Importing..."))
        try:
            result = await self.client.import_from_source(url)
        except (TransportError, MalformedResponseError) as exc:
            logger.warning("Import from %s failed: %s", url, exc)
            self.notices.emit(Notice("error", f"Import failed: {exc}"))
            return ImportSummary(success=False)
        added = self.store.add_imported(result.records)
        if added:
            self.scheduler.notify_dirty()
        title = result.source_title or "Imported roadmap"
        self.notices.emit(Notice("success", f'Imported {len(added)} records from "{title}"'))
        return ImportSummary(
            success=True,
            imported_count=len(added),
            total_count=result.total_count,
            source_title=title,
        )

    async def set_endpoint(self, url: str) -> str:
        value = (url or "").strip()
        if not is_valid_endpoint(value):
            raise ValueError(f"Endpoint must be an http(s) URL: {url!r}")
        self.cache.set(CACHE_KEYS.endpoint, value)
        old_client = self.client
        self.client = self._client_factory(value)
        self.scheduler.client = self.client
        self.fetch_policy.client = self.client
        self.fetch_policy.reset()
        await old_client.aclose()
        self.notices.emit(Notice("success", "API endpoint saved"))
        return value

    # ------------------------------------------------------------------
    def _load_identity(self, identity: Optional[str]) -> None:
        self.queue.load(identity)
        self.store.load(identity)

    def _on_flushed(self, result: FlushResult) -> None:
        if result.ok and result.sent:
            self.fetch_policy.mark_synced()


__all__ = ["ImportSummary", "SyncEngine", "is_valid_endpoint"]
