"""In-memory authoritative record collection with write-through persistence."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from core.errors import IdentityRequiredError, NotFoundError
from core.logs import get_logger
from models.record import Record, RecordStatus, clean_fields, normalize_fetched
from services.events import EventEmitter, StoreEvent
from services.pending_queue import CREATE, DELETE, UPDATE, PendingMutationQueue
from storage.cache import CachePort, data_key
from utils.datetime_utils import latest_timestamp, now_rfc3339, today_iso


logger = get_logger("store")


class EntityStore:
    """Holds the working copy of one identity's records.

    Every mutation updates memory and the cache before returning, then
    records the diff in the pending queue. Mutations are plain synchronous
    calls, so on a single event loop they never interleave.
    """

    def __init__(self, cache: CachePort, queue: PendingMutationQueue):
        self.cache = cache
        self.queue = queue
        self.events: EventEmitter[StoreEvent] = EventEmitter()
        self._records: Dict[int, Record] = {}
        self.identity: Optional[str] = None

    # ------------------------------------------------------------------
    # identity scoping
    def load(self, identity: Optional[str]) -> None:
        """Rebuild the collection from ``identity``'s cache namespace."""

        self._records = {}
        self.identity = identity
        if identity is not None:
            raw = self.cache.get(data_key(identity), [])
            for item in raw if isinstance(raw, list) else []:
                try:
                    record = Record.from_dict(item)
                except Exception as exc:
                    logger.warning("Skipping cached record %r: %s", item, exc)
                    continue
                self._records[record.id] = record
            logger.info("Loaded %d cached record(s) for %s", len(self._records), identity)
        self.events.emit(StoreEvent("reset", tuple(self._records)))

    def reset(self) -> None:
        self._records = {}
        self.identity = None
        self.events.emit(StoreEvent("reset"))

    # ------------------------------------------------------------------
    # reads
    def get_all(self) -> List[Record]:
        return [record.copy() for record in self._records.values()]

    def get(self, record_id: int) -> Record:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(record_id)
        return record.copy()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def search(self, query: str) -> List[Record]:
        needle = (query or "").strip().lower()
        if not needle:
            return []
        return [
            record.copy()
            for record in self._records.values()
            if needle in record.title.lower()
            or needle in (record.description or "").lower()
            or needle in (record.category or "").lower()
        ]

    def export_data(self) -> str:
        payload = {
            "exportedAt": now_rfc3339(),
            "technologies": [record.to_dict() for record in self._records.values()],
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)

    # ------------------------------------------------------------------
    # local mutations
    def create_local(self, fields: Mapping[str, Any]) -> Record:
        self.require_identity()
        cleaned = clean_fields(fields)
        if not str(cleaned.get("title") or "").strip():
            raise ValueError("Title is required")
        stamp = now_rfc3339()
        record = Record(id=self._next_id(), title="").merged(cleaned)
        record.title = record.title.strip()
        record.study_start_date = record.study_start_date or today_iso()
        record.study_end_date = record.study_end_date or ""
        record.created_at = stamp
        record.updated_at = stamp
        self._records[record.id] = record
        self._persist()
        self.queue.record(record.id, CREATE, record.to_dict())
        self.events.emit(StoreEvent("created", (record.id,)))
        logger.debug("Created record %s locally", record.id)
        return record.copy()

    def apply_local_mutation(self, record_id: int, fields: Mapping[str, Any]) -> Record:
        self.require_identity()
        current = self._records.get(record_id)
        if current is None:
            raise NotFoundError(record_id)
        if "id" in fields and fields["id"] != record_id:
            raise ValueError(f"Record id cannot be changed ({record_id} -> {fields['id']!r})")
        diff = clean_fields(fields)
        for key in ("studyStartDate", "studyEndDate"):
            # an empty date in an edit form keeps the stored one
            if key in diff and not diff[key]:
                diff.pop(key)
        updated = current.merged(diff)
        updated.updated_at = latest_timestamp(current.updated_at, now_rfc3339())
        self._records[record_id] = updated
        self._persist()
        self.queue.record(record_id, UPDATE, diff)
        self.events.emit(StoreEvent("updated", (record_id,)))
        return updated.copy()

    def delete_local(self, record_id: int) -> None:
        self.require_identity()
        if record_id not in self._records:
            raise NotFoundError(record_id)
        del self._records[record_id]
        self._persist()
        self.queue.record(record_id, DELETE)
        self.events.emit(StoreEvent("deleted", (record_id,)))

    def set_status_many(self, record_ids: Iterable[int], status: str) -> List[Record]:
        self.require_identity()
        ids = list(record_ids)
        missing = [rid for rid in ids if rid not in self._records]
        if missing:
            raise NotFoundError(missing[0])
        value = RecordStatus.parse(status).value
        stamp = now_rfc3339()
        changed: List[Record] = []
        for rid in ids:
            current = self._records[rid]
            updated = current.merged({"status": value})
            updated.updated_at = latest_timestamp(current.updated_at, stamp)
            self._records[rid] = updated
            changed.append(updated)
        self._persist()
        for record in changed:
            self.queue.record(record.id, UPDATE, {"status": value})
        self.events.emit(StoreEvent("updated", tuple(ids)))
        return [record.copy() for record in changed]

    def mark_all(self, status: str) -> List[Record]:
        return self.set_status_many(list(self._records), status)

    def delete_many(self, record_ids: Iterable[int]) -> int:
        self.require_identity()
        ids = [rid for rid in record_ids if rid in self._records]
        for rid in ids:
            del self._records[rid]
        if ids:
            self._persist()
            for rid in ids:
                self.queue.record(rid, DELETE)
            self.events.emit(StoreEvent("deleted", tuple(ids)))
        return len(ids)

    def add_imported(self, records: Sequence[Record]) -> List[Record]:
        """Append imported records under fresh local ids, all ``not-started``."""

        self.require_identity()
        stamp = now_rfc3339()
        base = self._max_known_id()
        added: List[Record] = []
        for offset, source in enumerate(records, start=1):
            record = source.copy()
            record.id = base + offset
            record.status = RecordStatus.NOT_STARTED
            record.notes = record.notes or ""
            record.category = record.category or "imported"
            record.study_start_date = record.study_start_date or today_iso()
            record.study_end_date = record.study_end_date or ""
            record.created_at = record.created_at or stamp
            record.updated_at = stamp
            self._records[record.id] = record
            added.append(record)
        if added:
            self._persist()
            for record in added:
                self.queue.record(record.id, CREATE, record.to_dict())
            self.events.emit(StoreEvent("created", tuple(r.id for r in added)))
        return [record.copy() for record in added]

    # ------------------------------------------------------------------
    # remote reconciliation
    def apply_remote_snapshot(self, records: Sequence[Record]) -> List[Record]:
        """Replace the collection wholesale, then replay unsent local diffs."""

        previous = self._records
        fresh: Dict[int, Record] = {}
        for record in records:
            fresh[record.id] = normalize_fetched(record)

        replayed = 0
        for entry in self.queue.drain():
            rid = entry.record_id
            if entry.kind == DELETE:
                if fresh.pop(rid, None) is not None:
                    replayed += 1
                continue
            base = fresh.get(rid)
            if base is None:
                if entry.kind != CREATE:
                    # remote dropped it; the update will 404 and surface on flush
                    continue
                try:
                    replayed_record = Record.from_dict({**entry.fields, "id": rid})
                except Exception as exc:
                    logger.warning("Cannot replay pending create %s: %s", rid, exc)
                    continue
            else:
                replayed_record = base.merged(entry.fields)
            local = previous.get(rid)
            if local is not None and local.updated_at:
                replayed_record.updated_at = latest_timestamp(replayed_record.updated_at, local.updated_at)
            fresh[rid] = replayed_record
            replayed += 1

        self._records = fresh
        self._persist()
        if replayed:
            logger.info("Re-applied %d pending mutation(s) over remote snapshot", replayed)
        self.events.emit(StoreEvent("replaced", tuple(fresh)))
        return self.get_all()

    def reassign_id(self, old_id: int, new_id: int) -> None:
        """Re-key a record once the remote has assigned its authoritative id."""

        if old_id == new_id:
            return
        record = self._records.pop(old_id, None)
        if record is None:
            return
        record.id = new_id
        self._records[new_id] = record
        self._persist()
        self.events.emit(StoreEvent("reassigned", (old_id, new_id)))

    def absorb_remote(self, record: Record) -> None:
        """Take server-side fields (timestamps) for a record without pending edits."""

        if record.id not in self._records or record.id in self.queue:
            return
        current = self._records[record.id]
        merged = normalize_fetched(record)
        if merged.updated_at:
            merged.updated_at = latest_timestamp(current.updated_at, merged.updated_at)
        else:
            merged.updated_at = current.updated_at
        self._records[record.id] = merged
        self._persist()
        self.events.emit(StoreEvent("updated", (record.id,)))

    # ------------------------------------------------------------------
    # helpers
    def require_identity(self) -> None:
        if self.identity is None:
            raise IdentityRequiredError()

    def _max_known_id(self) -> int:
        known = list(self._records) + self.queue.ids()
        return max(known, default=0)

    def _next_id(self) -> int:
        return self._max_known_id() + 1

    def _persist(self) -> None:
        if self.identity is None:
            return
        self.cache.set(data_key(self.identity), [record.to_dict() for record in self._records.values()])


__all__ = ["EntityStore"]
