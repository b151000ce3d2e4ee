from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session, select

from core.errors import IdentityRequiredError
from core.logs import get_logger
from models.pending_mutation import PendingMutationRow
from utils.datetime_utils import utc_now


CREATE = "create"
UPDATE = "update"
DELETE = "delete"
VALID_KINDS = {CREATE, UPDATE, DELETE}

logger = get_logger("queue")


@dataclass
class PendingMutation:
    record_id: int
    kind: str
    fields: Dict[str, Any] = field(default_factory=dict)
    revision: int = 1
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def is_delete(self) -> bool:
        return self.kind == DELETE

    def snapshot(self) -> "PendingMutation":
        return replace(self, fields=dict(self.fields))


def _coalesce(existing: PendingMutation, kind: str, fields: Dict[str, Any]) -> PendingMutation:
    if kind == DELETE:
        return replace(existing, kind=DELETE, fields={}, revision=existing.revision + 1)
    if existing.kind == DELETE:
        # the id came back after a delete; the remote still has the old row
        return replace(existing, kind=UPDATE, fields=dict(fields), revision=existing.revision + 1)
    merged = dict(existing.fields)
    merged.update(fields)
    next_kind = CREATE if existing.kind == CREATE else kind
    return replace(existing, kind=next_kind, fields=merged, revision=existing.revision + 1)


class PendingMutationQueue:
    """Per-record coalesced diffs awaiting acknowledgement from the remote store.

    Entries live in memory and are written through to the ``pendingmutation``
    table (keyed by identity and record id) when a ``session_factory`` is
    given, so unsent edits survive a restart.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory
        self._entries: Dict[int, PendingMutation] = {}
        self.identity: Optional[str] = None

    # ------------------------------------------------------------------
    # identity scoping
    def load(self, identity: Optional[str]) -> None:
        self._entries = {}
        self.identity = identity
        if identity is None or self._session_factory is None:
            return
        with self._session_factory() as session:
            rows = list(session.exec(select(PendingMutationRow).where(PendingMutationRow.identity == identity)))
        for row in rows:
            try:
                payload = json.loads(row.payload)
            except json.JSONDecodeError:
                payload = {}
            self._entries[row.record_id] = PendingMutation(
                record_id=row.record_id,
                kind=row.kind,
                fields=payload if isinstance(payload, dict) else {},
                revision=row.revision,
                attempts=row.attempts,
                last_error=row.last_error,
            )
        if self._entries:
            logger.info("Restored %d pending mutation(s) for %s", len(self._entries), identity)

    def reset(self) -> None:
        """Forget in-memory state without touching the persisted entries."""

        self._entries = {}
        self.identity = None

    # ------------------------------------------------------------------
    # public API
    def record(self, record_id: int, kind: str, fields: Optional[Dict[str, Any]] = None) -> PendingMutation:
        if kind not in VALID_KINDS:
            raise ValueError(f"Unsupported mutation kind: {kind}")
        if self.identity is None:
            raise IdentityRequiredError()
        diff = dict(fields or {})
        existing = self._entries.get(record_id)
        if existing is None:
            entry = PendingMutation(record_id=record_id, kind=kind, fields={} if kind == DELETE else diff)
        else:
            entry = _coalesce(existing, kind, diff)
        self._entries[record_id] = entry
        self._persist(entry)
        logger.debug("Queued %s for %s (rev %s)", entry.kind, record_id, entry.revision)
        return entry.snapshot()

    def drain(self) -> List[PendingMutation]:
        return [entry.snapshot() for entry in self._entries.values()]

    def get(self, record_id: int) -> Optional[PendingMutation]:
        entry = self._entries.get(record_id)
        return entry.snapshot() if entry else None

    def ack(self, record_id: int, revision: Optional[int] = None) -> bool:
        """Drop the entry after remote confirmation. Repeated acks are no-ops.

        With ``revision`` the entry is only dropped if it was not edited while
        in flight; a landed create that picked up edits becomes an update.
        """

        entry = self._entries.get(record_id)
        if entry is None:
            return False
        if revision is not None and entry.revision != revision:
            if entry.kind == CREATE:
                entry.kind = UPDATE
            entry.attempts = 0
            entry.last_error = None
            self._persist(entry)
            return False
        del self._entries[record_id]
        self._remove(record_id)
        return True

    def fail(self, record_id: int, error: str) -> None:
        entry = self._entries.get(record_id)
        if entry is None:
            return
        entry.attempts += 1
        entry.last_error = error[:1000]
        self._persist(entry)

    def rekey(self, old_id: int, new_id: int) -> None:
        entry = self._entries.pop(old_id, None)
        if entry is None:
            return
        self._remove(old_id)
        entry.record_id = new_id
        target = self._entries.get(new_id)
        if target is not None:
            entry = _coalesce(target, entry.kind, entry.fields)
        self._entries[new_id] = entry
        self._persist(entry)

    def clear(self) -> None:
        self._entries = {}
        if self.identity is None or self._session_factory is None:
            return
        with self._session_factory() as session:
            stmt = select(PendingMutationRow).where(PendingMutationRow.identity == self.identity)
            for row in session.exec(stmt).all():
                session.delete(row)
            session.commit()

    def ids(self) -> List[int]:
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def has_pending(self) -> bool:
        return self.size() > 0

    def max_attempts(self) -> int:
        return max((entry.attempts for entry in self._entries.values()), default=0)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._entries

    # ------------------------------------------------------------------
    # persistence
    def _persist(self, entry: PendingMutation) -> None:
        if self.identity is None or self._session_factory is None:
            return
        with self._session_factory() as session:
            row = session.get(PendingMutationRow, (self.identity, entry.record_id))
            if row is None:
                row = PendingMutationRow(identity=self.identity, record_id=entry.record_id, kind=entry.kind)
            row.kind = entry.kind
            row.payload = json.dumps(entry.fields, ensure_ascii=False)
            row.revision = entry.revision
            row.attempts = entry.attempts
            row.last_error = entry.last_error
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def _remove(self, record_id: int) -> None:
        if self.identity is None or self._session_factory is None:
            return
        with self._session_factory() as session:
            row = session.get(PendingMutationRow, (self.identity, record_id))
            if row:
                session.delete(row)
                session.commit()


__all__ = [
    "CREATE",
    "DELETE",
    "UPDATE",
    "PendingMutation",
    "PendingMutationQueue",
]
