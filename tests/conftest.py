import asyncio
from pathlib import Path
import sys
from typing import Dict, List, Optional, Set

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import models  # noqa: F401,E402
from core.errors import TransportError  # noqa: E402
from models.record import Record  # noqa: E402
from services.entity_store import EntityStore  # noqa: E402
from services.pending_queue import PendingMutationQueue  # noqa: E402
from storage.cache import MemoryCache  # noqa: E402


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)

    def factory():
        return Session(engine)

    return factory


@pytest.fixture()
def cache():
    return MemoryCache()


@pytest.fixture()
def queue(session_factory):
    q = PendingMutationQueue(session_factory)
    q.load("alice")
    return q


@pytest.fixture()
def store(cache, queue):
    s = EntityStore(cache, queue)
    s.load("alice")
    return s


def make_record(record_id: int, title: Optional[str] = None, **extra) -> Record:
    payload = {"id": record_id, "title": title or f"Tech {record_id}", "status": "not-started"}
    payload.update(extra)
    return Record.from_dict(payload)


class FakeRemote:
    """In-memory stand-in for :class:`RemoteSyncClient`."""

    endpoint = "http://remote.test/api/technologies"

    def __init__(self, records: Optional[List[Record]] = None):
        self.records: Dict[int, Record] = {r.id: r for r in records or []}
        self.calls: List[tuple] = []
        self.fail_ids: Set[int] = set()
        self.fail_fetch: Optional[Exception] = None
        self.assign_ids: Dict[int, int] = {}
        self.delay = 0.0
        self.hang_ids: Set[int] = set()
        self.closed = False

    async def _pause(self, record_id: Optional[int] = None):
        if record_id is not None and record_id in self.hang_ids:
            await asyncio.sleep(3600)
        if self.delay:
            await asyncio.sleep(self.delay)

    def _maybe_fail(self, record_id: int):
        if record_id in self.fail_ids:
            raise TransportError(f"boom {record_id}", status_code=503)

    async def fetch_all(self) -> List[Record]:
        self.calls.append(("fetch_all",))
        await self._pause()
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return [r.copy() for r in self.records.values()]

    async def create(self, fields):
        rid = fields.get("id")
        self.calls.append(("create", rid))
        await self._pause(rid)
        self._maybe_fail(rid)
        new_id = self.assign_ids.get(rid, rid)
        record = Record.from_dict({**fields, "id": new_id})
        self.records[new_id] = record
        return record.copy()

    async def update(self, record_id, diff):
        self.calls.append(("update", record_id, dict(diff)))
        await self._pause(record_id)
        self._maybe_fail(record_id)
        if record_id not in self.records:
            raise TransportError("not found", status_code=404)
        record = self.records[record_id].merged(diff)
        self.records[record_id] = record
        return record.copy()

    async def delete(self, record_id):
        self.calls.append(("delete", record_id))
        await self._pause(record_id)
        self._maybe_fail(record_id)
        if self.records.pop(record_id, None) is None:
            raise TransportError("not found", status_code=404)

    async def replace_all(self, records):
        self.calls.append(("replace_all", len(records)))
        self.records = {r.id: r.copy() for r in records}
        return [r.copy() for r in self.records.values()]

    async def import_from_source(self, url):
        raise NotImplementedError

    async def aclose(self):
        self.closed = True

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture()
def remote():
    return FakeRemote()
