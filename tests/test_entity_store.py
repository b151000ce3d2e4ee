import json

import pytest

from conftest import make_record
from core.errors import IdentityRequiredError, NotFoundError
from models.record import RecordStatus
from services.entity_store import EntityStore
from services.pending_queue import CREATE, DELETE, UPDATE, PendingMutationQueue
from storage.cache import MemoryCache, data_key


def _seed(store, *records):
    store.apply_remote_snapshot(list(records))


def test_create_assigns_next_id_and_queues_create(store, cache, queue):
    record = store.create_local({"title": "Go", "status": "not-started"})

    assert record.id == 1
    assert record.created_at == record.updated_at
    assert record.study_start_date
    assert queue.size() == 1
    entry = queue.get(1)
    assert entry.kind == CREATE
    assert entry.fields["title"] == "Go"
    # write-through: the cache already holds the new record
    assert [item["id"] for item in cache.get(data_key("alice"))] == [1]


def test_create_uses_max_existing_plus_one(store):
    _seed(store, make_record(3), make_record(10))
    assert store.create_local({"title": "Next"}).id == 11


def test_create_requires_title(store):
    with pytest.raises(ValueError):
        store.create_local({"title": "  "})


def test_update_merges_fields_and_stamps(store, queue, cache):
    _seed(store, make_record(1, "Go", updatedAt="2000-01-01T00:00:00.000Z"))
    updated = store.apply_local_mutation(1, {"status": "in-progress", "notes": "chapter 3"})

    assert updated.status is RecordStatus.IN_PROGRESS
    assert updated.notes == "chapter 3"
    assert updated.updated_at > "2000-01-01T00:00:00.000Z"
    assert store.get(1).notes == "chapter 3"
    assert cache.get(data_key("alice"))[0]["status"] == "in-progress"
    assert queue.get(1).fields == {"status": "in-progress", "notes": "chapter 3"}


def test_update_keeps_dates_when_edit_sends_empty(store):
    _seed(store, make_record(1, studyStartDate="2024-01-01", studyEndDate="2024-02-01"))
    updated = store.apply_local_mutation(1, {"studyStartDate": "", "title": "Renamed"})
    assert updated.study_start_date == "2024-01-01"
    assert updated.title == "Renamed"


def test_updated_at_does_not_go_backwards(store):
    future = "2999-01-01T00:00:00.000Z"
    _seed(store, make_record(1, updatedAt=future))
    assert store.apply_local_mutation(1, {"notes": "x"}).updated_at == future


def test_update_unknown_id_raises(store):
    with pytest.raises(NotFoundError):
        store.apply_local_mutation(99, {"notes": "x"})


def test_update_rejects_invalid_status(store):
    _seed(store, make_record(1))
    with pytest.raises(ValueError):
        store.apply_local_mutation(1, {"status": "paused"})
    assert store.get(1).status is RecordStatus.NOT_STARTED


def test_two_quick_edits_leave_one_entry(store, queue):
    _seed(store, make_record(1, "Go"))
    store.apply_local_mutation(1, {"status": "in-progress"})
    store.apply_local_mutation(1, {"status": "completed"})

    entries = queue.drain()
    assert len(entries) == 1
    assert entries[0].fields == {"status": "completed"}


def test_delete_removes_immediately_and_queues_marker(store, queue, cache):
    _seed(store, make_record(1), make_record(2))
    store.delete_local(2)

    assert [r.id for r in store.get_all()] == [1]
    assert [item["id"] for item in cache.get(data_key("alice"))] == [1]
    assert queue.get(2).kind == DELETE
    with pytest.raises(NotFoundError):
        store.delete_local(2)


def test_mutations_require_identity():
    store = EntityStore(MemoryCache(), PendingMutationQueue())
    with pytest.raises(IdentityRequiredError):
        store.create_local({"title": "Go"})
    with pytest.raises(IdentityRequiredError):
        store.apply_local_mutation(1, {"notes": "x"})


def test_snapshot_replaces_collection_and_normalises(store):
    _seed(store, make_record(1), make_record(2))
    store.apply_remote_snapshot([make_record(5, "Remote")])

    records = store.get_all()
    assert [r.id for r in records] == [5]
    assert records[0].study_start_date
    assert records[0].study_end_date == ""
    assert records[0].category == ""


def test_snapshot_reapplies_pending_edits(store, queue):
    _seed(store, make_record(1, "Go"), make_record(2, "Rust"), make_record(3, "Zig"))
    store.apply_local_mutation(1, {"status": "completed"})
    store.delete_local(2)
    created = store.create_local({"title": "Local only"})

    remote = [make_record(1, "Go (remote)"), make_record(2, "Rust"), make_record(3, "Zig (remote)")]
    store.apply_remote_snapshot(remote)

    by_id = {r.id: r for r in store.get_all()}
    assert by_id[1].status is RecordStatus.COMPLETED
    assert by_id[1].title == "Go (remote)"
    assert 2 not in by_id
    assert by_id[3].title == "Zig (remote)"
    assert by_id[created.id].title == "Local only"
    assert queue.size() == 3


def test_bulk_status_and_mark_all(store, queue):
    _seed(store, make_record(1), make_record(2), make_record(3))
    store.set_status_many([1, 3], "in-progress")
    assert {r.id for r in store.get_all() if r.status is RecordStatus.IN_PROGRESS} == {1, 3}

    store.mark_all("completed")
    assert all(r.status is RecordStatus.COMPLETED for r in store.get_all())
    assert queue.size() == 3
    assert queue.get(1).fields == {"status": "completed"}

    with pytest.raises(NotFoundError):
        store.set_status_many([1, 42], "completed")


def test_delete_many_skips_unknown(store, queue):
    _seed(store, make_record(1), make_record(2))
    assert store.delete_many([1, 2, 9]) == 2
    assert store.get_all() == []
    assert sorted(queue.ids()) == [1, 2]


def test_add_imported_assigns_sequential_ids(store, queue):
    _seed(store, make_record(4))
    added = store.add_imported([make_record(1, "HTML", status="completed"), make_record(2, "CSS", category="web")])

    assert [r.id for r in added] == [5, 6]
    assert all(r.status is RecordStatus.NOT_STARTED for r in added)
    assert added[0].category == "imported"
    assert added[1].category == "web"
    assert queue.get(5).kind == CREATE


def test_search_matches_title_description_category(store):
    _seed(
        store,
        make_record(1, "React", description="UI library", category="frontend"),
        make_record(2, "Node.js", description="Server runtime", category="backend"),
    )
    assert [r.id for r in store.search("react")] == [1]
    assert [r.id for r in store.search("RUNTIME")] == [2]
    assert [r.id for r in store.search("end")] == [1, 2]
    assert store.search("   ") == []


def test_export_contains_all_records(store):
    _seed(store, make_record(1, "Go"))
    payload = json.loads(store.export_data())
    assert payload["technologies"][0]["title"] == "Go"
    assert "exportedAt" in payload


def test_reassign_id_rekeys_record(store):
    _seed(store, make_record(1, "Go"))
    seen = []
    store.events.subscribe(seen.append)
    store.reassign_id(1, 1700000000000)
    assert [(e.kind, e.record_ids) for e in seen] == [("reassigned", (1, 1700000000000))]
    assert 1 not in store
    assert store.get(1700000000000).title == "Go"


def test_events_are_emitted_and_listener_errors_are_contained(store):
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    store.events.subscribe(broken)
    unsubscribe = store.events.subscribe(seen.append)

    record = store.create_local({"title": "Go"})
    store.apply_local_mutation(record.id, {"notes": "x"})
    unsubscribe()
    store.delete_local(record.id)

    assert [event.kind for event in seen] == ["created", "updated"]
    assert seen[0].record_ids == (record.id,)


def test_load_restores_namespace_and_skips_bad_rows(queue):
    cache = MemoryCache({
        data_key("alice"): [{"id": 1, "title": "Go", "status": "completed"}, {"title": "no id"}],
        data_key("bob"): [{"id": 7, "title": "Bob's"}],
    })
    store = EntityStore(cache, queue)
    store.load("alice")
    assert [r.id for r in store.get_all()] == [1]
    store.load("bob")
    assert [r.id for r in store.get_all()] == [7]


def test_update_diff_excludes_server_owned_fields(store, queue):
    _seed(store, make_record(1))
    store.apply_local_mutation(1, {"id": 1, "notes": "x", "updatedAt": "1999-01-01T00:00:00.000Z", "unknown": 1})
    assert queue.get(1).fields == {"notes": "x"}
    assert queue.get(1).kind == UPDATE


def test_update_cannot_change_id(store, queue):
    _seed(store, make_record(1))
    with pytest.raises(ValueError):
        store.apply_local_mutation(1, {"id": 5, "notes": "x"})
    assert store.get(1).notes == ""
    assert 5 not in store
    assert not queue.has_pending()


def test_snapshot_replay_keeps_newer_local_timestamp(store):
    old = "2020-01-01T00:00:00.000Z"
    snapshot = [make_record(1, "Go", updatedAt=old)]
    store.apply_remote_snapshot(snapshot)
    edited = store.apply_local_mutation(1, {"notes": "offline edit"})
    assert edited.updated_at > old

    store.apply_remote_snapshot(snapshot)

    replayed = store.get(1)
    assert replayed.notes == "offline edit"
    assert replayed.updated_at == edited.updated_at


def test_snapshot_takes_newer_remote_timestamp(store):
    store.apply_remote_snapshot([make_record(1, "Go")])
    edited = store.apply_local_mutation(1, {"notes": "x"})

    newer = "2999-01-01T00:00:00.000Z"
    store.apply_remote_snapshot([make_record(1, "Go", updatedAt=newer)])

    assert edited.updated_at < newer
    assert store.get(1).updated_at == newer
