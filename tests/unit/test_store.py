"""Unit tests for the in-memory store."""

from datetime import timedelta

import pytest

from quarry.core.errors import FileNotFound, LeaseLost, PersistenceFailure
from quarry.core.models import ProcessingStatus, SourceFile, utcnow
from quarry.core.store import MemoryStore


def _file(store: MemoryStore, room_id: str = "room-1", name: str = "doc.txt") -> SourceFile:
    return store.create_file(SourceFile(room_id=room_id, file_name=name, file_data=b"data"))


def test_files_are_room_scoped(store) -> None:
    record = _file(store)
    assert store.get_file("room-1", record.id).file_name == "doc.txt"
    with pytest.raises(FileNotFound):
        store.get_file("room-2", record.id)
    assert store.list_files("room-2") == []


def test_returned_records_are_copies(store) -> None:
    record = _file(store)
    record.chunk_count = 99
    assert store.get_file("room-1", record.id).chunk_count == 0


def test_update_rejects_unknown_fields(store) -> None:
    record = _file(store)
    with pytest.raises(PersistenceFailure):
        store.update_file("room-1", record.id, {"room_id": "elsewhere"})


def test_claim_is_exclusive_until_released(store) -> None:
    record = _file(store)
    assert store.claim("room-1", record.id, "worker-a", 30) is not None
    assert store.claim("room-1", record.id, "worker-b", 30) is None
    # Re-claiming by the holder extends the lease
    assert store.claim("room-1", record.id, "worker-a", 30) is not None

    store.release("room-1", record.id, "worker-a")
    claimed = store.claim("room-1", record.id, "worker-b", 30)
    assert claimed.locked_by == "worker-b"


def test_expired_lease_can_be_taken_over(store) -> None:
    record = _file(store)
    store.claim("room-1", record.id, "worker-a", 30)
    # Expire the lease by hand
    with store._lock:
        stored = store._files[record.id]
        store._files[record.id] = stored.model_copy(
            update={"lease_expires_at": utcnow() - timedelta(seconds=1)}
        )
    assert store.claim("room-1", record.id, "worker-b", 30).locked_by == "worker-b"


def test_conditional_update_requires_lease(store) -> None:
    record = _file(store)
    with pytest.raises(LeaseLost):
        store.update_file("room-1", record.id, {"chunk_count": 3}, worker_id="worker-a")

    store.claim("room-1", record.id, "worker-a", 30)
    updated = store.update_file(
        "room-1", record.id, {"processing_status": ProcessingStatus.PROCESSING}, worker_id="worker-a"
    )
    assert updated.processing_status == ProcessingStatus.PROCESSING

    with pytest.raises(LeaseLost):
        store.update_file("room-1", record.id, {"chunk_count": 3}, worker_id="worker-b")


def test_pending_chunks_in_index_order(store) -> None:
    record = _file(store)
    store.insert_chunks("room-1", record.id, record.file_name, ["zero", "one", "two"])
    pending = store.pending_chunks("room-1", record.id, limit=2)
    assert [c.chunk_index for c in pending] == [0, 1]
    assert all(c.embedding is None for c in pending)


def test_set_embeddings_is_all_or_nothing(store) -> None:
    record = _file(store)
    chunks = store.insert_chunks("room-1", record.id, record.file_name, ["a", "b"])
    with pytest.raises(PersistenceFailure):
        store.set_embeddings("room-1", {chunks[0].id: [1.0] * 8, chunks[1].id: [1.0] * 3})
    assert store.count_chunks("room-1", record.id) == {"total": 2, "embedded": 0, "pending": 2}

    store.set_embeddings("room-1", {chunks[0].id: [1.0] * 8})
    assert store.count_chunks("room-1", record.id) == {"total": 2, "embedded": 1, "pending": 1}


def test_candidates_exclude_unembedded_chunks(store) -> None:
    record = _file(store)
    chunks = store.insert_chunks(
        "room-1", record.id, record.file_name, ["redis caching layer", "redis cluster notes"]
    )
    store.set_embeddings("room-1", {chunks[0].id: [1.0] + [0.0] * 7})

    vector_hits = store.vector_candidates("room-1", [1.0] + [0.0] * 7)
    assert [h.chunk_id for h in vector_hits] == [chunks[0].id]
    assert vector_hits[0].similarity == pytest.approx(1.0)

    keyword_hits = store.keyword_candidates("room-1", "redis")
    assert [h.chunk_id for h in keyword_hits] == [chunks[0].id]
    assert keyword_hits[0].rank > 0


def test_candidates_are_room_scoped(store) -> None:
    mine = _file(store, room_id="room-1")
    theirs = _file(store, room_id="room-2")
    a = store.insert_chunks("room-1", mine.id, mine.file_name, ["shared words"])
    b = store.insert_chunks("room-2", theirs.id, theirs.file_name, ["shared words"])
    store.set_embeddings("room-1", {a[0].id: [1.0] * 8})
    store.set_embeddings("room-2", {b[0].id: [1.0] * 8})

    assert [h.chunk_id for h in store.vector_candidates("room-1", [1.0] * 8)] == [a[0].id]
    assert [h.chunk_id for h in store.keyword_candidates("room-1", "shared")] == [a[0].id]


def test_embedding_in_other_room_rejected(store) -> None:
    mine = _file(store, room_id="room-1")
    chunks = store.insert_chunks("room-1", mine.id, mine.file_name, ["x"])
    with pytest.raises(PersistenceFailure):
        store.set_embeddings("room-2", {chunks[0].id: [1.0] * 8})


def test_delete_cascades_to_chunks(store) -> None:
    record = _file(store)
    store.insert_chunks("room-1", record.id, record.file_name, ["a", "b"])
    store.delete_file("room-1", record.id)
    assert store.count_chunks("room-1") == {"total": 0, "embedded": 0, "pending": 0}
    with pytest.raises(FileNotFound):
        store.get_file("room-1", record.id)
