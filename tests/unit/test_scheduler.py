"""Unit tests for the scheduler driver."""

import pytest

from quarry.core.errors import FileLocked
from quarry.core.ingest import register_upload
from quarry.core.models import ProcessingStatus
from quarry.core.scheduler import drive_file, process_room

TEXT = " ".join(f"Paragraph {i} contains a sentence." for i in range(10)).encode()


def test_drive_file_runs_to_completion(store, make_processor) -> None:
    record = register_upload(store, "room-1", "a.txt", TEXT, "text/plain")
    result = drive_file(make_processor(batch_size=3), "room-1", record.id)
    assert result.status == ProcessingStatus.COMPLETED
    assert result.processed == result.total


def test_drive_file_respects_max_steps(store, make_processor) -> None:
    record = register_upload(store, "room-1", "a.txt", TEXT, "text/plain")
    result = drive_file(make_processor(batch_size=1), "room-1", record.id, max_steps=2)
    assert result.status == ProcessingStatus.PROCESSING
    assert result.processed == 1


def test_drive_file_gives_up_on_held_lock(store, make_processor) -> None:
    record = register_upload(store, "room-1", "a.txt", TEXT, "text/plain")
    store.claim("room-1", record.id, "someone-else", 300)

    with pytest.raises(FileLocked):
        drive_file(make_processor(), "room-1", record.id, wait_min=0, wait_max=0)


def test_drive_file_retries_until_lock_released(store, make_processor) -> None:
    record = register_upload(store, "room-1", "a.txt", TEXT, "text/plain")
    store.claim("room-1", record.id, "someone-else", 300)
    processor = make_processor()

    original = processor.process_next
    attempts = []

    def process_next(room_id, file_id):
        attempts.append(file_id)
        if len(attempts) == 1:
            try:
                return original(room_id, file_id)
            finally:
                store.release(room_id, file_id, "someone-else")
        return original(room_id, file_id)

    processor.process_next = process_next
    result = drive_file(processor, "room-1", record.id, wait_min=0, wait_max=0)
    assert result.status == ProcessingStatus.COMPLETED


def test_process_room_drives_every_file(store, make_processor) -> None:
    first = register_upload(store, "room-1", "a.txt", TEXT, "text/plain")
    second = register_upload(store, "room-1", "b.txt", b"   ", "text/plain")
    register_upload(store, "room-2", "c.txt", TEXT, "text/plain")

    results = process_room(store, make_processor(batch_size=5), "room-1")
    assert set(results) == {first.id, second.id}
    assert results[first.id].status == ProcessingStatus.COMPLETED
    assert results[second.id].status == ProcessingStatus.FAILED
