"""Unit tests for the embedding batch processor."""

import pytest

from quarry.core.errors import FileLocked, RateLimited
from quarry.core.file_state import NO_TEXT_REASON
from quarry.core.models import ProcessingStatus, SourceFile

TEXT = " ".join(f"Sentence number {i} is right here." for i in range(12))


def _upload(store, data: bytes = TEXT.encode(), mime_type: str = "text/plain", file_name: str = "notes.txt"):
    return store.create_file(SourceFile(
        room_id="room-1",
        file_name=file_name,
        file_size=len(data),
        mime_type=mime_type,
        file_data=data,
    ))


def test_first_call_only_chunks(store, provider, make_processor) -> None:
    record = _upload(store)
    result = make_processor().process_next("room-1", record.id)

    assert result.status == ProcessingStatus.PROCESSING
    assert result.processed == 0
    assert result.total > 1
    assert provider.calls == []

    stored = store.get_file("room-1", record.id)
    assert stored.chunk_count == result.total
    assert stored.file_data is None
    assert store.count_chunks("room-1", record.id)["pending"] == result.total


def test_runs_to_completion_monotonically(store, provider, make_processor) -> None:
    record = _upload(store)
    processor = make_processor(batch_size=2)

    first = processor.process_next("room-1", record.id)
    total = first.total
    seen = [first.processed]
    result = first
    for _ in range(50):
        result = processor.process_next("room-1", record.id)
        seen.append(result.processed)
        assert result.total == total
        if result.is_terminal:
            break

    assert result.status == ProcessingStatus.COMPLETED
    assert result.processed == total
    assert seen == sorted(seen)
    assert all(len(call) <= 2 for call in provider.calls)
    assert sum(len(call) for call in provider.calls) == total
    assert store.count_chunks("room-1", record.id) == {"total": total, "embedded": total, "pending": 0}


def test_completed_file_is_a_no_op(store, provider, make_processor) -> None:
    record = _upload(store, data=b"Just one short sentence.")
    processor = make_processor(batch_size=5)
    processor.process_next("room-1", record.id)
    assert processor.process_next("room-1", record.id).status == ProcessingStatus.COMPLETED
    calls = len(provider.calls)

    again = processor.process_next("room-1", record.id)
    assert again.status == ProcessingStatus.COMPLETED
    assert again.processed == again.total == 1
    assert len(provider.calls) == calls


def test_chunks_are_annotated_with_headings(store, make_processor) -> None:
    text = "## Setup\n" + " ".join(f"Step {i} does a thing." for i in range(8))
    record = _upload(store, data=text.encode(), mime_type="text/markdown")
    make_processor(chunk_size=50).process_next("room-1", record.id)

    chunks = store.get_chunks("room-1", record.id)
    assert chunks[0].content.startswith("## Setup")
    assert all(c.content.startswith("## Setup") for c in chunks[1:])


def test_unsupported_format_recorded_as_failure(store, provider, make_processor) -> None:
    record = _upload(store, data=b"\x89PNG", mime_type="image/png", file_name="scan.png")
    result = make_processor().process_next("room-1", record.id)

    assert result.status == ProcessingStatus.FAILED
    assert "Unsupported file type" in result.error_message
    stored = store.get_file("room-1", record.id)
    assert stored.processing_status == ProcessingStatus.FAILED
    assert stored.locked_by is None


def test_failed_file_is_not_retried(store, provider, make_processor) -> None:
    record = _upload(store, data=b"\x89PNG", mime_type="image/png", file_name="scan.png")
    processor = make_processor()
    processor.process_next("room-1", record.id)

    again = processor.process_next("room-1", record.id)
    assert again.status == ProcessingStatus.FAILED
    assert "previously failed" in again.message


def test_no_text_fails(store, make_processor) -> None:
    record = _upload(store, data=b"   \n\n  ")
    result = make_processor().process_next("room-1", record.id)
    assert result.status == ProcessingStatus.FAILED
    assert result.error_message == NO_TEXT_REASON


def test_provider_failure_leaves_no_partial_embeddings(store, provider_factory, make_processor) -> None:
    record = _upload(store)
    failing = provider_factory(error=RateLimited("slow down"))
    processor = make_processor(provider_override=failing)

    chunked = processor.process_next("room-1", record.id)
    result = processor.process_next("room-1", record.id)

    assert result.status == ProcessingStatus.FAILED
    assert "slow down" in result.error_message
    assert result.total == chunked.total
    assert store.count_chunks("room-1", record.id)["embedded"] == 0


def test_wrong_vector_count_is_provider_failure(store, provider, make_processor) -> None:
    class ShortProvider(type(provider)):
        def embed(self, texts):
            return super().embed(texts)[:-1]

    record = _upload(store)
    processor = make_processor(provider_override=ShortProvider())
    processor.process_next("room-1", record.id)
    result = processor.process_next("room-1", record.id)

    assert result.status == ProcessingStatus.FAILED
    assert "vectors for" in result.error_message
    assert store.count_chunks("room-1", record.id)["embedded"] == 0


def test_wrong_dimensions_is_provider_failure(store, provider_factory, make_processor) -> None:
    record = _upload(store)
    processor = make_processor(provider_override=provider_factory(dimensions=4))
    processor.process_next("room-1", record.id)
    result = processor.process_next("room-1", record.id)

    assert result.status == ProcessingStatus.FAILED
    assert "dimensional" in result.error_message
    assert store.count_chunks("room-1", record.id)["embedded"] == 0


def test_unexpected_error_recorded(store, make_processor) -> None:
    def exploding_extractor(data, mime_type, file_name=None):
        raise RuntimeError("parser crashed")

    record = _upload(store)
    result = make_processor(extractor=exploding_extractor).process_next("room-1", record.id)
    assert result.status == ProcessingStatus.FAILED
    assert result.error_message == "parser crashed"


def test_locked_file_raises_without_mutation(store, make_processor) -> None:
    record = _upload(store)
    store.claim("room-1", record.id, "worker-b", 30)

    with pytest.raises(FileLocked) as exc_info:
        make_processor(worker_id="worker-a").process_next("room-1", record.id)

    assert exc_info.value.locked_by == "worker-b"
    stored = store.get_file("room-1", record.id)
    assert stored.processing_status == ProcessingStatus.PENDING
    assert stored.chunk_count == 0
    assert stored.locked_by == "worker-b"


def test_lease_released_after_each_call(store, make_processor) -> None:
    record = _upload(store)
    make_processor().process_next("room-1", record.id)
    stored = store.get_file("room-1", record.id)
    assert stored.locked_by is None
    assert stored.lease_expires_at is None


def test_interrupted_chunking_is_redone(store, make_processor) -> None:
    record = _upload(store)
    # A previous worker wrote chunks, then died before recording chunk_count
    store.update_file("room-1", record.id, {"processing_status": ProcessingStatus.PROCESSING})
    store.insert_chunks("room-1", record.id, record.file_name, ["stale one", "stale two"])

    result = make_processor().process_next("room-1", record.id)

    contents = [c.content for c in store.get_chunks("room-1", record.id)]
    assert "stale one" not in contents
    assert len(contents) == result.total


def test_two_workers_share_the_work(store, make_processor) -> None:
    record = _upload(store)
    a = make_processor(worker_id="worker-a", batch_size=1)
    b = make_processor(worker_id="worker-b", batch_size=1)

    result = a.process_next("room-1", record.id)
    workers = [b, a]
    for step in range(100):
        result = workers[step % 2].process_next("room-1", record.id)
        if result.is_terminal:
            break

    assert result.status == ProcessingStatus.COMPLETED
    assert result.processed == result.total
