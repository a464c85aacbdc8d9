"""Explicit processing state for a source file.

The persisted record only carries ``processing_status``, ``chunk_count`` and
``processed_chunks``. ``state_of`` reads those fields into one of the tagged
states below, ``transition`` applies an event, and ``state_fields`` turns the
result back into column values.
"""

from dataclasses import dataclass
from typing import Any, Dict, Union

from .errors import InvalidTransition
from .models import ProcessingStatus, Progress, SourceFile


@dataclass(frozen=True)
class Pending:
    """Uploaded, nobody has started on it."""


@dataclass(frozen=True)
class Chunking:
    """Claimed for processing but chunks have not been written yet."""


@dataclass(frozen=True)
class Embedding:
    processed: int
    total: int


@dataclass(frozen=True)
class Completed:
    total: int


@dataclass(frozen=True)
class Failed:
    reason: str


FileState = Union[Pending, Chunking, Embedding, Completed, Failed]


# Events

@dataclass(frozen=True)
class Claimed:
    pass


@dataclass(frozen=True)
class ChunksCreated:
    count: int


@dataclass(frozen=True)
class BatchEmbedded:
    count: int


@dataclass(frozen=True)
class Drained:
    """No chunk of the file is still waiting for a vector."""


@dataclass(frozen=True)
class Failure:
    reason: str


@dataclass(frozen=True)
class Reset:
    """Explicit reprocess request for a failed file."""
    total: int
    processed: int


Event = Union[Claimed, ChunksCreated, BatchEmbedded, Drained, Failure, Reset]

NO_TEXT_REASON = "No text could be extracted from the file"


def state_of(record: SourceFile) -> FileState:
    """Read the tagged state from a file record."""
    status = record.processing_status
    if status == ProcessingStatus.FAILED:
        return Failed(record.error_message or "Processing failed")
    if record.chunk_count <= 0:
        if status == ProcessingStatus.PROCESSING:
            return Chunking()
        return Pending()
    if status == ProcessingStatus.COMPLETED or record.processed_chunks >= record.chunk_count:
        return Completed(record.chunk_count)
    return Embedding(record.processed_chunks, record.chunk_count)


def _embedding_or_completed(processed: int, total: int) -> FileState:
    processed = min(max(processed, 0), total)
    if processed >= total:
        return Completed(total)
    return Embedding(processed, total)


def transition(state: FileState, event: Event) -> FileState:
    """Apply an event; raises InvalidTransition for events that do not apply."""
    if isinstance(event, Failure):
        if isinstance(state, (Completed, Failed)):
            raise InvalidTransition(f"Cannot fail a file in state {state!r}")
        return Failed(event.reason)

    if isinstance(state, Pending) and isinstance(event, Claimed):
        return Chunking()

    if isinstance(state, Chunking) and isinstance(event, Claimed):
        # A previous worker died mid-chunking; start the phase again.
        return Chunking()

    if isinstance(state, Chunking) and isinstance(event, ChunksCreated):
        if event.count <= 0:
            return Failed(NO_TEXT_REASON)
        return Embedding(0, event.count)

    if isinstance(state, Embedding) and isinstance(event, Claimed):
        return state

    if isinstance(state, Embedding) and isinstance(event, BatchEmbedded):
        return _embedding_or_completed(state.processed + event.count, state.total)

    if isinstance(state, Embedding) and isinstance(event, Drained):
        return Completed(state.total)

    if isinstance(state, Failed) and isinstance(event, Reset):
        if event.total <= 0:
            return Pending()
        return _embedding_or_completed(event.processed, event.total)

    raise InvalidTransition(
        f"Event {type(event).__name__} does not apply to state {type(state).__name__}"
    )


def state_fields(state: FileState) -> Dict[str, Any]:
    """Column values that persist a state."""
    if isinstance(state, Pending):
        return {"processing_status": ProcessingStatus.PENDING, "chunk_count": 0,
                "processed_chunks": 0, "error_message": None}
    if isinstance(state, Chunking):
        return {"processing_status": ProcessingStatus.PROCESSING, "chunk_count": 0,
                "processed_chunks": 0, "error_message": None}
    if isinstance(state, Embedding):
        return {"processing_status": ProcessingStatus.PROCESSING, "chunk_count": state.total,
                "processed_chunks": state.processed, "error_message": None}
    if isinstance(state, Completed):
        return {"processing_status": ProcessingStatus.COMPLETED, "chunk_count": state.total,
                "processed_chunks": state.total, "error_message": None}
    # Failed keeps whatever progress counters were already recorded
    return {"processing_status": ProcessingStatus.FAILED, "error_message": state.reason}


def reported_status(record: SourceFile) -> ProcessingStatus:
    """Status a caller should display, derived from the counters."""
    state = state_of(record)
    if isinstance(state, Failed):
        return ProcessingStatus.FAILED
    if isinstance(state, Completed):
        return ProcessingStatus.COMPLETED
    if isinstance(state, Pending):
        return ProcessingStatus.PENDING
    return ProcessingStatus.PROCESSING


def file_progress(record: SourceFile) -> Progress:
    total = record.chunk_count
    processed = min(record.processed_chunks, total) if total > 0 else 0
    percentage = round(processed / total * 100, 1) if total > 0 else 0.0
    return Progress(processed=processed, total=total, percentage=percentage)
