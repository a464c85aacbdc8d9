"""Upload registration, deletion and explicit reprocessing of source files."""

import logging
from pathlib import PurePath
from typing import Optional

from .config import UploadConfig
from .errors import InvalidTransition, UploadRejected
from .file_state import Failed, Reset, state_fields, state_of, transition
from .logging_config import get_audit_logger
from .models import SourceFile
from .store import ChunkStore, FileStore

logger = logging.getLogger(__name__)


def validate_upload(file_name: str, data: bytes, mime_type: str, config: UploadConfig) -> None:
    """Reject empty, oversized or unsupported uploads."""
    size = len(data)
    if size == 0:
        raise UploadRejected(f"{file_name} is empty")
    if size > config.max_file_size:
        limit_mb = config.max_file_size / (1024 * 1024)
        raise UploadRejected(f"{file_name} is {size} bytes; the limit is {limit_mb:.0f}MB")

    ext = PurePath(file_name).suffix.lower()
    if (mime_type or "").lower() not in config.allowed_mime_types and ext not in config.allowed_extensions:
        raise UploadRejected(
            f"Unsupported file type for {file_name} ({mime_type}). "
            f"Allowed extensions: {', '.join(config.allowed_extensions)}"
        )


def register_upload(
    files: FileStore,
    room_id: str,
    file_name: str,
    data: bytes,
    mime_type: str,
    config: Optional[UploadConfig] = None,
) -> SourceFile:
    """Validate an upload and create its pending file record holding the raw bytes."""
    config = config or UploadConfig()
    validate_upload(file_name, data, mime_type, config)

    record = files.create_file(SourceFile(
        room_id=room_id,
        file_name=file_name,
        file_size=len(data),
        mime_type=mime_type,
        file_data=data,
    ))
    get_audit_logger("ingest").info(
        "file_uploaded",
        room_id=room_id,
        file_id=record.id,
        file_name=file_name,
        file_size=len(data),
        mime_type=mime_type,
        event_type="upload",
    )
    return record


def delete_file(files: FileStore, room_id: str, file_id: str) -> None:
    """Delete a file and its chunks."""
    files.delete_file(room_id, file_id)
    get_audit_logger("ingest").info(
        "file_deleted", room_id=room_id, file_id=file_id, event_type="deletion"
    )


def reprocess_file(files: FileStore, chunks: ChunkStore, room_id: str, file_id: str) -> SourceFile:
    """
    Reset a failed file so the processor picks it up again.

    A file that never got chunked goes back to pending; a chunked file resumes
    embedding from the number of chunks that already carry a vector.

    Raises:
        InvalidTransition: The file has not failed, or it must be re-chunked
            and its upload data is no longer stored
    """
    record = files.get_file(room_id, file_id)
    state = state_of(record)
    if not isinstance(state, Failed):
        raise InvalidTransition(
            f"Only failed files can be reprocessed; {file_id} is {record.processing_status.value}"
        )

    counts = chunks.count_chunks(room_id, file_id)
    if record.chunk_count > 0 and counts["total"] != record.chunk_count:
        # Chunk rows went missing; start again from the stored upload if we still have it
        logger.warning(
            f"{file_id} records {record.chunk_count} chunks but {counts['total']} exist"
        )
        total, processed = 0, 0
    else:
        total, processed = record.chunk_count, counts["embedded"]

    if total == 0 and record.file_data is None:
        raise InvalidTransition(
            f"{file_id} must be chunked again but its upload data is gone; "
            f"delete it and upload {record.file_name} again"
        )

    new_state = transition(state, Reset(total=total, processed=processed))
    updated = files.update_file(room_id, file_id, state_fields(new_state))
    logger.info(f"Reset {file_id} for reprocessing ({processed}/{total} chunks embedded)")
    return updated
