"""Drive files to a terminal status by calling the processor repeatedly."""

import logging
from typing import Dict, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import FileLocked
from .models import ProcessResult
from .processor import EmbeddingBatchProcessor
from .store import FileStore

logger = logging.getLogger(__name__)


def drive_file(
    processor: EmbeddingBatchProcessor,
    room_id: str,
    file_id: str,
    max_steps: Optional[int] = None,
    wait_min: float = 1.0,
    wait_max: float = 10.0,
) -> ProcessResult:
    """
    Invoke ``process_next`` until the file completes or fails.

    A file locked by another worker is retried with exponential backoff; once
    the attempts are used up FileLocked propagates.

    Args:
        processor: Processor to drive
        room_id: Tenant scope
        file_id: File to process
        max_steps: Stop early after this many invocations
        wait_min: Minimum backoff between lock retries, in seconds
        wait_max: Maximum backoff between lock retries, in seconds
    """
    retrying = Retrying(
        retry=retry_if_exception_type(FileLocked),
        stop=stop_after_attempt(processor.processor_config.claim_attempts),
        wait=wait_exponential(min=wait_min, max=wait_max),
        reraise=True,
    )

    steps = 0
    while True:
        result = retrying(processor.process_next, room_id, file_id)
        steps += 1
        logger.debug(f"{file_id}: {result.status.value} {result.processed}/{result.total}")
        if result.is_terminal:
            return result
        if max_steps is not None and steps >= max_steps:
            return result


def process_room(
    files: FileStore,
    processor: EmbeddingBatchProcessor,
    room_id: str,
    **kwargs,
) -> Dict[str, ProcessResult]:
    """Drive every file of a room to a terminal status; returns the final result per file id."""
    results = {}
    for record in files.list_files(room_id):
        results[record.id] = drive_file(processor, room_id, record.id, **kwargs)
    return results
