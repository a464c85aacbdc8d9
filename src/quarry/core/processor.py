"""Resumable embedding pipeline: chunk once, then embed in bounded batches.

Each ``process_next`` call is one unit of work. The first call on a file
extracts, chunks and persists chunk rows without vectors; every later call
embeds one batch of pending chunks until the file is completed. A scheduler
keeps calling until the reported status is terminal.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from .chunking import split_into_chunks
from .config import ChunkingConfig, EmbeddingConfig, ProcessorConfig
from .embed import EmbeddingProvider
from .errors import (
    ExtractionFailure,
    FileLocked,
    LeaseLost,
    PersistenceFailure,
    ProviderFailure,
    QuarryError,
)
from .extract import extract_text
from .file_state import (
    BatchEmbedded,
    Chunking,
    ChunksCreated,
    Claimed,
    Completed,
    Drained,
    Embedding,
    Failed,
    Failure,
    FileState,
    file_progress,
    reported_status,
    state_fields,
    state_of,
    transition,
)
from .headings import add_contextual_headers
from .logging_config import get_audit_logger, log_chunking_event, log_embedding_batch, log_file_failed
from .models import DocumentChunk, ProcessResult, SourceFile
from .store import ChunkStore, FileStore

logger = logging.getLogger(__name__)

Extractor = Callable[[bytes, str, Optional[str]], str]


def _result(record: SourceFile, message: str) -> ProcessResult:
    progress = file_progress(record)
    return ProcessResult(
        file_id=record.id,
        status=reported_status(record),
        message=message,
        processed=progress.processed,
        total=progress.total,
        error_message=record.error_message,
    )


class EmbeddingBatchProcessor:
    """Drives one file at a time through chunking and batched embedding."""

    def __init__(
        self,
        files: FileStore,
        chunks: ChunkStore,
        provider: EmbeddingProvider,
        chunking: Optional[ChunkingConfig] = None,
        embedding: Optional[EmbeddingConfig] = None,
        processor_config: Optional[ProcessorConfig] = None,
        extractor: Extractor = extract_text,
    ):
        self.files = files
        self.chunks = chunks
        self.provider = provider
        self.chunking = chunking or ChunkingConfig()
        self.embedding = embedding or EmbeddingConfig()
        self.processor_config = processor_config or ProcessorConfig()
        self.extractor = extractor

        self.chunking.validate()
        self.embedding.validate()
        self.processor_config.validate()

        self.worker_id = self.processor_config.worker_id
        self.audit = get_audit_logger("embedding_processor")

    def process_next(self, room_id: str, file_id: str) -> ProcessResult:
        """
        Perform the next unit of work for a file.

        Args:
            room_id: Tenant scope of the file
            file_id: File to advance

        Returns:
            Status and progress after this step

        Raises:
            FileNotFound: No such file in the room
            FileLocked: Another worker holds a live lease
        """
        record = self.files.get_file(room_id, file_id)
        state = state_of(record)

        if isinstance(state, Completed):
            return _result(record, "File already processed")
        if isinstance(state, Failed):
            return _result(record, f"Processing previously failed: {state.reason}")

        claimed = self.files.claim(room_id, file_id, self.worker_id, self.processor_config.lease_seconds)
        if claimed is None:
            current = self.files.get_file(room_id, file_id)
            raise FileLocked(file_id, current.locked_by)

        state = state_of(claimed)
        if isinstance(state, (Completed, Failed)):
            # Finished by another worker between the read and the claim
            self._release(room_id, file_id)
            return _result(claimed, "File already processed")

        try:
            state = transition(state, Claimed())
            if isinstance(state, Chunking):
                return self._chunk_file(claimed, state)
            return self._embed_batch(claimed, state)
        except LeaseLost as e:
            # Another worker took over; leave the record to them
            logger.warning(f"Lease lost on {file_id}: {e}")
            return _result(self.files.get_file(room_id, file_id), "Lease lost, work abandoned")
        except QuarryError as e:
            return self._fail(claimed, state, e)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {file_id}")
            return self._fail(claimed, state, e)
        finally:
            self._release(room_id, file_id)

    # -- phases --------------------------------------------------------------

    def _save(self, record: SourceFile, state: FileState, **extra) -> SourceFile:
        changes = state_fields(state)
        changes.update(extra)
        return self.files.update_file(record.room_id, record.id, changes, worker_id=self.worker_id)

    def _chunk_file(self, record: SourceFile, state: Chunking) -> ProcessResult:
        start_time = time.time()
        record = self._save(record, state)

        if record.file_data is None:
            raise ExtractionFailure(f"No upload data stored for {record.file_name}")

        text = self.extractor(record.file_data, record.mime_type, record.file_name)
        pieces = split_into_chunks(text, self.chunking.chunk_size, self.chunking.chunk_overlap)
        if self.chunking.contextual_headers:
            pieces = add_contextual_headers(
                pieces,
                text,
                max_chars=self.chunking.max_annotate_chars,
                max_chunks=self.chunking.max_annotate_chunks,
            )

        # Chunks left by an interrupted earlier attempt
        stale = self.chunks.delete_file_chunks(record.room_id, record.id)
        if stale:
            logger.info(f"Removed {stale} stale chunks of {record.id} before re-chunking")

        next_state = transition(state, ChunksCreated(len(pieces)))
        if isinstance(next_state, Failed):
            failed = self._save(record, next_state)
            log_file_failed(self.audit, record.room_id, record.id, "NoText", next_state.reason)
            return _result(failed, next_state.reason)

        self.chunks.insert_chunks(record.room_id, record.id, record.file_name, pieces)
        updated = self._save(record, next_state, file_data=None)

        log_chunking_event(
            self.audit,
            room_id=record.room_id,
            file_id=record.id,
            file_name=record.file_name,
            text_length=len(text),
            chunks_created=len(pieces),
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        return _result(updated, f"Created {len(pieces)} chunks")

    def _embed_batch(self, record: SourceFile, state: Embedding) -> ProcessResult:
        start_time = time.time()
        batch = self.chunks.pending_chunks(record.room_id, record.id, self.embedding.batch_size)

        if not batch:
            updated = self._save(record, transition(state, Drained()))
            logger.info(f"All chunks of {record.id} embedded")
            return _result(updated, "All chunks embedded")

        vectors = self.provider.embed([chunk.content for chunk in batch])
        self.chunks.set_embeddings(record.room_id, self._pair(batch, vectors))

        next_state = transition(state, BatchEmbedded(len(batch)))
        updated = self._save(record, next_state)

        progress = file_progress(updated)
        log_embedding_batch(
            self.audit,
            room_id=record.room_id,
            file_id=record.id,
            batch_size=len(batch),
            processed=progress.processed,
            total=progress.total,
            model=self.provider.model,
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        return _result(updated, f"Embedded {progress.processed}/{progress.total} chunks")

    def _pair(self, batch: List[DocumentChunk], vectors: List[List[float]]) -> Dict[str, List[float]]:
        if len(vectors) != len(batch):
            raise ProviderFailure(f"Provider returned {len(vectors)} vectors for {len(batch)} chunks")
        expected = self.embedding.dimensions
        for vector in vectors:
            if len(vector) != expected:
                raise ProviderFailure(f"Expected {expected}-dimensional vectors, got {len(vector)}")
        return {chunk.id: vector for chunk, vector in zip(batch, vectors)}

    # -- failure and cleanup -------------------------------------------------

    def _fail(self, record: SourceFile, state: FileState, error: Exception) -> ProcessResult:
        reason = str(error) or type(error).__name__
        failed_state = transition(state, Failure(reason))
        try:
            updated = self._save(record, failed_state)
        except PersistenceFailure:
            logger.error(f"Could not record failure of {record.id}: {reason}")
            raise
        log_file_failed(self.audit, record.room_id, record.id, type(error).__name__, reason)
        return _result(updated, f"Processing failed: {reason}")

    def _release(self, room_id: str, file_id: str) -> None:
        try:
            self.files.release(room_id, file_id, self.worker_id)
        except PersistenceFailure as e:
            # The lease expires on its own
            logger.warning(f"Failed to release lease on {file_id}: {e}")
