"""Store interfaces and the in-process implementation.

Every read and write is scoped by room id; chunk reads additionally by file id
where the operation concerns a single file.
"""

import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import FileNotFound, LeaseLost, PersistenceFailure
from .lexical import parse_query, rank_documents, tokenize
from .models import (
    DocumentChunk,
    KeywordHit,
    SearchResult,
    SourceFile,
    VectorHit,
    new_id,
    utcnow,
)

UPDATABLE_FILE_FIELDS = {
    "processing_status",
    "chunk_count",
    "processed_chunks",
    "error_message",
    "file_data",
}


class FileStore(ABC):
    """Persistence for SourceFile records, including the claim/lease protocol."""

    @abstractmethod
    def create_file(self, record: SourceFile) -> SourceFile:
        ...

    @abstractmethod
    def get_file(self, room_id: str, file_id: str) -> SourceFile:
        """Raises FileNotFound when absent."""

    @abstractmethod
    def list_files(self, room_id: str) -> List[SourceFile]:
        """Files of the room, newest first."""

    @abstractmethod
    def update_file(
        self,
        room_id: str,
        file_id: str,
        changes: Dict[str, Any],
        worker_id: Optional[str] = None,
    ) -> SourceFile:
        """
        Apply column changes. With ``worker_id`` the write only succeeds while
        that worker holds the lease, otherwise LeaseLost is raised.
        """

    @abstractmethod
    def claim(self, room_id: str, file_id: str, worker_id: str, lease_seconds: int) -> Optional[SourceFile]:
        """Take the lease if free, expired or already ours; None when another worker holds it."""

    @abstractmethod
    def release(self, room_id: str, file_id: str, worker_id: str) -> None:
        """Drop the lease if this worker holds it."""

    @abstractmethod
    def delete_file(self, room_id: str, file_id: str) -> None:
        """Delete the record and, by cascade, its chunks."""


class ChunkStore(ABC):
    """Persistence for document chunks and the two hybrid-search candidate lookups."""

    @abstractmethod
    def insert_chunks(self, room_id: str, file_id: str, file_name: str, contents: List[str]) -> List[DocumentChunk]:
        """Bulk insert with null embeddings; chunk_index follows list order."""

    @abstractmethod
    def delete_file_chunks(self, room_id: str, file_id: str) -> int:
        ...

    @abstractmethod
    def pending_chunks(self, room_id: str, file_id: str, limit: int) -> List[DocumentChunk]:
        """Chunks of the file without an embedding, ordered by chunk_index."""

    @abstractmethod
    def set_embeddings(self, room_id: str, embeddings: Dict[str, List[float]]) -> None:
        """Assign all vectors atomically: either every chunk is updated or none is."""

    @abstractmethod
    def count_chunks(self, room_id: str, file_id: Optional[str] = None) -> Dict[str, int]:
        """{'total': ..., 'embedded': ..., 'pending': ...}"""

    @abstractmethod
    def vector_candidates(self, room_id: str, query_embedding: List[float]) -> List[VectorHit]:
        """Every embedded chunk of the room with its cosine similarity."""

    @abstractmethod
    def keyword_candidates(self, room_id: str, query_text: str) -> List[KeywordHit]:
        """Embedded chunks of the room matching the keyword query, with rank > 0."""

    def hybrid_search(
        self,
        room_id: str,
        query_embedding: List[float],
        query_text: str,
        threshold: float,
        top_k: int,
        vector_weight: float,
        keyword_weight: float,
    ) -> Optional[List[SearchResult]]:
        """Fused, ranked results computed inside the store; None when the store cannot fuse."""
        return None


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """1 - cosine distance for each row; zero vectors score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


class MemoryStore(FileStore, ChunkStore):
    """Thread-safe in-process store used by tests and offline runs."""

    def __init__(self, dimensions: Optional[int] = None):
        self.dimensions = dimensions
        self._files: Dict[str, SourceFile] = {}
        self._chunks: Dict[str, DocumentChunk] = {}
        self._lock = threading.RLock()

    # -- files ---------------------------------------------------------------

    def _require(self, room_id: str, file_id: str) -> SourceFile:
        record = self._files.get(file_id)
        if record is None or record.room_id != room_id:
            raise FileNotFound(room_id, file_id)
        return record

    def create_file(self, record: SourceFile) -> SourceFile:
        with self._lock:
            if record.id in self._files:
                raise PersistenceFailure(f"File {record.id} already exists")
            self._files[record.id] = record.model_copy()
            return record.model_copy()

    def get_file(self, room_id: str, file_id: str) -> SourceFile:
        with self._lock:
            return self._require(room_id, file_id).model_copy()

    def list_files(self, room_id: str) -> List[SourceFile]:
        with self._lock:
            files = [f.model_copy() for f in self._files.values() if f.room_id == room_id]
        return sorted(files, key=lambda f: f.created_at, reverse=True)

    def update_file(
        self,
        room_id: str,
        file_id: str,
        changes: Dict[str, Any],
        worker_id: Optional[str] = None,
    ) -> SourceFile:
        unknown = set(changes) - UPDATABLE_FILE_FIELDS
        if unknown:
            raise PersistenceFailure(f"Cannot update fields: {sorted(unknown)}")
        with self._lock:
            record = self._require(room_id, file_id)
            if worker_id is not None and not self._holds_lease(record, worker_id):
                raise LeaseLost(f"Worker {worker_id} no longer holds the lease on {file_id}")
            updated = record.model_copy(update={**changes, "updated_at": utcnow()})
            self._files[file_id] = updated
            return updated.model_copy()

    @staticmethod
    def _holds_lease(record: SourceFile, worker_id: str) -> bool:
        return (
            record.locked_by == worker_id
            and record.lease_expires_at is not None
            and record.lease_expires_at > utcnow()
        )

    def claim(self, room_id: str, file_id: str, worker_id: str, lease_seconds: int) -> Optional[SourceFile]:
        with self._lock:
            record = self._require(room_id, file_id)
            now = utcnow()
            free = (
                record.locked_by is None
                or record.locked_by == worker_id
                or record.lease_expires_at is None
                or record.lease_expires_at <= now
            )
            if not free:
                return None
            claimed = record.model_copy(update={
                "locked_by": worker_id,
                "lease_expires_at": now + timedelta(seconds=lease_seconds),
                "updated_at": now,
            })
            self._files[file_id] = claimed
            return claimed.model_copy()

    def release(self, room_id: str, file_id: str, worker_id: str) -> None:
        with self._lock:
            record = self._files.get(file_id)
            if record is None or record.room_id != room_id or record.locked_by != worker_id:
                return
            self._files[file_id] = record.model_copy(update={"locked_by": None, "lease_expires_at": None})

    def delete_file(self, room_id: str, file_id: str) -> None:
        with self._lock:
            self._require(room_id, file_id)
            del self._files[file_id]
            self._delete_chunks_where(lambda c: c.file_id == file_id)

    # -- chunks --------------------------------------------------------------

    def _delete_chunks_where(self, predicate) -> int:
        doomed = [cid for cid, chunk in self._chunks.items() if predicate(chunk)]
        for cid in doomed:
            del self._chunks[cid]
        return len(doomed)

    def insert_chunks(self, room_id: str, file_id: str, file_name: str, contents: List[str]) -> List[DocumentChunk]:
        with self._lock:
            self._require(room_id, file_id)
            now = utcnow()
            created = [
                DocumentChunk(
                    id=new_id(),
                    room_id=room_id,
                    file_id=file_id,
                    file_name=file_name,
                    chunk_index=i,
                    content=content,
                    created_at=now,
                )
                for i, content in enumerate(contents)
            ]
            for chunk in created:
                self._chunks[chunk.id] = chunk
            return [c.model_copy() for c in created]

    def delete_file_chunks(self, room_id: str, file_id: str) -> int:
        with self._lock:
            return self._delete_chunks_where(lambda c: c.room_id == room_id and c.file_id == file_id)

    def pending_chunks(self, room_id: str, file_id: str, limit: int) -> List[DocumentChunk]:
        with self._lock:
            pending = [
                c for c in self._chunks.values()
                if c.room_id == room_id and c.file_id == file_id and c.embedding is None
            ]
        pending.sort(key=lambda c: c.chunk_index)
        return [c.model_copy() for c in pending[:limit]]

    def set_embeddings(self, room_id: str, embeddings: Dict[str, List[float]]) -> None:
        with self._lock:
            for chunk_id, vector in embeddings.items():
                chunk = self._chunks.get(chunk_id)
                if chunk is None or chunk.room_id != room_id:
                    raise PersistenceFailure(f"Chunk {chunk_id} not found in room {room_id}")
                if self.dimensions is not None and len(vector) != self.dimensions:
                    raise PersistenceFailure(
                        f"Expected {self.dimensions} dimensions, got {len(vector)} for chunk {chunk_id}"
                    )
            for chunk_id, vector in embeddings.items():
                self._chunks[chunk_id] = self._chunks[chunk_id].model_copy(
                    update={"embedding": [float(x) for x in vector]}
                )

    def get_chunks(self, room_id: str, file_id: str) -> List[DocumentChunk]:
        with self._lock:
            chunks = [c.model_copy() for c in self._chunks.values()
                      if c.room_id == room_id and c.file_id == file_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    def count_chunks(self, room_id: str, file_id: Optional[str] = None) -> Dict[str, int]:
        with self._lock:
            scoped = [
                c for c in self._chunks.values()
                if c.room_id == room_id and (file_id is None or c.file_id == file_id)
            ]
        embedded = sum(1 for c in scoped if c.embedding is not None)
        return {"total": len(scoped), "embedded": embedded, "pending": len(scoped) - embedded}

    def _embedded(self, room_id: str) -> List[DocumentChunk]:
        with self._lock:
            chunks = [c for c in self._chunks.values() if c.room_id == room_id and c.embedding is not None]
        return sorted(chunks, key=lambda c: (c.created_at, c.file_id, c.chunk_index))

    def vector_candidates(self, room_id: str, query_embedding: List[float]) -> List[VectorHit]:
        chunks = self._embedded(room_id)
        if not chunks:
            return []
        query = np.asarray(query_embedding, dtype=np.float64)
        matrix = np.asarray([c.embedding for c in chunks], dtype=np.float64)
        if matrix.shape[1] != query.shape[0]:
            raise PersistenceFailure(
                f"Query has {query.shape[0]} dimensions, stored vectors have {matrix.shape[1]}"
            )
        sims = cosine_similarities(matrix, query)
        return [
            VectorHit(chunk_id=c.id, content=c.content, file_name=c.file_name, similarity=float(s))
            for c, s in zip(chunks, sims)
        ]

    def keyword_candidates(self, room_id: str, query_text: str) -> List[KeywordHit]:
        query = parse_query(query_text)
        if query.is_empty:
            return []
        chunks = self._embedded(room_id)
        ranks = rank_documents(query, [tokenize(c.content) for c in chunks])
        return [
            KeywordHit(chunk_id=c.id, content=c.content, file_name=c.file_name, rank=rank)
            for c, rank in zip(chunks, ranks)
            if rank > 0
        ]
