"""Records shared by the stores, the processor and the retriever."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceFile(BaseModel):
    """One uploaded artifact and its processing progress."""
    id: str = Field(default_factory=new_id)
    room_id: str
    file_name: str
    file_size: int = 0
    mime_type: str = "application/octet-stream"
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    chunk_count: int = 0
    processed_chunks: int = 0
    error_message: Optional[str] = None
    file_data: Optional[bytes] = None  # Raw upload, cleared once chunked
    locked_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DocumentChunk(BaseModel):
    """A retrievable unit of a source file."""
    id: str = Field(default_factory=new_id)
    room_id: str
    file_id: str
    file_name: str
    chunk_index: int
    content: str
    embedding: Optional[List[float]] = None
    created_at: datetime = Field(default_factory=utcnow)


@dataclass
class HeadingInfo:
    """A heading line found in normalized text."""
    level: int
    text: str
    position: int


@dataclass
class VectorHit:
    """Vector candidate: an embedded chunk and its cosine similarity to the query."""
    chunk_id: str
    content: str
    file_name: str
    similarity: float


@dataclass
class KeywordHit:
    """Keyword candidate: an embedded chunk matching the lexical query."""
    chunk_id: str
    content: str
    file_name: str
    rank: float


@dataclass
class SearchResult:
    """Fused hybrid search row."""
    chunk_id: str
    content: str
    file_name: str
    similarity: float
    keyword_rank: float
    combined_score: float


@dataclass
class Progress:
    processed: int
    total: int
    percentage: float


@dataclass
class ProcessResult:
    """Outcome of a single processor invocation."""
    file_id: str
    status: ProcessingStatus
    message: str
    processed: int
    total: int
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)
