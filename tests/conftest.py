"""Shared pytest configuration and fixtures."""

import hashlib
from typing import List, Optional

import pytest

from quarry.core.config import ChunkingConfig, EmbeddingConfig, ProcessorConfig
from quarry.core.embed import EmbeddingProvider
from quarry.core.processor import EmbeddingBatchProcessor
from quarry.core.store import MemoryStore

DIMENSIONS = 8


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring a PostgreSQL database")


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic vectors derived from a hash of the text."""

    model = "fake-embedding"

    def __init__(self, dimensions: int = DIMENSIONS, error: Optional[Exception] = None):
        self.dimensions = dimensions
        self.error = error
        self.calls: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b + 1) / 256 for b in digest[: self.dimensions]]

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.vector_for(t) for t in texts]


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(dimensions=DIMENSIONS)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def make_processor(store, provider):
    """Build a processor over the in-memory store with small batches."""

    def _make(
        provider_override: Optional[EmbeddingProvider] = None,
        batch_size: int = 2,
        chunk_size: int = 60,
        chunk_overlap: int = 0,
        worker_id: str = "worker-a",
        **kwargs,
    ) -> EmbeddingBatchProcessor:
        return EmbeddingBatchProcessor(
            files=store,
            chunks=store,
            provider=provider_override or provider,
            chunking=ChunkingConfig(chunk_size=chunk_size, chunk_overlap=chunk_overlap),
            embedding=EmbeddingConfig(dimensions=DIMENSIONS, batch_size=batch_size),
            processor_config=ProcessorConfig(worker_id=worker_id, lease_seconds=30, claim_attempts=2),
            **kwargs,
        )

    return _make


@pytest.fixture
def provider_factory():
    """The fake provider class, for tests that need a failing or mis-sized one."""
    return FakeEmbeddingProvider
