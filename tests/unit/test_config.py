"""Unit tests for configuration loading and validation."""

import math

import pytest

from quarry.core.config import (
    ChunkingConfig,
    EmbeddingConfig,
    QuarryConfig,
    RetrievalConfig,
    load_config,
    validate_search_params,
)
from quarry.core.errors import ConfigurationError

ENV_VARS = [
    "DATABASE_URL", "CHUNK_SIZE", "CHUNK_OVERLAP", "EMBED_MODEL", "EMBED_DIMENSIONS",
    "EMBED_BATCH_SIZE", "VECTOR_WEIGHT", "KEYWORD_WEIGHT", "WORKER_ID", "OPENAI_API_KEY",
    "EMBED_PROVIDER", "MATCH_THRESHOLD", "MATCH_COUNT", "CONTEXTUAL_HEADERS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    config = QuarryConfig()
    config.validate()
    assert config.chunking.chunk_size == 1000
    assert config.chunking.chunk_overlap == 200
    assert config.embedding.batch_size == 20
    assert config.embedding.dimensions == 1536
    assert (config.retrieval.vector_weight, config.retrieval.keyword_weight) == (0.6, 0.4)
    assert config.retrieval.match_threshold == 0.2
    assert config.retrieval.match_count == 5


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("CHUNK_SIZE", "500")
    monkeypatch.setenv("CHUNK_OVERLAP", "50")
    monkeypatch.setenv("EMBED_MODEL", "text-embedding-3-large")
    monkeypatch.setenv("VECTOR_WEIGHT", "0.7")
    monkeypatch.setenv("WORKER_ID", "worker-7")
    monkeypatch.setenv("CONTEXTUAL_HEADERS", "false")

    config = load_config()
    assert config.chunking.chunk_size == 500
    assert config.chunking.chunk_overlap == 50
    assert config.chunking.contextual_headers is False
    assert config.embedding.dimensions == 3072
    assert config.retrieval.vector_weight == 0.7
    assert config.processor.worker_id == "worker-7"


def test_non_numeric_setting(monkeypatch) -> None:
    monkeypatch.setenv("CHUNK_SIZE", "large")
    with pytest.raises(ConfigurationError):
        load_config()


def test_invalid_batch_size(monkeypatch) -> None:
    monkeypatch.setenv("EMBED_BATCH_SIZE", "0")
    with pytest.raises(ConfigurationError):
        load_config()


@pytest.mark.parametrize("config", [
    ChunkingConfig(chunk_size=0),
    EmbeddingConfig(provider="cohere"),
    EmbeddingConfig(dimensions=0),
    RetrievalConfig(vector_weight=-0.1),
    RetrievalConfig(vector_weight=0.0, keyword_weight=0.0),
    RetrievalConfig(match_count=0),
])
def test_invalid_configs(config) -> None:
    with pytest.raises(ConfigurationError):
        config.validate()


def test_search_params_must_be_finite() -> None:
    with pytest.raises(ConfigurationError):
        validate_search_params(math.nan, 5, 0.6, 0.4)
    with pytest.raises(ConfigurationError):
        validate_search_params(0.2, 5, math.inf, 0.4)
    validate_search_params(0.2, 5, 1.0, 0.0)
