"""Embedding providers: OpenAI by default, sentence-transformers for air-gapped use."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import openai

from .config import EmbeddingConfig
from .errors import (
    ConfigurationError,
    ProviderAuthError,
    ProviderFailure,
    RateLimited,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Turns a batch of strings into fixed-length vectors, one request per batch."""

    dimensions: int
    model: str

    @abstractmethod
    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch; raises a ProviderFailure subclass on any error."""

    def embed_query(self, text: str) -> List[float]:
        vectors = self.embed([text])
        if len(vectors) != 1:
            raise ProviderFailure(f"Expected one query vector, got {len(vectors)}")
        return vectors[0]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API. Retries are left to the caller."""

    def __init__(self, config: EmbeddingConfig, client: Optional[openai.OpenAI] = None):
        self.config = config
        self.model = config.model
        self.dimensions = config.dimensions

        if client is None:
            if not config.api_key:
                raise ConfigurationError("OpenAI API key not found in environment variables")
            client = openai.OpenAI(
                api_key=config.api_key,
                timeout=config.timeout,
                max_retries=0,
            )
        self.client = client

    def _truncate(self, texts: List[str]) -> List[str]:
        # Simple token approximation: ~4 chars per token
        limit = self.config.max_tokens * 4
        truncated_texts = []
        for text in texts:
            if len(text) > limit:
                logger.warning(f"Truncated text from {len(text)} to {limit} characters")
                truncated_texts.append(text[:limit])
            else:
                truncated_texts.append(text)
        return truncated_texts

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts.

        Args:
            texts: Strings to embed

        Returns:
            One vector per input, in input order
        """
        if not texts:
            return []

        kwargs = {"model": self.model, "input": self._truncate(texts)}
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        try:
            response = self.client.embeddings.create(**kwargs)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderAuthError(f"Embedding provider rejected credentials: {e}") from e
        except openai.RateLimitError as e:
            raise RateLimited(f"Embedding provider rate limit exceeded: {e}") from e
        except (openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientProviderError(f"Embedding provider unavailable: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderFailure(f"Embedding request failed: {e}") from e

        data = sorted(response.data, key=lambda item: item.index)
        embeddings = [item.embedding for item in data]
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.info(f"Generated {len(embeddings)} embeddings using {self.model} ({tokens_used} tokens)")
        return embeddings


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the provider named in the config."""
    if config.provider == "local":
        from .local_embeddings import LocalEmbeddingProvider
        return LocalEmbeddingProvider(config)
    return OpenAIEmbeddingProvider(config)
