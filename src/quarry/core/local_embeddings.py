"""Local embedding alternative to OpenAI for air-gapped environments."""

import logging
from typing import List

from .config import EmbeddingConfig
from .embed import EmbeddingProvider
from .errors import ConfigurationError, ProviderFailure

logger = logging.getLogger(__name__)

try:
    from sentence_transformers import SentenceTransformer
    SENTENCE_TRANSFORMERS_AVAILABLE = True
except ImportError:
    SENTENCE_TRANSFORMERS_AVAILABLE = False


class LocalEmbeddingProvider(EmbeddingProvider):
    """sentence-transformers model run in-process."""

    def __init__(self, config: EmbeddingConfig):
        if not SENTENCE_TRANSFORMERS_AVAILABLE:
            raise ConfigurationError(
                "sentence-transformers not available. Install with: pip install 'quarry-rag[local]'"
            )
        self.config = config
        self.model = config.model

        logger.info(f"Loading local embedding model: {self.model}")
        try:
            self._encoder = SentenceTransformer(self.model)
        except Exception as e:
            raise ConfigurationError(f"Failed to load local embedding model {self.model}: {e}") from e

        self.dimensions = self._encoder.get_sentence_embedding_dimension()
        if self.dimensions != config.dimensions:
            raise ConfigurationError(
                f"Model {self.model} produces {self.dimensions}-dimensional vectors, "
                f"configured dimensions is {config.dimensions}"
            )

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            vectors = self._encoder.encode(
                texts,
                batch_size=len(texts),
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise ProviderFailure(f"Local embedding failed: {e}") from e
        return vectors.tolist()
