import logging
from abc import ABC, abstractmethod
from typing import List, Union

import numpy as np

from ragchat.config.settings import EmbeddingConfig
from ragchat.core.errors import EmbeddingDimensionMismatch, EmbeddingError

logger = logging.getLogger(__name__)

class EmbeddingProvider(ABC):
    """External embedding capability: one vector per input string."""

    @abstractmethod
    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        pass

class SentenceTransformerProvider(EmbeddingProvider):
    """
    Local sentence-transformers model on CPU.
    The model is loaded on first use and kept on the instance.
    """

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        self._model = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.config.model_name}...")
            self._model = SentenceTransformer(self.config.model_name, device="cpu")
        return self._model

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        # BGE models work best with normalize_embeddings=True for cosine similarity
        embeddings = self.model.encode(
            texts,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            normalize_embeddings=self.config.normalise
        )
        return np.asarray(embeddings, dtype=np.float32).tolist()

class Embedder:
    """
    Wraps an EmbeddingProvider with dimension validation.
    - One provider call per embed() invocation.
    - A wrong-sized vector raises EmbeddingDimensionMismatch (configuration error).
    - No retries here; the ingestion state machine owns failure handling.
    """

    def __init__(self,
                 provider: EmbeddingProvider,
                 dimension: int,
                 model_name: str,
                 query_prefix: str = ""):
        self.provider = provider
        self.dimension = dimension
        self.model_name = model_name
        self.query_prefix = query_prefix

    @classmethod
    def from_config(cls, config: EmbeddingConfig, provider: EmbeddingProvider | None = None) -> "Embedder":
        if provider is None:
            if config.provider == "http":
                from ragchat.core.embed.http_provider import HTTPEmbeddingProvider
                provider = HTTPEmbeddingProvider(config)
            else:
                provider = SentenceTransformerProvider(config)
        return cls(
            provider=provider,
            dimension=config.vector_dim,
            model_name=config.model_name,
            query_prefix=config.query_prefix
        )

    def embed(self, texts: Union[str, List[str]]) -> List[List[float]]:
        if isinstance(texts, str):
            texts = [texts]
        if not texts:
            return []

        try:
            vectors = self.provider.embed_texts(texts)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding provider call failed: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(f"Provider returned {len(vectors)} vectors for {len(texts)} inputs")

        for vector in vectors:
            if len(vector) != self.dimension:
                logger.critical(
                    f"Embedding model {self.model_name} returned {len(vector)}-d vectors, "
                    f"configured dimension is {self.dimension}"
                )
                raise EmbeddingDimensionMismatch(self.dimension, len(vector))

        return [list(map(float, v)) for v in vectors]

    def embed_query(self, query: str) -> List[float]:
        """
        Embeds a search query. Applies the query prefix required by BGE models.
        """
        return self.embed(f"{self.query_prefix}{query}")[0]
