import logging
from typing import List

import httpx

from ragchat.config.settings import EmbeddingConfig
from ragchat.core.embed.embedder import EmbeddingProvider
from ragchat.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

class HTTPEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI-compatible /embeddings endpoint.
    All inputs go out in a single request.
    """

    def __init__(self, config: EmbeddingConfig, timeout: float = 30.0):
        self.config = config
        self.url = f"{config.base_url.rstrip('/')}/embeddings"
        self.headers = {
            "Authorization": f"Bearer {config.api_key}" if config.api_key else "",
            "Content-Type": "application/json"
        }
        self.timeout = timeout

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        payload = {
            "model": self.config.model_name,
            "input": texts,
            "dimensions": self.config.vector_dim
        }
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, headers=self.headers, json=payload)
            response.raise_for_status()
            data = response.json()

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            return [item["embedding"] for item in items]
        except (KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed embeddings response: {e}") from e
