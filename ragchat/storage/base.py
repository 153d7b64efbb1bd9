from abc import ABC, abstractmethod
from typing import List, Optional
from ragchat.models.chunk import Chunk, RetrievedChunk

class VectorStore(ABC):
    @abstractmethod
    def upsert(self, chunks: List[Chunk]) -> None:
        pass

    @abstractmethod
    def search(self,
               owner_id: str,
               vector: List[float],
               top_k: int,
               min_score: float,
               document_ids: Optional[List[str]] = None) -> List[RetrievedChunk]:
        """Owner-scoped nearest neighbours with score >= min_score, best first, optionally limited to `document_ids`."""
        pass

    @abstractmethod
    def count_document(self, document_id: str) -> int:
        pass

    @abstractmethod
    def list_document_chunks(self, document_id: str) -> List[Chunk]:
        pass

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        pass

    @abstractmethod
    def collection_exists(self) -> bool:
        pass

class BlobStore(ABC):
    @abstractmethod
    def put(self, data: bytes, filename: str = "") -> str:
        """Stores bytes and returns an opaque handle."""
        pass

    @abstractmethod
    def get(self, handle: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, handle: str) -> None:
        pass
