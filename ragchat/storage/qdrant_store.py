import logging
from typing import List, Optional
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest
from ragchat.config.settings import QdrantConfig
from ragchat.models.chunk import Chunk, ChunkMetadata, RetrievedChunk
from ragchat.storage.base import VectorStore

logger = logging.getLogger(__name__)

def _match(key: str, value: str) -> rest.Filter:
    return rest.Filter(must=[rest.FieldCondition(key=key, match=rest.MatchValue(value=value))])

class QdrantChunkStore(VectorStore):
    """
    Implements VectorStore on Qdrant (local file, in-memory or cloud mode).
    One point per Chunk; the point id is the chunk id, the payload carries content and metadata.
    """

    def __init__(self, config: QdrantConfig, vector_dim: int, client: QdrantClient | None = None):
        self.config = config
        self.vector_dim = vector_dim
        self.client = client or self._connect(config)
        self._ensure_collection()

    @staticmethod
    def _connect(config: QdrantConfig) -> QdrantClient:
        if config.mode == "memory":
            return QdrantClient(location=":memory:")
        if config.mode == "cloud":
            return QdrantClient(url=config.cloud_url, api_key=config.api_key or None)
        return QdrantClient(path=config.local_path)

    def _ensure_collection(self):
        if not self.collection_exists():
            logger.info(f"Creating Qdrant collection: {self.config.collection_name}")
            self.client.create_collection(
                collection_name=self.config.collection_name,
                vectors_config=rest.VectorParams(
                    size=self.vector_dim,
                    distance=rest.Distance.COSINE
                ),
                hnsw_config=rest.HnswConfigDiff(
                    m=self.config.hnsw_m,
                    ef_construct=self.config.hnsw_ef_construct
                )
            )
            for field in ["owner_id", "document_id"]:
                self.client.create_payload_index(
                    collection_name=self.config.collection_name,
                    field_name=field,
                    field_schema=rest.PayloadSchemaType.KEYWORD
                )

    def collection_exists(self) -> bool:
        collections = self.client.get_collections().collections
        return any(c.name == self.config.collection_name for c in collections)

    def upsert(self, chunks: List[Chunk]) -> None:
        points = []
        for chunk in chunks:
            if chunk.embedding is None:
                raise ValueError(f"Chunk {chunk.id} has no embedding")

            payload = chunk.model_dump(exclude={"id", "embedding", "metadata"})
            payload.update(chunk.metadata.model_dump())

            points.append(rest.PointStruct(
                id=chunk.id,
                vector=chunk.embedding,
                payload=payload
            ))

        if points:
            self.client.upsert(
                collection_name=self.config.collection_name,
                points=points,
                wait=True
            )

    def search(self,
               owner_id: str,
               vector: List[float],
               top_k: int,
               min_score: float,
               document_ids: Optional[List[str]] = None) -> List[RetrievedChunk]:
        query_filter = _match("owner_id", owner_id)
        if document_ids is not None:
            query_filter.must.append(
                rest.FieldCondition(key="document_id", match=rest.MatchAny(any=list(document_ids)))
            )
        results = self.client.query_points(
            collection_name=self.config.collection_name,
            query=vector,
            limit=top_k,
            query_filter=query_filter,
            score_threshold=min_score,
            with_payload=True,
            search_params=rest.SearchParams(
                hnsw_ef=self.config.hnsw_ef
            )
        ).points

        hits = [
            RetrievedChunk(
                chunk_id=str(r.id),
                document_id=r.payload["document_id"],
                filename=r.payload.get("source_file"),
                content=r.payload.get("content", ""),
                similarity=r.score
            )
            for r in results
            if r.score >= min_score
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits

    def count_document(self, document_id: str) -> int:
        return self.client.count(
            collection_name=self.config.collection_name,
            count_filter=_match("document_id", document_id),
            exact=True
        ).count

    def list_document_chunks(self, document_id: str) -> List[Chunk]:
        chunks = []
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=self.config.collection_name,
                scroll_filter=_match("document_id", document_id),
                limit=256,
                offset=offset,
                with_payload=True,
                with_vectors=False
            )
            for p in points:
                payload = p.payload
                chunks.append(Chunk(
                    id=str(p.id),
                    owner_id=payload["owner_id"],
                    document_id=payload["document_id"],
                    chunk_index=payload["chunk_index"],
                    content=payload["content"],
                    metadata=ChunkMetadata(**{k: payload[k] for k in ChunkMetadata.model_fields})
                ))
            if offset is None:
                break
        chunks.sort(key=lambda c: c.chunk_index)
        return chunks

    def delete_document(self, document_id: str) -> None:
        self.client.delete(
            collection_name=self.config.collection_name,
            points_selector=rest.FilterSelector(
                filter=_match("document_id", document_id)
            )
        )
