import logging
from typing import List

from ragchat.config.settings import RetrievalConfig
from ragchat.core.embed.embedder import Embedder
from ragchat.models.chunk import RetrievedChunk
from ragchat.models.document import DocumentStatus
from ragchat.storage.base import VectorStore
from ragchat.storage.job_store import JobStore

logger = logging.getLogger(__name__)


class Retriever:
    """
    Owner-scoped dense retrieval.
    Results are ordered by similarity (best first), never fall below the threshold,
    and only come from documents whose ingestion has completed.
    """

    def __init__(self, embedder: Embedder, vector_store: VectorStore, job_store: JobStore, config: RetrievalConfig):
        self.embedder = embedder
        self.vector_store = vector_store
        self.job_store = job_store
        self.config = config

    def retrieve(self,
                 owner_id: str,
                 query_text: str,
                 top_k: int | None = None,
                 min_similarity: float | None = None) -> List[RetrievedChunk]:
        top_k = top_k or self.config.top_k
        min_similarity = self.config.min_similarity if min_similarity is None else min_similarity

        if not query_text.strip():
            return []

        # Failed jobs can leave embedded chunks behind, so the search itself is limited to ready documents
        ready_ids = self.job_store.list_document_ids(owner_id, DocumentStatus.ready)
        if not ready_ids:
            logger.info(f"No ready documents for owner {owner_id}")
            return []

        query_vector = self.embedder.embed_query(query_text)
        hits = self.vector_store.search(
            owner_id, query_vector, top_k=top_k, min_score=min_similarity, document_ids=ready_ids
        )

        if not hits:
            logger.info(f"No chunks above {min_similarity} for owner {owner_id}")
            return []

        # A document being re-ingested or deleted may still have points in the index
        documents = self.job_store.get_documents(h.document_id for h in hits)
        results = []
        for hit in hits:
            doc = documents.get(hit.document_id)
            if doc is None or doc.owner_id != owner_id or doc.status != DocumentStatus.ready:
                continue
            if not hit.filename:
                hit = hit.model_copy(update={"filename": doc.filename})
            results.append(hit)

        results.sort(key=lambda r: r.similarity, reverse=True)
        logger.info(f"Retrieved {len(results)}/{len(hits)} chunks for owner {owner_id} (top_k={top_k})")
        return results
