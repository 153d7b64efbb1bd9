import hashlib
import uuid
from datetime import datetime, timezone
from typing import List

from ragchat.models.chunk import Chunk, ChunkJob, ChunkMetadata
from ragchat.models.document import IngestionJob

def chunk_id_for(chunk_job_id: str) -> str:
    """Deterministic chunk id: first 128 bits of sha256(chunk_job_id) as a UUID.

    Re-running a batch after a crash upserts the same points instead of duplicating them.
    """
    digest = hashlib.sha256(f"chunk:{chunk_job_id}".encode()).hexdigest()
    return str(uuid.UUID(digest[:32]))

class MetadataBuilder:
    """
    Builds persisted Chunk records for embedded chunk jobs.
    """

    def __init__(self, embedding_model: str, dimension: int):
        self.embedding_model = embedding_model
        self.dimension = dimension

    def build_chunks(self,
                     job: IngestionJob,
                     chunk_jobs: List[ChunkJob],
                     vectors: List[List[float]]) -> List[Chunk]:
        if len(chunk_jobs) != len(vectors):
            raise ValueError(f"{len(chunk_jobs)} chunk jobs but {len(vectors)} vectors")

        created_at = datetime.now(timezone.utc).isoformat()
        return [
            Chunk(
                id=chunk_id_for(cj.id),
                owner_id=job.owner_id,
                document_id=job.document_id,
                chunk_index=cj.chunk_index,
                content=cj.content,
                embedding=vector,
                metadata=ChunkMetadata(
                    embedding_model=self.embedding_model,
                    dimension=self.dimension,
                    source_file=job.filename,
                    mime_type=job.mime_type,
                    chunk_job_id=cj.id,
                    created_at=created_at
                )
            )
            for cj, vector in zip(chunk_jobs, vectors)
        ]
