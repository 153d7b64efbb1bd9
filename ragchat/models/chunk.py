from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict

class ChunkJobStatus(str, Enum):
    queued = "queued"
    embedding = "embedding"
    completed = "completed"
    error = "error"

class ChunkJob(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    document_id: str
    chunk_index: int                 # 0-based, unique within the job
    content: str
    status: ChunkJobStatus
    error: str | None = None
    claim_token: str | None = None
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None

class ChunkMetadata(BaseModel):
    embedding_model: str
    dimension: int
    source_file: str
    mime_type: str
    chunk_job_id: str
    created_at: str                  # ISO 8601 UTC

class Chunk(BaseModel):
    """A persisted, embedded slice of a document. Never mutated after insert."""
    id: str
    owner_id: str
    document_id: str
    chunk_index: int
    content: str
    embedding: list[float] | None = None
    metadata: ChunkMetadata

class RetrievedChunk(BaseModel):
    chunk_id: str
    document_id: str
    filename: str | None = None
    content: str
    similarity: float
