from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict

class DocumentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    error = "error"

class IngestionStatus(str, Enum):
    queued = "queued"
    parsing = "parsing"
    chunked = "chunked"
    embedding = "embedding"
    completed = "completed"
    error = "error"

TERMINAL_JOB_STATES = frozenset({IngestionStatus.completed, IngestionStatus.error})

class IngestionErrorCode(str, Enum):
    download_failed = "download_failed"
    unsupported_format = "unsupported_format"
    extraction_failed = "extraction_failed"
    chunk_insert_failed = "chunk_insert_failed"
    embedding_failed = "embedding_failed"
    embedding_dimension_mismatch = "embedding_dimension_mismatch"
    cancelled = "cancelled"
    unexpected_error = "unexpected_error"

# Document status shown to callers for each job status
DOCUMENT_STATUS_FOR_JOB = {
    IngestionStatus.queued: DocumentStatus.pending,
    IngestionStatus.parsing: DocumentStatus.processing,
    IngestionStatus.chunked: DocumentStatus.processing,
    IngestionStatus.embedding: DocumentStatus.processing,
    IngestionStatus.completed: DocumentStatus.ready,
    IngestionStatus.error: DocumentStatus.error,
}

class Document(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    filename: str
    mime_type: str
    size_bytes: int
    status: DocumentStatus
    storage_handle: str
    error: str | None = None         # failure reason, mirrors the job's last_error
    created_at: datetime

class IngestionJob(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    document_id: str
    owner_id: str
    storage_handle: str
    filename: str
    mime_type: str
    size_bytes: int
    status: IngestionStatus
    total_chunk_count: int = 0
    processed_chunk_count: int = 0
    last_error: str | None = None    # IngestionErrorCode value
    error_detail: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

class DocumentDetail(Document):
    chunk_count: int
    job: IngestionJob | None = None

class DocumentPage(BaseModel):
    documents: list[Document]
    page: int
    limit: int
    total_pages: int
    total_documents: int
