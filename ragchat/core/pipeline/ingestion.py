import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ragchat.config.settings import IngestionConfig
from ragchat.core.chunk.chunker import Chunker
from ragchat.core.chunk.metadata_builder import MetadataBuilder
from ragchat.core.embed.embedder import Embedder
from ragchat.core.errors import (
    EmbeddingDimensionMismatch,
    EmbeddingError,
    ExtractionFailed,
    NotFound,
    UnsupportedFormat,
)
from ragchat.core.parse.extractor import TextExtractor
from ragchat.core.pipeline.dispatch import StageDispatcher
from ragchat.models.chunk import ChunkJob, ChunkJobStatus
from ragchat.models.document import (
    Document,
    DocumentDetail,
    IngestionErrorCode,
    IngestionJob,
    IngestionStatus,
)
from ragchat.models.stage import EmbedPayload, ParsePayload, parse_stage_payload
from ragchat.storage.base import BlobStore, VectorStore
from ragchat.storage.job_store import JobStore

logger = logging.getLogger(__name__)

ChunkFailure = Tuple[ChunkJob, Exception]


class IngestionService:
    """
    Ingestion job state machine: upload -> parse -> chunk -> embed (in batches) -> ready.

    Every stage is a stateless invocation over the job store: it claims work, acts,
    persists, and either dispatches the next invocation or finishes the job.

        queued --parse ok--> chunked --embed batches--> embedding --all done--> completed
           \\                                               \\
            +--extract/chunk/download fails--> error         +--any chunk fails--> error

    A single failed chunk fails the whole job (fail-fast); no partial index is ever
    reported ready. Nothing is retried internally: resubmit() starts a fresh job.
    """

    def __init__(self,
                 job_store: JobStore,
                 blob_store: BlobStore,
                 vector_store: VectorStore,
                 extractor: TextExtractor,
                 chunker: Chunker,
                 embedder: Embedder,
                 dispatcher: StageDispatcher,
                 config: IngestionConfig):
        self.job_store = job_store
        self.blob_store = blob_store
        self.vector_store = vector_store
        self.extractor = extractor
        self.chunker = chunker
        self.embedder = embedder
        self.dispatcher = dispatcher
        self.config = config
        self.metadata_builder = MetadataBuilder(embedder.model_name, embedder.dimension)
        dispatcher.bind(self.run_stage)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def submit_ingestion(self, owner_id: str, data: bytes, filename: str, mime_type: str) -> Document:
        """
        Stores the upload, creates a pending Document plus a queued job, and dispatches
        the parse stage. Returns immediately; readiness is observed through Document.status.
        """
        handle = self.blob_store.put(data, filename)
        document, job = self.job_store.create_document_and_job(
            owner_id=owner_id,
            filename=filename,
            mime_type=mime_type,
            size_bytes=len(data),
            storage_handle=handle
        )
        logger.info(f"[{document.id}] Queued job {job.id} for '{filename}' ({mime_type}, {len(data)} bytes)")
        self.dispatcher.dispatch(ParsePayload(stage="parse", job_id=job.id))
        return document

    def run_stage(self, payload) -> IngestionStatus:
        """Runs one stage invocation. Raw dicts are validated before anything else happens."""
        if not isinstance(payload, (ParsePayload, EmbedPayload)):
            payload = parse_stage_payload(payload)
        if payload.stage == "parse":
            return self.parse(payload.job_id)
        return self.embed(payload.job_id)

    # ------------------------------------------------------------------
    # Stage: parse (download -> extract -> chunk -> insert chunk jobs)
    # ------------------------------------------------------------------

    def parse(self, job_id: str) -> IngestionStatus:
        job = self._require_job(job_id)

        if not self.job_store.claim_job_for_parsing(job_id):
            logger.info(f"[{job.document_id}] Parse for job {job_id} skipped, job is {job.status.value}")
            return job.status

        try:
            try:
                data = self.blob_store.get(job.storage_handle)
            except Exception as e:
                return self._fail(job, IngestionErrorCode.download_failed, str(e))

            try:
                text = self.extractor.extract(data, job.mime_type)
            except UnsupportedFormat as e:
                return self._fail(job, IngestionErrorCode.unsupported_format, str(e))
            except ExtractionFailed as e:
                return self._fail(job, IngestionErrorCode.extraction_failed, str(e))

            chunks = self.chunker.chunk(text)

            if not chunks:
                logger.warning(f"[{job.document_id}] No chunks generated for job {job_id}")
                self.job_store.complete_job(job_id)
                return IngestionStatus.completed

            try:
                self.job_store.insert_chunk_jobs(job, chunks, batch_size=self.config.chunk_insert_batch)
            except SQLAlchemyError as e:
                return self._fail(job, IngestionErrorCode.chunk_insert_failed, str(e))

            if not self.job_store.mark_chunked(job_id, len(chunks)):
                # Cancelled out-of-band while we were parsing
                return self._current_status(job_id)

            logger.info(f"[{job.document_id}] Queued {len(chunks)} chunks for job {job_id}")
            self.dispatcher.dispatch(EmbedPayload(stage="embed", job_id=job_id))
            return IngestionStatus.chunked

        except Exception as e:
            logger.exception(f"[{job.document_id}] Parse stage failed for job {job_id}")
            self._fail(job, IngestionErrorCode.unexpected_error, str(e))
            raise

    # ------------------------------------------------------------------
    # Stage: embed (one bounded batch per invocation)
    # ------------------------------------------------------------------

    def embed(self, job_id: str) -> IngestionStatus:
        job = self._require_job(job_id)

        if job.is_terminal:
            return job.status
        if job.status not in (IngestionStatus.chunked, IngestionStatus.embedding):
            logger.warning(f"[{job.document_id}] Embed for job {job_id} ignored, job is {job.status.value}")
            return job.status

        batch = self.job_store.claim_chunk_batch(job_id, self.config.embed_batch_size)

        if batch:
            token = batch[0].claim_token
            if not self.job_store.mark_embedding(job_id):
                self.job_store.release_chunk_jobs([cj.id for cj in batch], token)
                return self._current_status(job_id)

            try:
                ok = self._process_batch(job, batch)
            except EmbeddingDimensionMismatch:
                raise
            except Exception as e:
                logger.exception(f"[{job.document_id}] Embed stage failed for job {job_id}")
                self.job_store.release_chunk_jobs([cj.id for cj in batch], token)
                self._fail(job, IngestionErrorCode.unexpected_error, str(e))
                raise
            if not ok:
                return IngestionStatus.error

        return self._advance(job)

    def _process_batch(self, job: IngestionJob, batch: List[ChunkJob]) -> bool:
        token = batch[0].claim_token
        embedded, failure = self._embed_batch(batch)

        if embedded:
            chunk_jobs = [cj for cj, _ in embedded]
            chunks = self.metadata_builder.build_chunks(job, chunk_jobs, [v for _, v in embedded])
            try:
                self.vector_store.upsert(chunks)
            except Exception as e:
                logger.exception(f"[{job.document_id}] Failed to persist {len(chunks)} chunks for job {job.id}")
                # An earlier embedding failure stays the recorded one; unpersisted rows are released
                if failure is None:
                    failure = (chunk_jobs[0], e)
                embedded = []
            else:
                completed = self.job_store.complete_chunk_jobs(job.id, [cj.id for cj in chunk_jobs], token)
                logger.info(f"[{job.document_id}] Embedded {completed} chunks for job {job.id}")

        if failure is None:
            return True

        failed, error = failure
        self.job_store.fail_chunk_job(failed.id, str(error))
        done_ids = {cj.id for cj, _ in embedded}
        unattempted = [cj.id for cj in batch if cj.id != failed.id and cj.id not in done_ids]
        self.job_store.release_chunk_jobs(unattempted, token)

        if isinstance(error, EmbeddingDimensionMismatch):
            self._fail(job, IngestionErrorCode.embedding_dimension_mismatch,
                       f"chunk {failed.chunk_index}: {error}")
            raise error

        self._fail(job, IngestionErrorCode.embedding_failed, f"chunk {failed.chunk_index}: {error}")
        return False

    def _embed_batch(self, batch: List[ChunkJob]) -> Tuple[List[Tuple[ChunkJob, List[float]]], Optional[ChunkFailure]]:
        """
        Embeds the batch with one provider call. If that call fails, embeds chunk by
        chunk to find the offending one, stopping at the first failure.
        """
        try:
            vectors = self.embedder.embed([cj.content for cj in batch])
            return list(zip(batch, vectors)), None
        except EmbeddingDimensionMismatch as e:
            return [], (batch[0], e)
        except EmbeddingError as e:
            if len(batch) == 1:
                return [], (batch[0], e)
            logger.warning(f"Batch embedding failed ({e}); retrying {len(batch)} chunks individually")

        embedded = []
        for cj in batch:
            try:
                embedded.append((cj, self.embedder.embed(cj.content)[0]))
            except EmbeddingError as e:
                return embedded, (cj, e)
        return embedded, None

    def _advance(self, job: IngestionJob) -> IngestionStatus:
        """Decides what follows a batch: another invocation, completion, or failure."""
        counts = self.job_store.count_chunk_jobs(job.id)

        if counts[ChunkJobStatus.queued] > 0:
            logger.info(f"[{job.document_id}] {counts[ChunkJobStatus.queued]} chunks remaining for job {job.id}")
            self.dispatcher.dispatch(EmbedPayload(stage="embed", job_id=job.id))
            return IngestionStatus.embedding

        if counts[ChunkJobStatus.embedding] > 0:
            # Another invocation holds a claim; it will finish the job
            return IngestionStatus.embedding

        if counts[ChunkJobStatus.error] > 0:
            return self._fail(job, IngestionErrorCode.embedding_failed,
                              f"{counts[ChunkJobStatus.error]} chunks failed to embed")

        if self.job_store.complete_job(job.id):
            logger.info(f"[{job.document_id}] Ingestion completed for job {job.id} "
                        f"({counts[ChunkJobStatus.completed]} chunks)")
            return IngestionStatus.completed
        return self._current_status(job.id)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def fail_job(self, job_id: str, reason: str = "cancelled by operator") -> bool:
        """Stops a running job out-of-band. Queued chunk jobs are left unclaimed."""
        self._require_job(job_id)
        return self.job_store.fail_job(job_id, IngestionErrorCode.cancelled.value, reason)

    def find_stalled_chunk_jobs(self, job_id: str, older_than: Optional[timedelta] = None) -> List[ChunkJob]:
        older_than = older_than or timedelta(seconds=self.config.stalled_after_seconds)
        return self.job_store.find_stalled_chunk_jobs(job_id, older_than)

    def resubmit(self, owner_id: str, document_id: str) -> Document:
        """Re-ingests a document's stored upload as a brand new Document and job."""
        document = self.get_document(owner_id, document_id)
        data = self.blob_store.get(document.storage_handle)
        logger.info(f"[{document_id}] Resubmitting '{document.filename}'")
        return self.submit_ingestion(owner_id, data, document.filename, document.mime_type)

    def get_document(self, owner_id: str, document_id: str) -> Document:
        document = self.job_store.get_document(document_id, owner_id=owner_id)
        if document is None:
            raise NotFound(f"Document {document_id} not found")
        return document

    def get_document_detail(self, owner_id: str, document_id: str) -> DocumentDetail:
        document = self.get_document(owner_id, document_id)
        return DocumentDetail(
            **document.model_dump(),
            chunk_count=self.vector_store.count_document(document_id),
            job=self.job_store.get_latest_job(document_id)
        )

    def delete_document(self, owner_id: str, document_id: str) -> None:
        document = self.get_document(owner_id, document_id)
        self.vector_store.delete_document(document_id)
        self.blob_store.delete(document.storage_handle)
        self.job_store.delete_document(document_id)
        logger.info(f"[{document_id}] Deleted document, chunks and jobs")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_job(self, job_id: str) -> IngestionJob:
        job = self.job_store.get_job(job_id)
        if job is None:
            raise NotFound(f"Ingestion job {job_id} not found")
        return job

    def _current_status(self, job_id: str) -> IngestionStatus:
        return self._require_job(job_id).status

    def _fail(self, job: IngestionJob, code: IngestionErrorCode, detail: str) -> IngestionStatus:
        self.job_store.fail_job(job.id, code.value, detail)
        return IngestionStatus.error
