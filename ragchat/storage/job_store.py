import logging
import uuid
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, aliased

from ragchat.models.chunk import ChunkJob, ChunkJobStatus
from ragchat.models.document import (
    DOCUMENT_STATUS_FOR_JOB,
    TERMINAL_JOB_STATES,
    Document,
    DocumentStatus,
    IngestionJob,
    IngestionStatus,
)
from ragchat.storage.database import ChunkJobRow, Database, DocumentRow, IngestionJobRow, utcnow

logger = logging.getLogger(__name__)

_OPEN_JOB_STATES = [s.value for s in IngestionStatus if s not in TERMINAL_JOB_STATES]


class JobStore:
    """
    Durable store for Document, IngestionJob and ChunkJob records.

    Every state change that touches a job also writes the mirrored Document status in
    the same transaction, so observers never see the two disagree. Transitions out of a
    given state are conditional UPDATEs; a transition that lost a race reports False
    instead of overwriting.
    """

    def __init__(self, database: Database):
        self.db = database

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document_and_job(self,
                                owner_id: str,
                                filename: str,
                                mime_type: str,
                                size_bytes: int,
                                storage_handle: str) -> Tuple[Document, IngestionJob]:
        now = utcnow()
        doc = DocumentRow(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            filename=filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
            status=DocumentStatus.pending.value,
            storage_handle=storage_handle,
            created_at=now,
        )
        job = IngestionJobRow(
            id=str(uuid.uuid4()),
            document_id=doc.id,
            owner_id=owner_id,
            storage_handle=storage_handle,
            filename=filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
            status=IngestionStatus.queued.value,
            total_chunk_count=0,
            processed_chunk_count=0,
            created_at=now,
            updated_at=now,
        )
        with self.db.session_factory.begin() as session:
            session.add(doc)
            session.flush()
            session.add(job)
        return Document.model_validate(doc), IngestionJob.model_validate(job)

    def get_document(self, document_id: str, owner_id: Optional[str] = None) -> Optional[Document]:
        with self.db.session_factory() as session:
            stmt = select(DocumentRow).where(DocumentRow.id == document_id)
            if owner_id is not None:
                stmt = stmt.where(DocumentRow.owner_id == owner_id)
            row = session.scalars(stmt).first()
            return Document.model_validate(row) if row else None

    def get_documents(self, document_ids: Iterable[str]) -> Dict[str, Document]:
        ids = list(set(document_ids))
        if not ids:
            return {}
        with self.db.session_factory() as session:
            rows = session.scalars(select(DocumentRow).where(DocumentRow.id.in_(ids))).all()
            return {r.id: Document.model_validate(r) for r in rows}

    def list_documents(self, owner_id: str, page: int = 1, limit: int = 10) -> Tuple[List[Document], int]:
        offset = (page - 1) * limit
        with self.db.session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(DocumentRow).where(DocumentRow.owner_id == owner_id)
            )
            rows = session.scalars(
                select(DocumentRow)
                .where(DocumentRow.owner_id == owner_id)
                .order_by(DocumentRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return [Document.model_validate(r) for r in rows], total or 0

    def list_document_ids(self, owner_id: str, status: DocumentStatus) -> List[str]:
        with self.db.session_factory() as session:
            return list(session.scalars(
                select(DocumentRow.id).where(DocumentRow.owner_id == owner_id, DocumentRow.status == status.value)
            ).all())

    def delete_document(self, document_id: str) -> None:
        with self.db.session_factory.begin() as session:
            session.execute(delete(ChunkJobRow).where(ChunkJobRow.document_id == document_id))
            session.execute(delete(IngestionJobRow).where(IngestionJobRow.document_id == document_id))
            session.execute(delete(DocumentRow).where(DocumentRow.id == document_id))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def get_job(self, job_id: str, owner_id: Optional[str] = None) -> Optional[IngestionJob]:
        with self.db.session_factory() as session:
            stmt = select(IngestionJobRow).where(IngestionJobRow.id == job_id)
            if owner_id is not None:
                stmt = stmt.where(IngestionJobRow.owner_id == owner_id)
            row = session.scalars(stmt).first()
            return IngestionJob.model_validate(row) if row else None

    def get_latest_job(self, document_id: str) -> Optional[IngestionJob]:
        with self.db.session_factory() as session:
            row = session.scalars(
                select(IngestionJobRow)
                .where(IngestionJobRow.document_id == document_id)
                .order_by(IngestionJobRow.created_at.desc())
            ).first()
            return IngestionJob.model_validate(row) if row else None

    def transition_job(self,
                       job_id: str,
                       to_status: IngestionStatus,
                       from_statuses: Sequence[IngestionStatus],
                       **values) -> bool:
        """Moves a job (and its document) to `to_status` only if it is currently in `from_statuses`."""
        allowed = [s.value for s in from_statuses]
        now = utcnow()
        with self.db.session_factory.begin() as session:
            result = session.execute(
                update(IngestionJobRow)
                .where(IngestionJobRow.id == job_id, IngestionJobRow.status.in_(allowed))
                .values(status=to_status.value, updated_at=now, **values)
            )
            if result.rowcount != 1:
                return False
            self._mirror_document(session, job_id, to_status, values.get("last_error"))
        logger.info(f"Job {job_id} -> {to_status.value}")
        return True

    def claim_job_for_parsing(self, job_id: str) -> bool:
        return self.transition_job(
            job_id,
            IngestionStatus.parsing,
            [IngestionStatus.queued],
            last_error=None,
            error_detail=None,
        )

    def mark_chunked(self, job_id: str, total_chunk_count: int) -> bool:
        return self.transition_job(
            job_id,
            IngestionStatus.chunked,
            [IngestionStatus.parsing],
            total_chunk_count=total_chunk_count,
            processed_chunk_count=0,
        )

    def mark_embedding(self, job_id: str) -> bool:
        return self.transition_job(
            job_id,
            IngestionStatus.embedding,
            [IngestionStatus.chunked, IngestionStatus.embedding],
        )

    def complete_job(self, job_id: str) -> bool:
        """Marks the job completed, pinning processed_chunk_count to total_chunk_count."""
        return self.transition_job(
            job_id,
            IngestionStatus.completed,
            [IngestionStatus.parsing, IngestionStatus.chunked, IngestionStatus.embedding],
            processed_chunk_count=IngestionJobRow.total_chunk_count,
        )

    def fail_job(self, job_id: str, error_code: str, detail: Optional[str] = None) -> bool:
        """Moves a non-terminal job and its document to `error`. Terminal jobs are left alone."""
        ok = self.transition_job(
            job_id,
            IngestionStatus.error,
            [IngestionStatus(s) for s in _OPEN_JOB_STATES],
            last_error=error_code,
            error_detail=detail,
        )
        if ok:
            logger.error(f"Job {job_id} failed: {error_code} {detail or ''}".rstrip())
        return ok

    def _mirror_document(self,
                         session: Session,
                         job_id: str,
                         job_status: IngestionStatus,
                         error: Optional[str]) -> None:
        document_id = session.scalar(select(IngestionJobRow.document_id).where(IngestionJobRow.id == job_id))
        doc_status = DOCUMENT_STATUS_FOR_JOB[job_status]
        session.execute(
            update(DocumentRow)
            .where(DocumentRow.id == document_id)
            .values(status=doc_status.value, error=error if doc_status == DocumentStatus.error else None)
        )

    # ------------------------------------------------------------------
    # Chunk jobs
    # ------------------------------------------------------------------

    def insert_chunk_jobs(self, job: IngestionJob, contents: List[str], batch_size: int = 100) -> int:
        """Bulk-inserts one queued ChunkJob per chunk, `batch_size` rows per statement."""
        now = utcnow()
        rows = [
            {
                "id": str(uuid.uuid4()),
                "job_id": job.id,
                "document_id": job.document_id,
                "chunk_index": index,
                "content": content,
                "status": ChunkJobStatus.queued.value,
                "created_at": now,
                "updated_at": now,
            }
            for index, content in enumerate(contents)
        ]
        with self.db.session_factory.begin() as session:
            for i in range(0, len(rows), batch_size):
                session.execute(ChunkJobRow.__table__.insert(), rows[i:i + batch_size])
        return len(rows)

    def claim_chunk_batch(self, job_id: str, limit: int) -> List[ChunkJob]:
        """
        Atomically claims up to `limit` queued chunk jobs, lowest chunk_index first.

        The select and the queued -> embedding transition happen in one UPDATE guarded by
        `status = 'queued'`, and the claimed rows are read back by a fresh claim token, so
        two concurrent invocations never receive the same row.
        """
        token = str(uuid.uuid4())
        now = utcnow()
        # Aliased so the subquery keeps its own FROM instead of correlating to the UPDATE target
        pending = aliased(ChunkJobRow)
        candidates = (
            select(pending.id)
            .where(pending.job_id == job_id, pending.status == ChunkJobStatus.queued.value)
            .order_by(pending.chunk_index)
            .limit(limit)
        )
        with self.db.session_factory.begin() as session:
            session.execute(
                update(ChunkJobRow)
                .where(ChunkJobRow.id.in_(candidates), ChunkJobRow.status == ChunkJobStatus.queued.value)
                .values(status=ChunkJobStatus.embedding.value, claim_token=token, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            rows = session.scalars(
                select(ChunkJobRow)
                .where(ChunkJobRow.claim_token == token)
                .order_by(ChunkJobRow.chunk_index)
            ).all()
            return [ChunkJob.model_validate(r) for r in rows]

    def complete_chunk_jobs(self, job_id: str, chunk_job_ids: List[str], claim_token: str) -> int:
        """
        Marks claimed chunk jobs completed and advances processed_chunk_count by the number
        of rows actually transitioned, in one transaction.
        """
        if not chunk_job_ids:
            return 0
        now = utcnow()
        with self.db.session_factory.begin() as session:
            result = session.execute(
                update(ChunkJobRow)
                .where(
                    ChunkJobRow.id.in_(chunk_job_ids),
                    ChunkJobRow.status == ChunkJobStatus.embedding.value,
                    ChunkJobRow.claim_token == claim_token,
                )
                .values(status=ChunkJobStatus.completed.value, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            completed = result.rowcount
            if completed:
                session.execute(
                    update(IngestionJobRow)
                    .where(IngestionJobRow.id == job_id)
                    .values(
                        processed_chunk_count=IngestionJobRow.processed_chunk_count + completed,
                        updated_at=now,
                    )
                )
        return completed

    def fail_chunk_job(self, chunk_job_id: str, detail: str) -> None:
        with self.db.session_factory.begin() as session:
            session.execute(
                update(ChunkJobRow)
                .where(ChunkJobRow.id == chunk_job_id)
                .values(status=ChunkJobStatus.error.value, error=detail, updated_at=utcnow())
            )

    def release_chunk_jobs(self, chunk_job_ids: List[str], claim_token: str) -> int:
        """Returns claimed but unattempted chunk jobs to the queue."""
        if not chunk_job_ids:
            return 0
        with self.db.session_factory.begin() as session:
            result = session.execute(
                update(ChunkJobRow)
                .where(
                    ChunkJobRow.id.in_(chunk_job_ids),
                    ChunkJobRow.status == ChunkJobStatus.embedding.value,
                    ChunkJobRow.claim_token == claim_token,
                )
                .values(status=ChunkJobStatus.queued.value, claim_token=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def count_chunk_jobs(self, job_id: str) -> Dict[ChunkJobStatus, int]:
        with self.db.session_factory() as session:
            rows = session.execute(
                select(ChunkJobRow.status, func.count())
                .where(ChunkJobRow.job_id == job_id)
                .group_by(ChunkJobRow.status)
            ).all()
        counts = {s: 0 for s in ChunkJobStatus}
        for status, count in rows:
            counts[ChunkJobStatus(status)] = count
        return counts

    def list_chunk_jobs(self, job_id: str) -> List[ChunkJob]:
        with self.db.session_factory() as session:
            rows = session.scalars(
                select(ChunkJobRow).where(ChunkJobRow.job_id == job_id).order_by(ChunkJobRow.chunk_index)
            ).all()
            return [ChunkJob.model_validate(r) for r in rows]

    def find_stalled_chunk_jobs(self, job_id: str, older_than: timedelta) -> List[ChunkJob]:
        """Chunk jobs stuck in `embedding` longer than `older_than` (their invocation most likely died)."""
        cutoff = utcnow() - older_than
        with self.db.session_factory() as session:
            rows = session.scalars(
                select(ChunkJobRow)
                .where(
                    ChunkJobRow.job_id == job_id,
                    ChunkJobRow.status == ChunkJobStatus.embedding.value,
                    ChunkJobRow.updated_at < cutoff,
                )
                .order_by(ChunkJobRow.chunk_index)
            ).all()
            return [ChunkJob.model_validate(r) for r in rows]
