import math
import logging
from fastapi import APIRouter, Depends, HTTPException, Query

from ragchat.api.deps import get_ingestion_service, get_job_store, get_owner_id
from ragchat.core.errors import NotFound
from ragchat.core.pipeline.ingestion import IngestionService
from ragchat.models.document import Document, DocumentDetail, DocumentPage
from ragchat.storage.job_store import JobStore

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/documents", response_model=DocumentPage, summary="List the caller's documents, newest first")
def list_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    job_store: JobStore = Depends(get_job_store)
):
    documents, total = job_store.list_documents(owner_id, page=page, limit=limit)
    return DocumentPage(
        documents=documents,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
        total_documents=total
    )


@router.get("/documents/{document_id}", response_model=DocumentDetail, summary="Get a document with its chunk count")
def get_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    service: IngestionService = Depends(get_ingestion_service)
):
    return service.get_document_detail(owner_id, document_id)


@router.delete("/documents/{document_id}", summary="Delete a document, its chunks, jobs and stored upload")
def delete_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    service: IngestionService = Depends(get_ingestion_service)
):
    logger.info(f"Deleting document {document_id} for owner {owner_id}")
    try:
        service.delete_document(owner_id, document_id)
    except NotFound:
        raise
    except Exception:
        logger.exception(f"Deletion failed for {document_id}")
        raise HTTPException(status_code=500, detail=f"Deletion failed for {document_id}.")
    return {"document_id": document_id, "success": True}


@router.post("/documents/{document_id}/retry", response_model=Document, status_code=202,
             summary="Re-ingest a document's stored upload as a fresh job")
def retry_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    service: IngestionService = Depends(get_ingestion_service)
):
    return service.resubmit(owner_id, document_id)
