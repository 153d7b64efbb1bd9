import logging
import mimetypes
from typing import Any, Dict
from fastapi import APIRouter, UploadFile, File, Depends, HTTPException, BackgroundTasks, Body

from ragchat.api.deps import get_ingestion_service, get_job_store, get_owner_id, verify_stage_secret
from ragchat.core.pipeline.ingestion import IngestionService
from ragchat.models.document import Document, IngestionJob
from ragchat.models.stage import parse_stage_payload
from ragchat.storage.job_store import JobStore

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/ingest", response_model=Document, status_code=202, summary="Upload a document and queue it for ingestion")
async def ingest_file(
    file: UploadFile = File(...),
    owner_id: str = Depends(get_owner_id),
    service: IngestionService = Depends(get_ingestion_service)
):
    """
    1. Reads the upload.
    2. Stores it and creates a pending Document plus a queued job.
    3. Dispatches the parse stage and returns without waiting for it.
    Unsupported formats are accepted here and fail the job with `unsupported_format`.
    """
    try:
        data = await file.read()
        if not data:
            raise HTTPException(status_code=400, detail="Uploaded file is empty.")

        filename = file.filename or "upload"
        mime_type = file.content_type
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        logger.info(f"Uploading file '{filename}' ({mime_type}) for owner {owner_id}")
        return service.submit_ingestion(owner_id, data, filename, mime_type)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Ingestion initiation failed for {file.filename}")
        raise HTTPException(status_code=500, detail=str(e))

    finally:
        await file.close()


@router.post("/ingest/process", status_code=202, dependencies=[Depends(verify_stage_secret)],
             summary="Run one ingestion stage (internal stage chaining)")
def process_stage(
    background_tasks: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
    service: IngestionService = Depends(get_ingestion_service)
):
    """
    Validates the stage payload before anything else and acknowledges immediately;
    the stage itself runs after the response is sent.
    """
    stage = parse_stage_payload(payload)

    def run_stage():
        try:
            service.run_stage(stage)
        except Exception:
            logger.exception(f"Background stage {stage.stage} failed for job {stage.job_id}")

    background_tasks.add_task(run_stage)
    return {"accepted": True, "stage": stage.stage, "job_id": stage.job_id}


@router.get("/ingest/status/{job_id}", response_model=IngestionJob, summary="Get the status of an ingestion job")
def get_ingest_status(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    job_store: JobStore = Depends(get_job_store)
):
    job = job_store.get_job(job_id, owner_id=owner_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job ID not found.")
    return job
