import hmac
from fastapi import Header, HTTPException, Request

from ragchat.core.pipeline.chat import ChatService
from ragchat.core.pipeline.ingestion import IngestionService
from ragchat.storage.job_store import JobStore


# Authentication happens upstream; the gateway forwards the caller's id
def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    return x_user_id.strip()

def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service

def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service

def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store

# The process endpoint runs stages for any owner, so only the dispatcher may call it
def verify_stage_secret(request: Request, authorization: str | None = Header(default=None)) -> None:
    secret = request.app.state.settings.ingestion.dispatch_secret
    if not secret:
        raise HTTPException(status_code=403, detail="Stage endpoint is disabled; set ingestion.dispatch_secret.")
    expected = f"Bearer {secret}".encode()
    if not authorization or not hmac.compare_digest(authorization.encode(), expected):
        raise HTTPException(status_code=401, detail="Invalid stage credentials.")
