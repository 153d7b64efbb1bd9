import logging
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ragchat.api.deps import get_chat_service, get_owner_id
from ragchat.core.pipeline.chat import ChatService
from ragchat.models.query import ChatRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/chat", summary="Answer the latest message from the caller's documents, streamed as SSE")
def chat(
    request_data: ChatRequest,
    owner_id: str = Depends(get_owner_id),
    service: ChatService = Depends(get_chat_service)
):
    """
    Retrieval and prompt assembly run before the response starts, so an empty
    conversation is a 400. Generation failures arrive in-band as an `error` event.
    """
    turn = service.answer_query(
        owner_id,
        request_data.messages,
        top_k=request_data.top_k,
        min_similarity=request_data.min_similarity,
        chat_id=request_data.chat_id,
        max_tokens=request_data.max_tokens,
        temperature=request_data.temperature
    )

    def event_stream():
        events = turn.events()
        try:
            for event in events:
                yield event.to_sse()
        finally:
            events.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )
