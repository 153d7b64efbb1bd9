from datetime import datetime
from enum import Enum
from typing import Literal
from pydantic import BaseModel, ConfigDict, Field

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str

class Citation(BaseModel):
    position: int                    # 1-based, matches the [S#] marker in the prompt
    chunk_id: str
    document_id: str
    filename: str | None = None
    similarity: float
    snippet: str = ""

class ChatRequest(BaseModel):
    messages: list[ChatMessage]
    chat_id: str | None = None
    top_k: int | None = Field(default=None, ge=1, le=50)
    min_similarity: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

class ChatEventType(str, Enum):
    sources = "sources"
    token = "token"
    limit = "limit"
    final = "final"
    error = "error"
    done = "done"

class ChatEvent(BaseModel):
    type: ChatEventType
    delta: str | None = None
    items: list[Citation] | None = None
    content: str | None = None
    message: str | None = None
    tokens: int | None = None

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"

class MessageStatus(str, Enum):
    complete = "complete"
    error = "error"

class StoredMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    owner_id: str
    role: str
    content: str
    citations: list[Citation] | None = None
    status: MessageStatus
    retryable: bool = False
    created_at: datetime
