from typing import List, Optional, Tuple

from ragchat.core.errors import EmptyConversation
from ragchat.models.chunk import RetrievedChunk
from ragchat.models.query import ChatMessage, Citation

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant grounded in the user's documents.
Rules: answer only from the information in SOURCES, cite each fact with its [S#] marker,
and if the SOURCES do not contain the answer, say you don't know."""

DEFAULT_HISTORY_PAIRS = 4
MAX_SNIPPET_LENGTH = 160


def create_snippet(content: str, max_length: int = MAX_SNIPPET_LENGTH) -> str:
    cleaned = " ".join(content.split())
    if len(cleaned) <= max_length:
        return cleaned
    return f"{cleaned[:max_length - 1]}…"


class PromptAssembler:
    def __init__(self, system_prompt: Optional[str] = None, max_history_pairs: int = DEFAULT_HISTORY_PAIRS):
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.max_history_pairs = max_history_pairs

    def assemble(self,
                 history: List[ChatMessage],
                 chunks: List[RetrievedChunk],
                 system_prompt: Optional[str] = None) -> Tuple[List[ChatMessage], List[Citation]]:
        """
        Builds the message list sent to the model and the citations shown to the user.

        Chunks are numbered [S1], [S2], ... in the order they were retrieved, and the
        citation list uses the same positions. The context block is appended to the
        latest user message; without chunks that message is passed through untouched.
        """
        if not history:
            raise EmptyConversation("At least one message is required")

        latest_idx = self._latest_user_index(history)
        latest = history[latest_idx]

        context, citations = self._build_context(chunks)

        prior = [m for m in history[:latest_idx] if m.role != "system"]
        limit = self.max_history_pairs * 2
        if len(prior) > limit:
            prior = prior[-limit:] if limit > 0 else []

        if context:
            latest = ChatMessage(role=latest.role, content=f"{latest.content}\n\nSOURCES:\n{context}")

        system = ChatMessage(role="system", content=system_prompt or self.system_prompt)
        return [system, *prior, latest], citations

    @staticmethod
    def _latest_user_index(history: List[ChatMessage]) -> int:
        for i in range(len(history) - 1, -1, -1):
            if history[i].role == "user":
                return i
        return len(history) - 1

    @staticmethod
    def _build_context(chunks: List[RetrievedChunk]) -> Tuple[str, List[Citation]]:
        parts = []
        citations = []
        for position, chunk in enumerate(chunks, 1):
            parts.append(f"[S{position}] {chunk.content}")
            citations.append(Citation(
                position=position,
                chunk_id=chunk.chunk_id,
                document_id=chunk.document_id,
                filename=chunk.filename,
                similarity=chunk.similarity,
                snippet=create_snippet(chunk.content)
            ))
        return "\n\n".join(parts), citations
