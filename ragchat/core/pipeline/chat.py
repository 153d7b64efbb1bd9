import logging
from dataclasses import dataclass, field
from typing import Generator, List, Optional

from ragchat.core.errors import EmptyConversation, GenerationError
from ragchat.core.generate.llm_client import LLMClient, is_limit_reason
from ragchat.core.generate.prompt_builder import PromptAssembler
from ragchat.core.retrieve.retriever import Retriever
from ragchat.models.query import ChatEvent, ChatEventType, ChatMessage, Citation, MessageStatus
from ragchat.storage.message_store import MessageStore

logger = logging.getLogger(__name__)


@dataclass
class ChatTurn:
    """
    Result of answer_query. Citations are known before generation starts;
    events() streams the answer and must be consumed (or closed) by the caller.
    """
    citations: List[Citation]
    messages: List[ChatMessage]
    _events: Generator[ChatEvent, None, None] = field(repr=False)

    def events(self) -> Generator[ChatEvent, None, None]:
        return self._events


class ChatService:
    """
    Orchestrates one chat turn: retrieve -> assemble prompt -> stream generation.
    Zero retrieved chunks is not an error; the model is simply asked without SOURCES.
    """

    def __init__(self,
                 retriever: Retriever,
                 assembler: PromptAssembler,
                 llm_client: LLMClient,
                 message_store: Optional[MessageStore] = None):
        self.retriever = retriever
        self.assembler = assembler
        self.llm_client = llm_client
        self.message_store = message_store

    def answer_query(self,
                     owner_id: str,
                     messages: List[ChatMessage],
                     top_k: Optional[int] = None,
                     min_similarity: Optional[float] = None,
                     chat_id: Optional[str] = None,
                     max_tokens: Optional[int] = None,
                     temperature: Optional[float] = None) -> ChatTurn:
        if not messages:
            raise EmptyConversation("At least one message is required")

        question = next((m.content for m in reversed(messages) if m.role == "user"), messages[-1].content)
        logger.info(f"Chat turn for owner {owner_id}: '{question[:80]}'")

        chunks = self.retriever.retrieve(owner_id, question, top_k=top_k, min_similarity=min_similarity)
        prompt, citations = self.assembler.assemble(messages, chunks)

        if chat_id and self.message_store is not None:
            self.message_store.append(chat_id, owner_id, "user", question)

        events = self._events(owner_id, prompt, citations, chat_id, max_tokens, temperature)
        return ChatTurn(citations=citations, messages=prompt, _events=events)

    def _events(self,
                owner_id: str,
                prompt: List[ChatMessage],
                citations: List[Citation],
                chat_id: Optional[str],
                max_tokens: Optional[int],
                temperature: Optional[float]) -> Generator[ChatEvent, None, None]:
        if citations:
            yield ChatEvent(type=ChatEventType.sources, items=citations)

        parts = []
        finish_reason = None
        stream = self.llm_client.stream_chat(prompt, max_tokens=max_tokens, temperature=temperature)
        try:
            for chunk in stream:
                if chunk.delta:
                    parts.append(chunk.delta)
                    yield ChatEvent(type=ChatEventType.token, delta=chunk.delta)
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
        except GenerationError as e:
            logger.error(f"Generation failed for owner {owner_id}: {e}")
            self._store_answer(chat_id, owner_id, "".join(parts), citations, MessageStatus.error)
            yield ChatEvent(type=ChatEventType.error, message="The assistant could not finish this answer. Please retry.")
            yield ChatEvent(type=ChatEventType.done)
            return
        finally:
            # Stops relaying upstream tokens when the caller goes away
            stream.close()

        if is_limit_reason(finish_reason):
            logger.info(f"Generation hit the token limit ({finish_reason})")
            yield ChatEvent(type=ChatEventType.limit, tokens=max_tokens)

        content = "".join(parts)
        self._store_answer(chat_id, owner_id, content, citations, MessageStatus.complete)
        yield ChatEvent(type=ChatEventType.final, content=content)
        yield ChatEvent(type=ChatEventType.done)

    def _store_answer(self,
                      chat_id: Optional[str],
                      owner_id: str,
                      content: str,
                      citations: List[Citation],
                      status: MessageStatus) -> None:
        if not chat_id or self.message_store is None:
            return
        self.message_store.append(
            chat_id,
            owner_id,
            "assistant",
            content,
            citations=citations,
            status=status,
            retryable=status == MessageStatus.error
        )
