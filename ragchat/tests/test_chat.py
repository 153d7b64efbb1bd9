import json
from unittest.mock import MagicMock

import pytest

from ragchat.core.errors import EmptyConversation, GenerationError
from ragchat.core.generate.llm_client import GenerationChunk
from ragchat.core.generate.prompt_builder import PromptAssembler
from ragchat.core.pipeline.chat import ChatService
from ragchat.models.chunk import RetrievedChunk
from ragchat.models.query import ChatEvent, ChatEventType, ChatMessage, MessageStatus
from ragchat.tests.fakes import OWNER

QUESTION = [ChatMessage(role="user", content="How long is the warranty?")]


def _retriever(*chunks):
    retriever = MagicMock()
    retriever.retrieve.return_value = list(chunks)
    return retriever


def _llm(*chunks, error=None):
    def stream(messages, max_tokens=None, temperature=None):
        yield from chunks
        if error:
            raise error

    llm = MagicMock()
    llm.stream_chat.side_effect = stream
    return llm


def _chunk(n):
    return RetrievedChunk(chunk_id=f"c{n}", document_id="d1", filename="w.pdf",
                          content=f"Warranty fact {n}.", similarity=0.9 - n / 10)


def test_turn_streams_sources_tokens_final_done():
    llm = _llm(GenerationChunk("Two "), GenerationChunk("years [S1]."), GenerationChunk("", "stop"))
    service = ChatService(_retriever(_chunk(1), _chunk(2)), PromptAssembler(), llm)

    turn = service.answer_query(OWNER, QUESTION, top_k=3, min_similarity=0.7)
    events = list(turn.events())

    assert [e.type for e in events] == [
        ChatEventType.sources, ChatEventType.token, ChatEventType.token, ChatEventType.final, ChatEventType.done
    ]
    assert [c.position for c in turn.citations] == [1, 2]
    assert events[0].items == turn.citations
    assert events[3].content == "Two years [S1]."
    service.retriever.retrieve.assert_called_once_with(OWNER, QUESTION[0].content, top_k=3, min_similarity=0.7)
    prompt = llm.stream_chat.call_args.args[0]
    assert "SOURCES:\n[S1] Warranty fact 1." in prompt[-1].content


def test_no_matches_is_not_an_error():
    llm = _llm(GenerationChunk("I don't know."), GenerationChunk("", "stop"))
    service = ChatService(_retriever(), PromptAssembler(), llm)

    turn = service.answer_query(OWNER, QUESTION)
    events = list(turn.events())

    assert turn.citations == []
    assert [e.type for e in events] == [ChatEventType.token, ChatEventType.final, ChatEventType.done]
    prompt = llm.stream_chat.call_args.args[0]
    assert prompt[-1] == QUESTION[0]


def test_length_limit_is_signalled():
    llm = _llm(GenerationChunk("Cut o"), GenerationChunk("", "length"))
    service = ChatService(_retriever(_chunk(1)), PromptAssembler(), llm)

    events = list(service.answer_query(OWNER, QUESTION, max_tokens=5).events())

    types = [e.type for e in events]
    assert types[-3:] == [ChatEventType.limit, ChatEventType.final, ChatEventType.done]
    assert events[-3].tokens == 5
    assert events[-2].content == "Cut o"


def test_empty_conversation_fails_before_retrieval():
    retriever = _retriever()
    service = ChatService(retriever, PromptAssembler(), _llm())

    with pytest.raises(EmptyConversation):
        service.answer_query(OWNER, [])

    retriever.retrieve.assert_not_called()


def test_generation_failure_is_reported_in_band_and_stored_retryable(message_store):
    llm = _llm(GenerationChunk("Two "), error=GenerationError("upstream 502"))
    service = ChatService(_retriever(_chunk(1)), PromptAssembler(), llm, message_store)

    events = list(service.answer_query(OWNER, QUESTION, chat_id="chat-1").events())

    assert [e.type for e in events] == [
        ChatEventType.sources, ChatEventType.token, ChatEventType.error, ChatEventType.done
    ]
    stored = {m.role: m for m in message_store.list_messages("chat-1", OWNER)}
    assert set(stored) == {"user", "assistant"}
    assert stored["assistant"].status == MessageStatus.error
    assert stored["assistant"].retryable is True
    assert stored["assistant"].content == "Two "


def test_completed_answer_is_stored_with_citations(message_store):
    llm = _llm(GenerationChunk("Two years [S1]."), GenerationChunk("", "stop"))
    service = ChatService(_retriever(_chunk(1)), PromptAssembler(), llm, message_store)

    turn = service.answer_query(OWNER, QUESTION, chat_id="chat-1")
    list(turn.events())

    stored = {m.role: m for m in message_store.list_messages("chat-1", OWNER)}
    assert stored["user"].content == QUESTION[0].content
    assert stored["assistant"].status == MessageStatus.complete
    assert stored["assistant"].retryable is False
    assert stored["assistant"].citations == turn.citations
    assert message_store.list_messages("chat-1", "someone-else") == []


def test_closing_the_stream_stops_generation():
    closed = []

    def stream(messages, max_tokens=None, temperature=None):
        try:
            for word in ["one ", "two ", "three "]:
                yield GenerationChunk(word)
        finally:
            closed.append(True)

    llm = MagicMock()
    llm.stream_chat.side_effect = stream
    service = ChatService(_retriever(), PromptAssembler(), llm)

    events = service.answer_query(OWNER, QUESTION).events()
    first = next(events)
    events.close()

    assert first.delta == "one "
    assert closed == [True]


def test_events_serialise_as_sse():
    line = ChatEvent(type=ChatEventType.token, delta="hi").to_sse()

    assert line.startswith("data: ") and line.endswith("\n\n")
    assert json.loads(line[len("data: "):]) == {"type": "token", "delta": "hi"}
