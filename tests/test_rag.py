"""Tests for chat orchestration over retrieval and generation."""

from typing import Callable, List, Optional, Tuple

import pytest

from knowledge_relay.generation import GenerationError, StreamDelta, TokenStream
from knowledge_relay.knowledge import KnowledgeError
from knowledge_relay.rag import UNAVAILABLE_MESSAGE, ChatUnavailable, RAGService
from knowledge_relay.segmentation import ANSWER_START, REASONING_END, REASONING_START


class FakeKnowledge:
    def __init__(self, context: str = "", error: Optional[Exception] = None) -> None:
        self.context = context
        self.error = error
        self.queries: List[str] = []

    async def query(self, text: str, top_k: Optional[int] = None) -> str:
        self.queries.append(text)
        if self.error is not None:
            raise self.error
        return self.context


class FakeGenerator:
    """Records (system_prompt, query, context) and replays canned output."""

    def __init__(
        self,
        answer: str = "",
        stream: Optional[TokenStream] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.answer = answer
        self.stream = stream
        self.error = error
        self.calls: List[Tuple[str, str, str]] = []

    async def generate(self, system_prompt: str, query: str, context: str) -> str:
        self.calls.append((system_prompt, query, context))
        if self.error is not None:
            raise self.error
        return self.answer

    async def generate_stream(self, system_prompt: str, query: str, context: str) -> TokenStream:
        self.calls.append((system_prompt, query, context))
        if self.error is not None:
            raise self.error
        return self.stream


@pytest.mark.asyncio
async def test_process_chat_passes_context_to_generator() -> None:
    knowledge = FakeKnowledge(context="ctx-A")
    generator = FakeGenerator(answer="answer-B")
    service = RAGService(knowledge, generator, "system prompt")

    response = await service.process_chat("What is X?")

    assert response.to_json() == {"success": True, "answer": "answer-B"}
    assert knowledge.queries == ["What is X?"]
    assert generator.calls == [("system prompt", "What is X?", "ctx-A")]


@pytest.mark.asyncio
async def test_retrieval_failure_falls_back_to_no_context() -> None:
    knowledge = FakeKnowledge(error=KnowledgeError("HTTP 500"))
    generator = FakeGenerator(answer="answer-B")
    service = RAGService(knowledge, generator, "sys")

    response = await service.process_chat("q")

    assert response.success
    assert generator.calls == [("sys", "q", "")]


@pytest.mark.asyncio
async def test_generation_failure_raises_unavailable() -> None:
    service = RAGService(
        FakeKnowledge(context="ctx"),
        FakeGenerator(error=GenerationError("Completion backend returned HTTP 500")),
        "sys",
    )

    with pytest.raises(ChatUnavailable) as exc_info:
        await service.process_chat("q")

    assert exc_info.value.response.to_json() == {
        "success": False,
        "message": UNAVAILABLE_MESSAGE,
    }
    assert "HTTP 500" in exc_info.value.detail


@pytest.mark.asyncio
async def test_stream_chat_returns_running_session(token_stream_factory: Callable) -> None:
    stream = token_stream_factory(
        [StreamDelta(reasoning_content="hmm"), StreamDelta(content="answer")]
    )
    generator = FakeGenerator(stream=stream)
    service = RAGService(FakeKnowledge(context="ctx-A"), generator, "sys")

    session = await service.process_stream_chat("q")
    units = [u.reasoning_content or u.content async for u in session]
    await session.join()

    assert units == [REASONING_START, "hmm", REASONING_END, ANSWER_START, "answer"]
    assert generator.calls == [("sys", "q", "ctx-A")]
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_stream_setup_failure_raises_unavailable() -> None:
    service = RAGService(
        FakeKnowledge(), FakeGenerator(error=GenerationError("refused")), "sys"
    )

    with pytest.raises(ChatUnavailable):
        await service.process_stream_chat("q")
