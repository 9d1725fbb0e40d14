"""Chat orchestration: retrieval, prompt assembly and generation.

Retrieval is best effort; when the knowledge store fails the model is asked
without context. Generation failures surface as ChatUnavailable, which
carries the client-facing response.
"""

import logging
from typing import Optional

from knowledge_relay.generation import GenerationClient, GenerationError
from knowledge_relay.knowledge import KnowledgeClient, KnowledgeError
from knowledge_relay.models import ChatResponse
from knowledge_relay.relay import StreamSession
from knowledge_relay.telemetry import LOGGER_NAME, log_event

UNAVAILABLE_MESSAGE = "AI service is temporarily unavailable, please try again later"


class ChatUnavailable(Exception):
    """Raised when the answer cannot be generated.

    ``response`` is the failure envelope to return to the caller.
    """

    def __init__(self, detail: str) -> None:
        self.detail = detail
        self.response = ChatResponse(success=False, message=UNAVAILABLE_MESSAGE)
        super().__init__(detail)


class RAGService:
    """Composes knowledge retrieval and generation into the two chat operations."""

    def __init__(
        self,
        knowledge: KnowledgeClient,
        generator: GenerationClient,
        system_prompt: str,
        logger: Optional[logging.Logger] = None,
        stream_capacity: int = 1,
    ) -> None:
        self.knowledge = knowledge
        self.generator = generator
        self.system_prompt = system_prompt
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.stream_capacity = stream_capacity

    async def _retrieve(self, query: str) -> str:
        """Fetch context, substituting an empty string when retrieval fails."""
        try:
            context = await self.knowledge.query(query)
        except KnowledgeError as exc:
            log_event(self.logger, "knowledge_failed", level=logging.WARNING, error=str(exc))
            return ""
        log_event(self.logger, "knowledge_retrieved", context_length=len(context))
        return context

    async def process_chat(self, query: str) -> ChatResponse:
        """Answer a question in one shot.

        Raises:
            ChatUnavailable: If the completion backend fails.
        """
        log_event(self.logger, "chat_received", mode="blocking", query_length=len(query))
        context = await self._retrieve(query)

        try:
            answer = await self.generator.generate(self.system_prompt, query, context)
        except GenerationError as exc:
            log_event(self.logger, "generation_failed", level=logging.ERROR, error=str(exc))
            raise ChatUnavailable(str(exc)) from exc

        log_event(self.logger, "chat_completed", mode="blocking", answer_length=len(answer))
        return ChatResponse(success=True, answer=answer)

    async def process_stream_chat(self, query: str) -> StreamSession:
        """Start a streamed answer.

        Retrieval and stream setup happen before this returns; the segmenter
        then runs on its own task so the caller can start consuming at once.

        Returns:
            A started StreamSession.

        Raises:
            ChatUnavailable: If the stream cannot be opened.
        """
        log_event(self.logger, "chat_received", mode="stream", query_length=len(query))
        context = await self._retrieve(query)

        try:
            token_stream = await self.generator.generate_stream(
                self.system_prompt, query, context
            )
        except GenerationError as exc:
            log_event(self.logger, "generation_failed", level=logging.ERROR,
                      mode="stream", error=str(exc))
            raise ChatUnavailable(str(exc)) from exc

        return StreamSession(token_stream, self.logger, self.stream_capacity).start()
