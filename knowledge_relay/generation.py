"""Generation client for OpenAI-compatible chat completion APIs.

Supports a blocking mode that returns the whole answer and a streaming mode
that returns an open TokenStream of incremental deltas. When no API key is
configured the client answers with canned text so the relay can run without
real credentials.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from knowledge_relay.config import AIConfig
from knowledge_relay.models import ChatMessage
from knowledge_relay.telemetry import LOGGER_NAME

CONTEXT_TEMPLATE = "Reference knowledge base content:\n{context}\n\nUser question: {query}"

# Delta fields different backends use for the model's reasoning channel.
REASONING_FIELDS = ("reasoning_content", "reasoning", "thought", "thinking")

_STUB_REASONING = "No API key is configured, so this answer comes from the stub backend."
_STUB_RESPONSE = (
    "This is a stub response from the knowledge relay. "
    "Configure a valid API key to get real completions."
)


class GenerationError(Exception):
    """Raised when the completion backend fails."""


@dataclass
class StreamDelta:
    """One increment from the completion backend."""

    content: str = ""
    reasoning_content: str = ""


class TokenStream:
    """An open, not yet drained source of StreamDelta increments.

    The owner must either exhaust it or call ``aclose()``; closing releases
    the underlying connection and is safe to call more than once.
    """

    def __init__(
        self,
        deltas: AsyncIterator[StreamDelta],
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._deltas = deltas
        self._on_close = on_close
        self.closed = False

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> StreamDelta:
        if self.closed:
            raise StopAsyncIteration
        return await self._deltas.__anext__()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        aclose = getattr(self._deltas, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._on_close is not None:
            await self._on_close()


def build_messages(system_prompt: str, query: str, context: str) -> List[ChatMessage]:
    """Build the system + user message pair sent to the model.

    The user message wraps the query in CONTEXT_TEMPLATE when context is
    non-empty, otherwise it is the query verbatim.
    """
    if context:
        user_content = CONTEXT_TEMPLATE.format(context=context, query=query)
    else:
        user_content = query
    return [
        ChatMessage(role="system", content=system_prompt),
        ChatMessage(role="user", content=user_content),
    ]


class GenerationClient:
    """Wraps a chat completion endpoint in blocking and streaming modes."""

    def __init__(
        self,
        config: AIConfig,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._transport = transport

    @property
    def stub_mode(self) -> bool:
        return not self.config.api_key

    async def generate(self, system_prompt: str, query: str, context: str) -> str:
        """Return the model's full answer.

        Raises:
            GenerationError: On transport failure, non-2xx status, or no choices.
        """
        messages = build_messages(system_prompt, query, context)
        if self.stub_mode:
            return _STUB_RESPONSE

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    self._url(), json=self._payload(messages, stream=False), headers=self._headers()
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GenerationError(
                "Completion backend returned HTTP {}".format(exc.response.status_code)
            ) from exc
        except httpx.HTTPError as exc:
            raise GenerationError("Completion request failed: {}".format(exc)) from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise GenerationError("Completion response is not valid JSON") from exc

        choices = data.get("choices") or []
        if not choices:
            raise GenerationError("Completion backend returned no choices")

        return (choices[0].get("message") or {}).get("content") or ""

    async def generate_stream(self, system_prompt: str, query: str, context: str) -> TokenStream:
        """Open an incremental completion.

        The connection is established and its status checked before this
        returns, so setup failures surface here rather than mid-stream.

        Raises:
            GenerationError: If the stream cannot be opened.
        """
        messages = build_messages(system_prompt, query, context)
        if self.stub_mode:
            return TokenStream(_stub_deltas())

        client = httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)
        request = client.build_request(
            "POST", self._url(), json=self._payload(messages, stream=True), headers=self._headers()
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise GenerationError("Completion stream request failed: {}".format(exc)) from exc

        if response.status_code != 200:
            await response.aread()
            await response.aclose()
            await client.aclose()
            raise GenerationError(
                "Completion backend returned HTTP {}".format(response.status_code)
            )

        async def _close() -> None:
            await response.aclose()
            await client.aclose()

        return TokenStream(_parse_sse(response), on_close=_close)

    def _url(self) -> str:
        return "{}/chat/completions".format(self.config.base_url.rstrip("/"))

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": "Bearer {}".format(self.config.api_key),
            "Content-Type": "application/json",
        }

    def _payload(self, messages: List[ChatMessage], stream: bool) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": stream,
        }


async def _parse_sse(response: httpx.Response) -> AsyncIterator[StreamDelta]:
    """Turn an OpenAI-style SSE body into StreamDelta increments."""
    try:
        async for raw_line in response.aiter_lines():
            line = raw_line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                return
            try:
                chunk = json.loads(data)
            except ValueError as exc:
                raise GenerationError("Malformed stream chunk: {!r}".format(data)) from exc
            if not isinstance(chunk, dict):
                raise GenerationError("Malformed stream chunk: {!r}".format(data))
            if chunk.get("error"):
                raise GenerationError("Completion backend error: {}".format(chunk["error"]))

            choices = chunk.get("choices") or []
            if not choices:
                continue
            delta = choices[0].get("delta") or {}
            reasoning = ""
            for name in REASONING_FIELDS:
                value = delta.get(name)
                if isinstance(value, str) and value:
                    reasoning = value
                    break
            content = delta.get("content") or ""
            if content or reasoning:
                yield StreamDelta(content=content, reasoning_content=reasoning)
    except httpx.HTTPError as exc:
        raise GenerationError("Failed to receive stream: {}".format(exc)) from exc


async def _stub_deltas() -> AsyncIterator[StreamDelta]:
    yield StreamDelta(reasoning_content=_STUB_REASONING)
    for word in _STUB_RESPONSE.split(" "):
        yield StreamDelta(content=word + " ")
