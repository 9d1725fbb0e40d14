"""Producer/consumer relay for one streaming chat request.

A StreamSession runs the segmenter over a TokenStream on its own task and
publishes onto two bounded channels: content units and (at most one) error.
The transport layer is the single consumer. Either side may leave first:

* the producer always closes both channels and the token stream on exit,
  whether it finished, failed or was cancelled;
* the consumer calls ``aclose()`` when the caller disconnects, which closes
  its receive sides and cancels the producer without waiting for it.

Channel closure never blocks. A send to a departed consumer fails instead of
waiting, so no task is left behind.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from knowledge_relay.generation import TokenStream
from knowledge_relay.models import StreamContent
from knowledge_relay.segmentation import Phase, StreamSegmenter
from knowledge_relay.telemetry import LOGGER_NAME, log_event


class StreamSession:
    """Channels and producer task for a single streamed answer."""

    def __init__(
        self,
        token_stream: TokenStream,
        logger: Optional[logging.Logger] = None,
        capacity: int = 1,
    ) -> None:
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._token_stream = token_stream
        self._segmenter = StreamSegmenter()

        self._content_send: MemoryObjectSendStream[StreamContent]
        self.content: MemoryObjectReceiveStream[StreamContent]
        self._content_send, self.content = anyio.create_memory_object_stream(capacity)

        self._error_send: MemoryObjectSendStream[Exception]
        self.errors: MemoryObjectReceiveStream[Exception]
        self._error_send, self.errors = anyio.create_memory_object_stream(1)

        self._task: Optional["asyncio.Task[None]"] = None
        self._started = False

    @property
    def phase(self) -> Phase:
        return self._segmenter.phase

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> "StreamSession":
        """Launch the producer task. Must be called from a running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._produce(), name="stream-relay")
        return self

    async def _produce(self) -> None:
        self._started = True
        emitted = 0
        try:
            async with self._content_send, self._error_send:
                try:
                    async for delta in self._token_stream:
                        for unit in self._segmenter.feed(delta):
                            await self._content_send.send(unit)
                            emitted += 1
                    for unit in self._segmenter.finish():
                        await self._content_send.send(unit)
                        emitted += 1
                except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                    log_event(self.logger, "stream_consumer_gone", emitted=emitted)
                    return
                except Exception as exc:
                    log_event(self.logger, "stream_failed", level=logging.ERROR,
                              error=str(exc), emitted=emitted)
                    try:
                        self._error_send.send_nowait(exc)
                    except (anyio.BrokenResourceError, anyio.WouldBlock):
                        pass  # consumer already left
                    return
            log_event(self.logger, "stream_completed", emitted=emitted)
        finally:
            await self._token_stream.aclose()

    def __aiter__(self) -> AsyncIterator[StreamContent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamContent]:
        """Yield content units until the producer closes, then raise its error."""
        async for unit in self.content:
            yield unit
        try:
            error = self.errors.receive_nowait()
        except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
            return
        raise error

    async def aclose(self) -> None:
        """Stop consuming and cancel the producer if it is still running."""
        self.content.close()
        self.errors.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if not self._started:
            # A producer cancelled before its first step never reaches its finally.
            await self._token_stream.aclose()

    async def join(self) -> None:
        """Wait until the producer has exited and released the token stream."""
        if self._task is not None:
            await asyncio.wait({self._task})
