"""Tests for the streaming relay (producer task and bounded channels)."""

import asyncio
from typing import Callable, List

import pytest

from knowledge_relay.generation import GenerationError, StreamDelta
from knowledge_relay.relay import StreamSession
from knowledge_relay.segmentation import ANSWER_START, REASONING_END, REASONING_START, Phase


async def _collect(session: StreamSession) -> List[str]:
    out = []
    async for unit in session:
        out.append(unit.reasoning_content or unit.content)
    return out


@pytest.mark.asyncio
async def test_session_relays_segmented_stream(token_stream_factory: Callable) -> None:
    """Units arrive in segmentation order and the token stream is closed once."""
    stream = token_stream_factory(
        [
            StreamDelta(reasoning_content="think"),
            StreamDelta(content="Hello"),
            StreamDelta(content=" world"),
        ]
    )
    session = StreamSession(stream).start()

    units = await _collect(session)
    await session.join()

    assert units == [REASONING_START, "think", REASONING_END, ANSWER_START, "Hello", " world"]
    assert session.phase is Phase.DONE
    assert stream.closed
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_mid_stream_error_raised_after_content(token_stream_factory: Callable) -> None:
    """A transport error ends the stream without further markers."""
    stream = token_stream_factory(
        [StreamDelta(reasoning_content="think")],
        error=GenerationError("connection reset"),
    )
    session = StreamSession(stream).start()

    received: List[str] = []
    with pytest.raises(GenerationError, match="connection reset"):
        async for unit in session:
            received.append(unit.reasoning_content or unit.content)
    await session.join()

    assert received == [REASONING_START, "think"]
    assert REASONING_END not in received
    assert ANSWER_START not in received
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_producer_is_bounded_by_capacity(token_stream_factory: Callable) -> None:
    """Without a reader the producer stops pulling from the backend."""
    deltas = [StreamDelta(content=str(i)) for i in range(10)]
    stream = token_stream_factory(deltas)
    session = StreamSession(stream, capacity=1).start()

    for _ in range(10):
        await asyncio.sleep(0)

    assert not session.done
    assert stream.pulled < len(deltas)
    assert session.content.statistics().current_buffer_used == 1

    await session.aclose()
    await session.join()
    assert stream.closed


@pytest.mark.asyncio
async def test_disconnect_cancels_producer_and_closes_stream(
    token_stream_factory: Callable,
) -> None:
    """A departed consumer leaves no task behind and the connection is released."""
    tasks_before = len(asyncio.all_tasks())
    stream = token_stream_factory([StreamDelta(content="partial")], hang=True)
    session = StreamSession(stream).start()

    iterator = session.__aiter__()
    first = await iterator.__anext__()
    assert first.content == ANSWER_START
    await iterator.aclose()
    await session.aclose()
    await asyncio.wait_for(session.join(), timeout=1.0)

    assert session.done
    assert stream.closed
    assert stream.close_calls == 1
    assert len(asyncio.all_tasks()) == tasks_before


@pytest.mark.asyncio
async def test_close_before_first_step_releases_stream(token_stream_factory: Callable) -> None:
    """Cancelling a producer that never ran still closes the token stream."""
    stream = token_stream_factory([StreamDelta(content="never")])
    session = StreamSession(stream).start()

    await session.aclose()
    await asyncio.wait_for(session.join(), timeout=1.0)

    assert session.done
    assert stream.pulled == 0
    assert stream.closed
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_closed_reader_does_not_block_producer(token_stream_factory: Callable) -> None:
    """Closing only the receive side lets the producer exit on its next send."""
    stream = token_stream_factory([StreamDelta(content=str(i)) for i in range(5)])
    session = StreamSession(stream).start()
    await asyncio.sleep(0)

    session.content.close()
    await asyncio.wait_for(session.join(), timeout=1.0)

    assert session.done
    assert stream.close_calls == 1
