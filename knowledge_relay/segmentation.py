"""Reasoning/answer segmentation of a streamed completion.

Models that expose a reasoning channel first emit "thinking" increments and
then the answer. The segmenter turns the raw increments into StreamContent
units and injects boundary markers so a client can tell the phases apart:

    <think>  reasoning...  </think>  <answer>  answer...

Every stream that ends cleanly carries exactly one ``<answer>`` marker. The
``<think>``/``</think>`` pair appears at most once and only if the model
produced reasoning. Markers are ordinary content units distinguished only by
their text.
"""

import enum
from typing import List, Tuple

from knowledge_relay.generation import StreamDelta
from knowledge_relay.models import StreamContent

REASONING_START = "<think>"
REASONING_END = "</think>"
ANSWER_START = "<answer>"


class Phase(enum.Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    ANSWERING_AFTER_REASONING = "answering_after_reasoning"
    ANSWERING_DIRECT = "answering_direct"
    DONE = "done"

    @property
    def answering(self) -> bool:
        return self in (Phase.ANSWERING_AFTER_REASONING, Phase.ANSWERING_DIRECT)


def _marker(text: str) -> StreamContent:
    return StreamContent(content=text)


def advance(phase: Phase, delta: StreamDelta) -> Tuple[Phase, List[StreamContent]]:
    """Apply one increment.

    Args:
        phase: Current phase.
        delta: The increment received from the backend.

    Returns:
        The next phase and the units to emit, in order.

    Raises:
        ValueError: If called after the stream has finished.
    """
    if phase is Phase.DONE:
        raise ValueError("stream already finished")

    units: List[StreamContent] = []

    if delta.reasoning_content:
        if phase is Phase.IDLE:
            units.append(_marker(REASONING_START))
            phase = Phase.REASONING
        # Late reasoning after the answer started is forwarded unmarked.
        units.append(StreamContent(reasoning_content=delta.reasoning_content))

    if delta.content:
        # The reasoning phase only ends on an increment without reasoning.
        if phase is Phase.REASONING and not delta.reasoning_content:
            units.append(_marker(REASONING_END))
            units.append(_marker(ANSWER_START))
            phase = Phase.ANSWERING_AFTER_REASONING
        elif phase is Phase.IDLE:
            units.append(_marker(ANSWER_START))
            phase = Phase.ANSWERING_DIRECT
        units.append(StreamContent(content=delta.content))

    return phase, units


def finish(phase: Phase) -> Tuple[Phase, List[StreamContent]]:
    """Close the stream after the backend ended cleanly.

    Emits ``</think>`` if still reasoning and ``<answer>`` if it has not been
    emitted yet.
    """
    if phase is Phase.DONE:
        return phase, []

    units: List[StreamContent] = []
    if phase is Phase.REASONING:
        units.append(_marker(REASONING_END))
    if not phase.answering:
        units.append(_marker(ANSWER_START))
    return Phase.DONE, units


class StreamSegmenter:
    """Stateful wrapper over ``advance``/``finish`` for a single stream."""

    def __init__(self) -> None:
        self.phase = Phase.IDLE

    def feed(self, delta: StreamDelta) -> List[StreamContent]:
        self.phase, units = advance(self.phase, delta)
        return units

    def finish(self) -> List[StreamContent]:
        self.phase, units = finish(self.phase)
        return units
