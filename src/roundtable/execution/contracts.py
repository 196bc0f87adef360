"""Collaborator contracts for Roundtable execution.

The core reaches model providers, web search and the stream buffer only
through the protocols below. Token streams are async iterators of
``StreamEvent`` values, each one ending with ``StreamFinished`` or
``StreamFailed``.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Sequence, Union, runtime_checkable

from langchain_core.messages import BaseMessage

from roundtable.state.schema import (
    ErrorCategory,
    FinishReason,
    Participant,
    PreSearchResult,
    StreamStatus,
)
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class StreamFinished:
    finish_reason: str = FinishReason.STOP.value


@dataclass(frozen=True)
class StreamFailed:
    category: ErrorCategory
    message: str


StreamEvent = Union[TextDelta, StreamFinished, StreamFailed]
TerminalEvent = Union[StreamFinished, StreamFailed]


@runtime_checkable
class ParticipantStreamer(Protocol):
    """Submits a participant's context and streams its answer."""

    def stream(
        self,
        participant: Participant,
        context: Sequence[BaseMessage],
        round_number: int,
    ) -> AsyncIterator[StreamEvent]: ...


@runtime_checkable
class ModeratorStreamer(Protocol):
    """Streams the synthesis of a completed round."""

    def stream(
        self, context: Sequence[BaseMessage], round_number: int
    ) -> AsyncIterator[StreamEvent]: ...


@runtime_checkable
class SearchProvider(Protocol):
    """Runs the web-search pre-step. Raises on failure."""

    async def search(self, query: str, round_number: int) -> PreSearchResult: ...


@runtime_checkable
class StreamStatusLookup(Protocol):
    """Looks up a buffered stream. ``None`` means not found."""

    async def get_stream_status(
        self, thread_id: str, round_number: int, participant_index: int
    ) -> Optional[StreamStatus]: ...


@runtime_checkable
class ResumedStreamSource(Protocol):
    """Re-attaches to a buffered stream by id."""

    def resume(self, stream_id: str) -> AsyncIterator[StreamEvent]: ...


async def drain_stream(
    store, message_id: str, events: AsyncIterator[StreamEvent]
) -> Optional[TerminalEvent]:
    """Feed a token stream into the store message ``message_id``.

    Returns the terminal event, or None when streaming was stopped while
    the stream was running. Events arriving after a stop are dropped. A
    stream that ends without a terminal event is finished with reason
    ``unknown``.
    """
    try:
        async for event in events:
            state = store.state
            if not (state.is_streaming or state.is_moderator_streaming):
                logger.debug(f"Streaming stopped, dropping events for {message_id}")
                return None

            if isinstance(event, TextDelta):
                store.append_stream_chunk(message_id, event.text)
            elif isinstance(event, StreamFinished):
                store.finish_message(message_id, event.finish_reason)
                return event
            elif isinstance(event, StreamFailed):
                store.fail_message(message_id, event.message, event.category)
                return event
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    state = store.state
    if not (state.is_streaming or state.is_moderator_streaming):
        return None

    logger.warning(f"Stream for {message_id} ended without a finish signal")
    finished = StreamFinished(FinishReason.UNKNOWN.value)
    store.finish_message(message_id, finished.finish_reason)
    return finished
