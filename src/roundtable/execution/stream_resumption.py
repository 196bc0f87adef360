"""Stream resumption for Roundtable.

After a reload a participant's network stream may still be running (or
may just have finished) in the stream buffer. The predicates here decide
whether the stored resumption record is usable; ``StreamResumptionManager``
drives the mount-time check and the re-attachment.

A record is only usable for the thread currently loaded, for a participant
index inside the current configuration, and while younger than the TTL.
An out-of-range index is treated as invalid even when the thread matches.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from roundtable.execution.contracts import (
    ResumedStreamSource,
    StreamFailed,
    StreamStatusLookup,
    drain_stream,
)
from roundtable.state.schema import StreamResumptionState, StreamStatus, utc_now
from roundtable.state.utils import participant_message_id
from roundtable.utils.exceptions import (
    ProviderError,
    RoundtableError,
    StreamResumptionError,
)
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)

STREAM_RESUMPTION_TTL = timedelta(hours=1)


def is_stale(
    record: Optional[StreamResumptionState],
    now: Optional[datetime] = None,
    ttl: timedelta = STREAM_RESUMPTION_TTL,
) -> bool:
    if record is None:
        return False
    now = now or utc_now()
    return now - record.created_at > ttl


def is_valid(
    record: Optional[StreamResumptionState],
    thread_id: Optional[str],
    participant_count: int,
) -> bool:
    """Whether the record belongs to ``thread_id`` and an existing participant."""
    if record is None or not thread_id:
        return False
    if record.thread_id != thread_id:
        return False
    return 0 <= record.participant_index < participant_count


def needs_stream_resumption(
    record: Optional[StreamResumptionState],
    thread_id: Optional[str],
    participant_count: int,
    now: Optional[datetime] = None,
    ttl: timedelta = STREAM_RESUMPTION_TTL,
) -> bool:
    """Whether an active stream should be re-attached."""
    if record is None or record.state != StreamStatus.ACTIVE:
        return False
    if not is_valid(record, thread_id, participant_count):
        return False
    return not is_stale(record, now, ttl)


def needs_message_sync(
    record: Optional[StreamResumptionState], thread_id: Optional[str] = None
) -> bool:
    """Whether the stream already completed and only its message must be fetched."""
    if record is None or record.state != StreamStatus.COMPLETED:
        return False
    return thread_id is None or record.thread_id == thread_id


class ResumptionDecision(str, Enum):
    """Outcome of the mount-time resumption check."""

    NONE = "none"
    RESUME = "resume"
    SYNC_MESSAGE = "sync_message"


class StreamResumptionManager:
    """Checks for and resumes buffered participant streams.

    Key responsibilities:
    - Validate the stored record against the loaded thread and participants
    - Ask the stream buffer whether the stream is still active
    - Re-attach at most once per ``(round, participant_index)``
    - Hand the round back to normal sequencing when the resumed stream ends
    """

    def __init__(
        self,
        store,
        lookup: Optional[StreamStatusLookup] = None,
        source: Optional[ResumedStreamSource] = None,
    ):
        self.store = store
        self.lookup = lookup
        self.source = source

    async def check_on_mount(self, now: Optional[datetime] = None) -> ResumptionDecision:
        """Decide what to do with the stored resumption record."""
        state = self.store.state
        record = state.stream_resumption
        if record is None:
            return ResumptionDecision.NONE

        if record.state == StreamStatus.ACTIVE and not self.store.needs_stream_resumption(now):
            logger.info(
                f"Discarding resumption record {record.stream_id} "
                f"(thread mismatch, stale or out of range)"
            )
            self.store.clear_stream_resumption()
            return ResumptionDecision.NONE

        if self.lookup is not None:
            try:
                status = await self.lookup.get_stream_status(
                    record.thread_id, record.round_number, record.participant_index
                )
            except (ProviderError, ConnectionError, asyncio.TimeoutError) as e:
                self.on_resumption_failure(e)
                return ResumptionDecision.NONE

            if status is None:
                self.on_resumption_failure(
                    StreamResumptionError("Stream not found", stream_id=record.stream_id)
                )
                return ResumptionDecision.NONE

            if status != record.state:
                self.store.set_stream_resumption_state(
                    StreamResumptionState(
                        stream_id=record.stream_id,
                        thread_id=record.thread_id,
                        round_number=record.round_number,
                        participant_index=record.participant_index,
                        state=status,
                        created_at=record.created_at,
                    )
                )

        if self.store.needs_message_sync():
            return ResumptionDecision.SYNC_MESSAGE
        if self.store.needs_stream_resumption(now):
            return ResumptionDecision.RESUME
        return ResumptionDecision.NONE

    async def resume(self, now: Optional[datetime] = None) -> Optional[int]:
        """Re-attach to the recorded stream and continue the round.

        Returns:
            The next participant index to trigger, or None when the round is
            complete, the pair was already attempted or resumption failed.
        """
        if self.source is None:
            raise StreamResumptionError("No resumed stream source configured")

        state = self.store.state
        record = state.stream_resumption
        if record is None or not self.store.needs_stream_resumption(now):
            return None

        round_number = record.round_number
        participant_index = record.participant_index
        if not self.store.mark_resumption_attempted(round_number, participant_index):
            logger.info(
                f"Resumption of round {round_number} participant "
                f"{participant_index} already attempted"
            )
            return None

        message_id = participant_message_id(record.thread_id, round_number, participant_index)
        self.store.start_streaming(round_number, participant_index)
        self.store.ensure_participant_placeholder(round_number, participant_index)

        try:
            outcome = await drain_stream(
                self.store, message_id, self.source.resume(record.stream_id)
            )
        except (RoundtableError, ConnectionError, asyncio.TimeoutError) as e:
            self.on_resumption_failure(e)
            return None

        if outcome is None:
            logger.info(f"Resumed stream {record.stream_id} stopped")
            return None
        if isinstance(outcome, StreamFailed):
            logger.warning(
                f"Resumed stream {record.stream_id} failed: {outcome.category.value}"
            )

        return self.on_resumed_stream_complete(round_number, participant_index)

    def on_resumed_stream_complete(
        self, round_number: int, participant_index: int
    ) -> Optional[int]:
        return self.store.handle_resumed_stream_complete(round_number, participant_index)

    def on_resumption_failure(self, error: Exception) -> None:
        logger.warning(f"Stream resumption failed: {error}")
        self.store.handle_stream_resumption_failure(error)
