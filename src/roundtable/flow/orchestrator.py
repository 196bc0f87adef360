"""Participant orchestrator for Roundtable rounds.

This module sequences participants within a round:

- Advance the current participant pointer, strictly after the previous
  participant's message carries a terminal signal
- Assemble the context each participant sees (the round's user message
  plus every earlier participant's message, failed ones included)
- Detect round completion and silent (empty) participant output

Participant indices are positions in the enabled participant list ordered
by priority.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from roundtable.state.reducers import set_participant_error
from roundtable.state.schema import ErrorCategory, Message, Participant
from roundtable.state.utils import (
    get_enabled_participants,
    get_participant_messages_for_round,
    get_user_message_for_round,
)
from roundtable.utils.exceptions import OrchestrationError
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)

SILENT_FAILURE_MESSAGE = "Model returned an empty response"


@dataclass(frozen=True)
class ParticipantContext:
    """Context handed to the participant at ``participant_index``."""

    round_number: int
    participant_index: int
    user_message: Optional[Message]
    prior_messages: tuple

    @property
    def messages(self) -> List[Message]:
        head = [self.user_message] if self.user_message is not None else []
        return head + list(self.prior_messages)


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of advancing past a completed participant."""

    next_index: Optional[int]
    round_complete: bool


class ParticipantOrchestrator:
    """Moves a round from one participant to the next."""

    def is_terminal(self, message: Optional[Message]) -> bool:
        """Whether a message carries a completion signal.

        A non-empty finish reason is terminal; so is an error tag with a
        category (the silent failure case).
        """
        return message is not None and message.is_terminal

    def detect_silent_failure(self, message: Message) -> Message:
        """Tag a finished but empty assistant message as ``silent_failure``.

        Messages that already carry an error, or have content, are returned
        unchanged.
        """
        if message.is_user or message.has_error:
            return message
        if not message.finish_reason or message.has_text_content:
            return message
        logger.warning(f"Silent failure detected for {message.id}")
        return set_participant_error(
            message,
            SILENT_FAILURE_MESSAGE,
            ErrorCategory.SILENT_FAILURE,
            finish_reason=message.finish_reason,
        )

    def next_participant_index(
        self, participants: Sequence[Participant], completed_index: int
    ) -> Optional[int]:
        """Index after ``completed_index``, or None when the round is done."""
        count = len(get_enabled_participants(participants))
        next_index = completed_index + 1
        return next_index if next_index < count else None

    def build_participant_context(
        self,
        messages: Sequence[Message],
        round_number: int,
        participant_index: int,
    ) -> ParticipantContext:
        """Context for participant ``participant_index`` of a round.

        Contains the round's user message and the messages of participants
        ``0..participant_index - 1`` in index order. Later participants are
        never included.
        """
        by_index = get_participant_messages_for_round(messages, round_number)
        prior = tuple(
            by_index[i] for i in sorted(by_index) if i < participant_index
        )
        return ParticipantContext(
            round_number=round_number,
            participant_index=participant_index,
            user_message=get_user_message_for_round(messages, round_number),
            prior_messages=prior,
        )

    def to_langchain_messages(
        self,
        context: ParticipantContext,
        participants: Sequence[Participant] = (),
    ) -> List[BaseMessage]:
        """Format a participant context as LangChain chat messages.

        Earlier participants are presented as attributed human turns so
        the receiving model does not mistake them for its own output.
        """
        enabled = get_enabled_participants(participants)
        result: List[BaseMessage] = []

        if context.user_message is not None:
            result.append(
                HumanMessage(
                    content=context.user_message.text,
                    name="user",
                    additional_kwargs={
                        "speaker_role": "user",
                        "round": context.round_number,
                    },
                )
            )

        for message in context.prior_messages:
            index = message.participant_index
            speaker = (
                enabled[index].model_id if index < len(enabled) else f"participant_{index}"
            )
            if message.has_error:
                content = f"[{speaker}]: (failed to respond: {message.metadata.error_message})"
            else:
                content = f"[{speaker}]: {message.text}"
            result.append(
                HumanMessage(
                    content=content,
                    name=f"participant_{index}",
                    additional_kwargs={
                        "speaker_id": speaker,
                        "speaker_role": "participant",
                        "round": context.round_number,
                        "has_error": message.has_error,
                    },
                )
            )

        logger.debug(
            f"Built {len(result)} context messages for participant "
            f"{context.participant_index} in round {context.round_number}"
        )
        return result

    def history_to_langchain_messages(
        self, messages: Sequence[Message], before_round: int
    ) -> List[BaseMessage]:
        """Completed earlier rounds as a plain user/assistant transcript."""
        result: List[BaseMessage] = []
        for message in messages:
            if message.round_number >= before_round or not message.has_text_content:
                continue
            if message.is_user:
                result.append(HumanMessage(content=message.text))
            else:
                result.append(AIMessage(content=message.text))
        return result

    def all_participants_responded(
        self,
        messages: Sequence[Message],
        participants: Sequence[Participant],
        round_number: int,
    ) -> bool:
        """Whether every enabled participant has a terminal message in the round."""
        count = len(get_enabled_participants(participants))
        if count == 0:
            return False
        by_index = get_participant_messages_for_round(messages, round_number)
        return all(self.is_terminal(by_index.get(i)) for i in range(count))

    def advance(self, state, round_number: int, completed_index: int) -> AdvanceResult:
        """Advance past ``completed_index`` in ``round_number``.

        Args:
            state: Store state exposing ``messages`` and ``participants``
            round_number: Round being streamed
            completed_index: Participant that just finished

        Returns:
            The next index to trigger (None when the round is complete).

        Raises:
            OrchestrationError: If the completed participant has no terminal
                message yet
        """
        by_index = get_participant_messages_for_round(state.messages, round_number)
        message = by_index.get(completed_index)
        if not self.is_terminal(message):
            raise OrchestrationError(
                f"Participant {completed_index} has not finished round {round_number}",
                round_number=round_number,
                participant_index=completed_index,
            )

        next_index = self.next_participant_index(state.participants, completed_index)
        round_complete = self.all_participants_responded(
            state.messages, state.participants, round_number
        )
        logger.debug(
            f"Round {round_number}: participant {completed_index} done, "
            f"next={next_index}, complete={round_complete}"
        )
        return AdvanceResult(next_index=next_index, round_complete=round_complete)


orchestrator = ParticipantOrchestrator()
