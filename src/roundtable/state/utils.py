"""Utility functions for Roundtable state.

This module provides message identity keys and helper queries over the
message list (grouping by round, locating participant and moderator
messages, sorting participants).
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from roundtable.state.schema import (
    Message,
    MessageRole,
    ModeratorMetadata,
    Participant,
    ParticipantMetadata,
    TextPart,
    UserMetadata,
)


_DETERMINISTIC_ID = re.compile(r"^(?P<thread>.+)_r(?P<round>\d+)_(?:p(?P<index>\d+)|moderator|user)$")


def participant_message_id(thread_id: str, round_number: int, participant_index: int) -> str:
    """Canonical id of a participant's message in a round."""
    return f"{thread_id}_r{round_number}_p{participant_index}"


def moderator_message_id(thread_id: str, round_number: int) -> str:
    """Canonical id of the moderator message in a round."""
    return f"{thread_id}_r{round_number}_moderator"


def user_message_id(thread_id: str, round_number: int) -> str:
    """Canonical id of the user message in a round."""
    return f"{thread_id}_r{round_number}_user"


def stream_id_for(thread_id: str, round_number: int, participant_index: Optional[int]) -> str:
    """Stream identifier; same pattern as the message it will produce.

    A ``None`` or negative participant index addresses the moderator stream.
    """
    if participant_index is None or participant_index < 0:
        return moderator_message_id(thread_id, round_number)
    return participant_message_id(thread_id, round_number, participant_index)


def is_deterministic_id(message_id: str) -> bool:
    """Whether an id follows the canonical ``{thread}_r{round}_...`` scheme."""
    return _DETERMINISTIC_ID.match(message_id) is not None


def sort_by_priority(participants: Iterable[Participant]) -> List[Participant]:
    return sorted(participants, key=lambda p: p.priority)


def get_enabled_participants(participants: Iterable[Participant]) -> List[Participant]:
    """Enabled participants in priority order."""
    return [p for p in sort_by_priority(participants) if p.is_enabled]


def get_messages_for_round(messages: Sequence[Message], round_number: int) -> List[Message]:
    return [m for m in messages if m.round_number == round_number]


def get_user_message_for_round(
    messages: Sequence[Message], round_number: int
) -> Optional[Message]:
    """The round's user message, preferring the authoritative one."""
    candidates = [m for m in messages if m.is_user and m.round_number == round_number]
    if not candidates:
        return None
    for message in candidates:
        if not message.is_optimistic:
            return message
    return candidates[0]


def get_participant_messages_for_round(
    messages: Sequence[Message], round_number: int
) -> Dict[int, Message]:
    """Map participant index to that participant's message in the round."""
    result: Dict[int, Message] = {}
    for message in messages:
        if message.is_participant and message.round_number == round_number:
            result.setdefault(message.participant_index, message)
    return result


def get_moderator_message_for_round(
    messages: Sequence[Message], round_number: int
) -> Optional[Message]:
    for message in messages:
        if message.is_moderator and message.round_number == round_number:
            return message
    return None


def get_max_round_number(messages: Sequence[Message]) -> Optional[int]:
    if not messages:
        return None
    return max(m.round_number for m in messages)


def message_sort_key(message: Message):
    """Order by round, then user before assistants, then participant index.

    The moderator sorts after every participant of its round.
    """
    if message.is_user:
        return (message.round_number, 0, 0)
    if message.is_moderator:
        return (message.round_number, 2, 0)
    return (message.round_number, 1, message.participant_index)


def create_user_message(
    message_id: str,
    text: str,
    round_number: int,
    is_optimistic: bool = False,
    extra_parts: Sequence = (),
) -> Message:
    """Build a user message with a single text part."""
    return Message(
        id=message_id,
        role=MessageRole.USER,
        parts=(*extra_parts, TextPart(text=text)),
        metadata=UserMetadata(round_number=round_number, is_optimistic=is_optimistic),
    )


def create_participant_message(
    thread_id: str,
    round_number: int,
    participant_index: int,
    text: str = "",
    finish_reason: Optional[str] = None,
    participant: Optional[Participant] = None,
    message_id: Optional[str] = None,
    **error_fields,
) -> Message:
    """Build a participant message, defaulting to its canonical id."""
    return Message(
        id=message_id or participant_message_id(thread_id, round_number, participant_index),
        role=MessageRole.ASSISTANT,
        parts=(TextPart(text=text),) if text else (),
        metadata=ParticipantMetadata(
            round_number=round_number,
            participant_index=participant_index,
            participant_id=participant.id if participant else None,
            model_id=participant.model_id if participant else None,
            finish_reason=finish_reason,
            **error_fields,
        ),
    )


def create_moderator_message(
    thread_id: str,
    round_number: int,
    text: str = "",
    finish_reason: Optional[str] = None,
    **error_fields,
) -> Message:
    return Message(
        id=moderator_message_id(thread_id, round_number),
        role=MessageRole.ASSISTANT,
        parts=(TextPart(text=text),) if text else (),
        metadata=ModeratorMetadata(
            round_number=round_number,
            finish_reason=finish_reason,
            **error_fields,
        ),
    )
