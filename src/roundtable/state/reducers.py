"""Message-list reducers for Roundtable state management.

Each reducer is a pure function from the current message tuple (plus an
input) to the next message tuple. They enforce the round invariant: at most
one user message, one message per participant index and one moderator
message per round. A message that shows up under a temporary id and later
under its canonical id replaces the earlier entry instead of duplicating it.
"""

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from roundtable.state.schema import (
    Message,
    ParticipantMetadata,
    TextPart,
    TextPartState,
)
from roundtable.state.utils import is_deterministic_id, message_sort_key
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)

Messages = Tuple[Message, ...]


def slot_key(message: Message) -> Tuple[int, str, int]:
    """Identify the round slot a message occupies.

    Two messages with the same slot key violate the round invariant.
    """
    if message.is_user:
        return (message.round_number, "user", 0)
    if message.is_moderator:
        return (message.round_number, "moderator", 0)
    return (message.round_number, "participant", message.participant_index)


def _content_weight(message: Message) -> int:
    return len(message.text)


def prefer_message(existing: Message, incoming: Message) -> Message:
    """Choose between two versions of the same message.

    The incoming version wins, except that a terminal message is never
    downgraded to a non-terminal one and existing text is never replaced by
    an empty body (the incoming metadata is still taken).
    """
    if existing.is_terminal and not incoming.is_terminal:
        return existing
    if existing.has_text_content and not incoming.has_text_content:
        return replace(incoming, parts=existing.parts)
    return incoming


def _insert_index(messages: Sequence[Message], message: Message) -> int:
    key = message_sort_key(message)
    index = len(messages)
    while index > 0 and message_sort_key(messages[index - 1]) > key:
        index -= 1
    return index


def upsert_message(
    messages: Sequence[Message], message: Message, insert_only: bool = False
) -> Messages:
    """Insert or replace a message, keeping round order.

    Args:
        messages: Current messages
        message: Message to store
        insert_only: Leave an existing entry with the same id untouched

    Returns:
        New message tuple. The occupant of the same round slot, if any, is
        replaced even when it carries a different (temporary) id; a
        canonical id already in the slot is kept.
    """
    current = list(messages)

    for i, existing in enumerate(current):
        if existing.id == message.id:
            if insert_only:
                return tuple(current)
            current[i] = prefer_message(existing, message)
            return tuple(current)

    key = slot_key(message)
    for i, existing in enumerate(current):
        if slot_key(existing) != key:
            continue
        if existing.is_user and not existing.is_optimistic and message.is_optimistic:
            # An authoritative user message is never superseded by a prediction
            return tuple(current)
        if insert_only and not (existing.is_user and existing.is_optimistic):
            return tuple(current)
        merged = prefer_message(existing, message)
        if is_deterministic_id(existing.id) and not is_deterministic_id(message.id):
            merged = replace(merged, id=existing.id)
        logger.debug(f"Replacing {existing.id} with {merged.id} in slot {key}")
        current[i] = merged
        return tuple(current)

    current.insert(_insert_index(current, message), message)
    return tuple(current)


def append_text(
    messages: Sequence[Message], message_id: str, chunk: str
) -> Messages:
    """Append a streamed text chunk to a message's trailing text part."""
    current = list(messages)
    for i, existing in enumerate(current):
        if existing.id != message_id:
            continue
        parts = list(existing.parts)
        if parts and isinstance(parts[-1], TextPart):
            last = parts[-1]
            parts[-1] = TextPart(text=last.text + chunk, state=TextPartState.STREAMING)
        else:
            parts.append(TextPart(text=chunk, state=TextPartState.STREAMING))
        current[i] = replace(existing, parts=tuple(parts))
        return tuple(current)
    return tuple(current)


def mark_parts_done(message: Message) -> Message:
    if not message.has_streaming_parts:
        return message
    parts = tuple(
        replace(p, state=TextPartState.DONE) if isinstance(p, TextPart) else p
        for p in message.parts
    )
    return replace(message, parts=parts)


def finalize_message_id(
    messages: Sequence[Message], temp_id: str, canonical_id: str
) -> Messages:
    """Move a message from its temporary id to its canonical id.

    If the canonical id is already present, the two versions are merged into
    the canonical entry and the temporary one is dropped.
    """
    if temp_id == canonical_id:
        return tuple(messages)

    temp = next((m for m in messages if m.id == temp_id), None)
    if temp is None:
        return tuple(messages)

    canonical = next((m for m in messages if m.id == canonical_id), None)
    if canonical is None:
        return tuple(replace(m, id=canonical_id) if m.id == temp_id else m for m in messages)

    winner = replace(prefer_message(canonical, temp), id=canonical_id)
    return tuple(
        winner if m.id == canonical_id else m for m in messages if m.id != temp_id
    )


def _rank(message: Message) -> Tuple[bool, bool, bool, int]:
    return (
        is_deterministic_id(message.id),
        not message.is_optimistic,
        message.is_terminal,
        _content_weight(message),
    )


def deduplicate_messages(messages: Sequence[Message]) -> Messages:
    """Collapse duplicate ids and duplicate round slots.

    Within a slot the best candidate survives: canonical ids first, then
    authoritative over optimistic, then terminal, then longest content. The
    survivor takes the position of the slot's first occurrence.
    """
    winners: Dict[Tuple[int, str, int], Message] = {}
    order: List[Tuple[int, str, int]] = []
    seen_ids = set()

    for message in messages:
        if message.id in seen_ids:
            continue
        seen_ids.add(message.id)
        key = slot_key(message)
        if key not in winners:
            winners[key] = message
            order.append(key)
        elif _rank(message) > _rank(winners[key]):
            winners[key] = message

    result = tuple(winners[k] for k in order)
    if len(result) != len(messages):
        logger.debug(f"Removed {len(messages) - len(result)} duplicate messages")
    return result


def reconcile_optimistic(messages: Sequence[Message]) -> Messages:
    """Drop optimistic user messages superseded by an authoritative one."""
    confirmed_rounds = {m.round_number for m in messages if m.is_user and not m.is_optimistic}
    return tuple(
        m
        for m in messages
        if not (m.is_user and m.is_optimistic and m.round_number in confirmed_rounds)
    )


def merge_messages(
    current: Sequence[Message], incoming: Sequence[Message]
) -> Messages:
    """Replace the message list without losing content.

    The incoming list defines membership and order. A message present in
    both lists keeps its richer version (see ``prefer_message``).
    """
    by_id = {m.id: m for m in current}
    merged = [
        prefer_message(by_id[m.id], m) if m.id in by_id else m for m in incoming
    ]
    return deduplicate_messages(reconcile_optimistic(merged))


def merge_server_messages(
    current: Sequence[Message], server: Sequence[Message]
) -> Messages:
    """Merge an authoritative list with messages only the store knows yet.

    Used on a same-thread reload. Store messages the server has not
    persisted yet (streamed or optimistic) are kept unless the server already
    holds a message for the same round slot.
    """
    server_ids = {m.id for m in server}
    server_slots = {slot_key(m) for m in server}
    by_id = {m.id: m for m in current}
    merged: List[Message] = [
        prefer_message(by_id[m.id], m) if m.id in by_id else m for m in server
    ]

    for message in current:
        if message.id in server_ids or slot_key(message) in server_slots:
            continue
        merged.insert(_insert_index(merged, message), message)

    return deduplicate_messages(reconcile_optimistic(merged))


def remove_messages(
    messages: Iterable[Message], predicate
) -> Messages:
    return tuple(m for m in messages if not predicate(m))


def set_participant_error(
    message: Message,
    error_message: str,
    error_category,
    finish_reason: Optional[str] = "error",
) -> Message:
    """Attach an error to a participant or moderator message, making it terminal."""
    return replace(
        mark_parts_done(message),
        metadata=replace(
            message.metadata,
            has_error=True,
            error_message=error_message,
            error_category=error_category,
            finish_reason=finish_reason,
        ),
    )


def set_finish_reason(message: Message, finish_reason: str) -> Message:
    """Mark a streamed message complete."""
    if not isinstance(message.metadata, ParticipantMetadata) and not message.is_moderator:
        return message
    return replace(
        mark_parts_done(message),
        metadata=replace(message.metadata, finish_reason=finish_reason),
    )
