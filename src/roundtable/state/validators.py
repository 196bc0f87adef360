"""State validation logic for Roundtable.

This module provides validation functions to ensure store transitions keep
the round invariants: one user message, one message per participant index
and one moderator message per round, and record statuses that only move
forward through ``pending -> streaming -> complete|failed``.
"""

from collections import Counter
from typing import Dict, List, Sequence

from roundtable.state.schema import (
    Analysis,
    Message,
    MessageStatus,
    ParticipantMetadata,
)
from roundtable.state.reducers import slot_key
from roundtable.utils.exceptions import ValidationError


class StateValidator:
    """Validates messages, records and status transitions."""

    # Same-status updates are accepted as no-ops
    VALID_STATUS_TRANSITIONS: Dict[MessageStatus, List[MessageStatus]] = {
        MessageStatus.PENDING: [
            MessageStatus.PENDING,
            MessageStatus.STREAMING,
            MessageStatus.COMPLETE,
            MessageStatus.FAILED,
        ],
        MessageStatus.STREAMING: [
            MessageStatus.STREAMING,
            MessageStatus.COMPLETE,
            MessageStatus.FAILED,
        ],
        MessageStatus.COMPLETE: [MessageStatus.COMPLETE],
        MessageStatus.FAILED: [MessageStatus.FAILED],
    }

    def validate_status_transition(
        self, current: MessageStatus, new: MessageStatus, record_id: str = ""
    ) -> None:
        """Validate a pre-search or analysis status change.

        Raises:
            ValidationError: If the status would move backwards
        """
        if new not in self.VALID_STATUS_TRANSITIONS[current]:
            raise ValidationError(
                f"Invalid status transition for {record_id or 'record'}: "
                f"{current.value} -> {new.value}",
                field="status",
                value=new.value,
            )

    def validate_message(self, message: Message) -> None:
        """Validate a single message.

        Raises:
            ValidationError: If the message is malformed
        """
        if not message.id:
            raise ValidationError("Message id cannot be empty", field="id")

        if message.round_number < 0:
            raise ValidationError(
                f"Message {message.id} has negative round number",
                field="round_number",
                value=message.round_number,
            )

        if isinstance(message.metadata, ParticipantMetadata):
            if message.metadata.participant_index < 0:
                raise ValidationError(
                    f"Participant message {message.id} has negative index",
                    field="participant_index",
                    value=message.metadata.participant_index,
                )

    def validate_round_invariants(self, messages: Sequence[Message]) -> None:
        """Validate every message and the per-round slot uniqueness.

        Raises:
            ValidationError: On the first duplicate id or round slot found
        """
        id_counts = Counter(m.id for m in messages)
        duplicates = [i for i, c in id_counts.items() if c > 1]
        if duplicates:
            raise ValidationError(
                f"Duplicate message ids: {', '.join(sorted(duplicates))}",
                field="messages",
            )

        seen = {}
        for message in messages:
            self.validate_message(message)
            key = slot_key(message)
            if key in seen:
                round_number, kind, index = key
                label = f"participant {index}" if kind == "participant" else kind
                raise ValidationError(
                    f"Round {round_number} has more than one {label} message: "
                    f"{seen[key]}, {message.id}",
                    field="messages",
                    details={"round_number": round_number},
                )
            seen[key] = message.id

    def validate_analysis(
        self, analysis: Analysis, messages: Sequence[Message]
    ) -> None:
        """Validate that an analysis references messages of its own round.

        Raises:
            ValidationError: If a referenced message belongs to another round
        """
        by_id = {m.id: m for m in messages}
        for message_id in analysis.participant_message_ids:
            message = by_id.get(message_id)
            if message is not None and message.round_number != analysis.round_number:
                raise ValidationError(
                    f"Analysis {analysis.id} for round {analysis.round_number} "
                    f"references message {message_id} from round {message.round_number}",
                    field="round_number",
                    value=analysis.round_number,
                )

    def validate_state_consistency(self, state) -> List[str]:
        """Perform comprehensive state consistency check.

        Args:
            state: ChatState to inspect

        Returns:
            List of warning messages (empty if state is fully consistent)
        """
        warnings = []

        try:
            self.validate_round_invariants(state.messages)
        except ValidationError as e:
            warnings.append(e.message)

        rounds = Counter(p.round_number for p in state.pre_searches)
        for round_number, count in rounds.items():
            if count > 1:
                warnings.append(f"Round {round_number} has {count} pre-search records")

        rounds = Counter(a.round_number for a in state.analyses)
        for round_number, count in rounds.items():
            if count > 1:
                warnings.append(f"Round {round_number} has {count} analysis records")

        if state.is_streaming and state.participants:
            enabled = sum(1 for p in state.participants if p.is_enabled)
            if state.current_participant_index >= max(enabled, 1):
                warnings.append(
                    f"Current participant index {state.current_participant_index} "
                    f"is out of range for {enabled} participants"
                )

        if state.stream_resumption and state.thread:
            if state.stream_resumption.thread_id != state.thread.id:
                warnings.append(
                    f"Stream resumption record belongs to thread "
                    f"{state.stream_resumption.thread_id}, not {state.thread.id}"
                )

        return warnings
