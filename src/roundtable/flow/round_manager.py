"""Round management for Roundtable.

This module is the single source of truth for "which round are we in".
Gating (pre-search, moderator eligibility) and staging of a new round all
derive the round from here instead of recomputing it ad hoc.

The current round is the round tag of the most recent message. Using
"max round + 1" instead disagrees with it as soon as the optimistic user
message of a new round has been inserted, which gates pre-search on a
round that has no record.
"""

import logging
from typing import Optional, Sequence, Tuple

from roundtable.state.schema import Message

logger = logging.getLogger(__name__)


class RoundManager:
    """Centralized round number derivation.

    Key responsibilities:
    - Get the current round from the latest message
    - Calculate the round a new user message belongs to
    - Pick the round that gates pre-search and moderator triggers
    """

    def get_current_round(self, messages: Sequence[Message]) -> int:
        """Round of the most recent message, 0 for an empty thread."""
        if not messages:
            return 0
        return messages[-1].round_number

    def get_next_round(self, messages: Sequence[Message]) -> int:
        """Round a brand new user message would open."""
        if not messages:
            return 0
        return self.get_current_round(messages) + 1

    def has_pending_optimistic_round(self, messages: Sequence[Message]) -> bool:
        """Whether the current round is only an unanswered optimistic user message."""
        if not messages:
            return False
        current = self.get_current_round(messages)
        round_messages = [m for m in messages if m.round_number == current]
        return all(m.is_user for m in round_messages) and any(
            m.is_optimistic for m in round_messages
        )

    def resolve_round_for_new_message(
        self, messages: Sequence[Message]
    ) -> Tuple[int, bool]:
        """Return ``(round_number, needs_optimistic_message)`` for a submission.

        When the optimistic user message for the new round is already in
        place, that round is reused and no second message is needed.
        """
        if self.has_pending_optimistic_round(messages):
            round_number = self.get_current_round(messages)
            logger.debug(f"Reusing optimistic round {round_number}")
            return round_number, False

        round_number = self.get_next_round(messages)
        logger.debug(f"Staging new round {round_number}")
        return round_number, True

    def get_gating_round(
        self, messages: Sequence[Message], streaming_round_number: Optional[int]
    ) -> int:
        """Round used for pre-search and moderator gating."""
        if streaming_round_number is not None:
            return streaming_round_number
        return self.get_current_round(messages)


round_manager = RoundManager()
