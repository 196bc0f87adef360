"""Deduplication guards for Roundtable.

Per-round "at most once" tracking for pre-search triggers, moderator
creation, moderator stream triggers and stream resumption attempts. The
tracking value is immutable: every ``try_mark_*`` call returns the updated
tracking together with a flag telling whether the call was the first one.

Tracking is cleared in bulk only by store resets. Starting a new message
or regenerating a round clears only what that action owns.
"""

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Tuple


def resumption_key(round_number: int, participant_index: int) -> str:
    return f"{round_number}_{participant_index}"


@dataclass(frozen=True)
class RoundTracking:
    """Idempotency sets kept by the store."""

    triggered_pre_search_rounds: FrozenSet[int] = field(default_factory=frozenset)
    created_moderator_rounds: FrozenSet[int] = field(default_factory=frozenset)
    triggered_moderator_rounds: FrozenSet[int] = field(default_factory=frozenset)
    triggered_moderator_ids: FrozenSet[str] = field(default_factory=frozenset)
    resumption_attempts: FrozenSet[str] = field(default_factory=frozenset)

    # Pre-search

    def has_pre_search_been_triggered(self, round_number: int) -> bool:
        return round_number in self.triggered_pre_search_rounds

    def try_mark_pre_search_triggered(self, round_number: int) -> Tuple["RoundTracking", bool]:
        if round_number in self.triggered_pre_search_rounds:
            return self, False
        return (
            replace(
                self,
                triggered_pre_search_rounds=self.triggered_pre_search_rounds | {round_number},
            ),
            True,
        )

    def clear_pre_search_tracking(self, round_number: int) -> "RoundTracking":
        return replace(
            self,
            triggered_pre_search_rounds=self.triggered_pre_search_rounds - {round_number},
        )

    # Moderator creation

    def has_moderator_been_created(self, round_number: int) -> bool:
        return round_number in self.created_moderator_rounds

    def try_mark_moderator_created(self, round_number: int) -> Tuple["RoundTracking", bool]:
        if round_number in self.created_moderator_rounds:
            return self, False
        return (
            replace(
                self,
                created_moderator_rounds=self.created_moderator_rounds | {round_number},
            ),
            True,
        )

    def clear_moderator_tracking(self, round_number: int) -> "RoundTracking":
        return replace(
            self,
            created_moderator_rounds=self.created_moderator_rounds - {round_number},
        )

    # Moderator stream

    def has_moderator_stream_been_triggered(self, moderator_id: str, round_number: int) -> bool:
        return (
            moderator_id in self.triggered_moderator_ids
            or round_number in self.triggered_moderator_rounds
        )

    def try_mark_moderator_stream_triggered(
        self, moderator_id: str, round_number: int
    ) -> Tuple["RoundTracking", bool]:
        if self.has_moderator_stream_been_triggered(moderator_id, round_number):
            return self, False
        return (
            replace(
                self,
                triggered_moderator_ids=self.triggered_moderator_ids | {moderator_id},
                triggered_moderator_rounds=self.triggered_moderator_rounds | {round_number},
            ),
            True,
        )

    def clear_moderator_stream_tracking(self, round_number: int) -> "RoundTracking":
        marker = f"_r{round_number}_"
        return replace(
            self,
            triggered_moderator_rounds=self.triggered_moderator_rounds - {round_number},
            triggered_moderator_ids=frozenset(
                i for i in self.triggered_moderator_ids if marker not in i
            ),
        )

    # Stream resumption

    def has_resumption_been_attempted(self, round_number: int, participant_index: int) -> bool:
        return resumption_key(round_number, participant_index) in self.resumption_attempts

    def try_mark_resumption_attempted(
        self, round_number: int, participant_index: int
    ) -> Tuple["RoundTracking", bool]:
        key = resumption_key(round_number, participant_index)
        if key in self.resumption_attempts:
            return self, False
        return replace(self, resumption_attempts=self.resumption_attempts | {key}), True

    def clear_resumption_attempts(self, round_number: int = None) -> "RoundTracking":
        """Drop resumption attempts for one round, or all of them."""
        if round_number is None:
            return replace(self, resumption_attempts=frozenset())
        prefix = f"{round_number}_"
        return replace(
            self,
            resumption_attempts=frozenset(
                k for k in self.resumption_attempts if not k.startswith(prefix)
            ),
        )

    def clear_round(self, round_number: int) -> "RoundTracking":
        """Clear everything tracked for a single round."""
        return (
            self.clear_pre_search_tracking(round_number)
            .clear_moderator_tracking(round_number)
            .clear_moderator_stream_tracking(round_number)
            .clear_resumption_attempts(round_number)
        )
