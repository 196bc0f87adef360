"""Configuration schema definitions for Roundtable.

This module defines Pydantic models for validating and parsing
the YAML configuration file.
"""

from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from roundtable.state.schema import ChatMode, DEFAULT_CHAT_MODE, Participant


class TimeoutsConfig(BaseModel):
    """Staleness thresholds.

    These are read-only comparisons against record creation times; nothing
    in the core runs a timer.
    """

    pre_search_timeout_sec: float = Field(
        default=10.0, gt=0, description="Pre-search staleness threshold"
    )
    analysis_timeout_sec: float = Field(
        default=60.0, gt=0, description="Analysis staleness threshold"
    )
    stream_resumption_ttl_sec: float = Field(
        default=3600.0, gt=0, description="Lifetime of a resumable stream"
    )

    @property
    def pre_search_timeout(self) -> timedelta:
        return timedelta(seconds=self.pre_search_timeout_sec)

    @property
    def analysis_timeout(self) -> timedelta:
        return timedelta(seconds=self.analysis_timeout_sec)

    @property
    def stream_resumption_ttl(self) -> timedelta:
        return timedelta(seconds=self.stream_resumption_ttl_sec)


class ParticipantConfig(BaseModel):
    """Configuration for one participant slot.

    Slots are ordered by their position in the list unless an explicit
    priority is given.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    model: str = Field(..., description="Model id used for this slot", min_length=1)
    role: Optional[str] = Field(default=None, description="Optional role prompt name")
    priority: Optional[int] = Field(default=None, ge=0)
    enabled: bool = Field(default=True)


class ModeratorConfig(BaseModel):
    """Configuration for the moderator (synthesis) pass."""

    model_config = ConfigDict(str_strip_whitespace=True)

    model: str = Field(
        ..., description="Model id for the moderator", min_length=1
    )
    temperature: Optional[float] = Field(default=0.3, ge=0.0, le=2.0)


class FlowConfig(BaseModel):
    """Root configuration model for Roundtable."""

    model_config = ConfigDict(str_strip_whitespace=True)

    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    validate_invariants: bool = Field(
        default=True,
        description="Check round invariants on every message update",
    )
    log_level: str = Field(
        default="WARNING",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
    mode: ChatMode = Field(default=DEFAULT_CHAT_MODE)
    enable_web_search: bool = Field(default=False)
    participants: list[ParticipantConfig] = Field(default_factory=list)
    moderator: Optional[ModeratorConfig] = Field(default=None)

    @field_validator("participants")
    @classmethod
    def validate_participants(cls, v: list[ParticipantConfig]) -> list[ParticipantConfig]:
        """Validate the participant list."""
        if len(v) > 12:
            raise ValueError(
                f"Too many participants configured ({len(v)}). "
                "Maximum 12 participants allowed per round."
            )
        return v

    def build_participants(self, thread_id: Optional[str] = None) -> tuple[Participant, ...]:
        """Create participant entities in priority order."""
        participants = []
        for position, slot in enumerate(self.participants):
            priority = slot.priority if slot.priority is not None else position
            participants.append(
                Participant(
                    id=f"participant-{position}",
                    model_id=slot.model,
                    priority=priority,
                    thread_id=thread_id,
                    is_enabled=slot.enabled,
                    role=slot.role,
                )
            )
        return tuple(sorted(participants, key=lambda p: p.priority))
