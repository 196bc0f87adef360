"""Environment variable schema definitions for Roundtable.

This module defines the pydantic-settings model for environment overrides
and applies them on top of a loaded ``FlowConfig``.
"""

from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from roundtable.config.models import FlowConfig


class EnvironmentConfig(BaseSettings):
    """Environment configuration using Pydantic settings.

    This provides validated access to environment variables with
    type conversion and default values. Unset values leave the YAML
    configuration untouched.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra environment variables
    )

    log_level: Optional[str] = Field(
        None,
        alias="ROUNDTABLE_LOG_LEVEL",
        description="Logging level",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
    log_dir: str = Field(
        "logs",
        alias="ROUNDTABLE_LOG_DIR",
        description="Directory for log files",
    )
    pre_search_timeout_sec: Optional[float] = Field(
        None,
        alias="ROUNDTABLE_PRE_SEARCH_TIMEOUT",
        gt=0,
    )
    analysis_timeout_sec: Optional[float] = Field(
        None,
        alias="ROUNDTABLE_ANALYSIS_TIMEOUT",
        gt=0,
    )
    stream_resumption_ttl_sec: Optional[float] = Field(
        None,
        alias="ROUNDTABLE_STREAM_RESUMPTION_TTL",
        gt=0,
        le=86400,  # Max 24 hours
    )
    validate_invariants: Optional[bool] = Field(
        None,
        alias="ROUNDTABLE_VALIDATE_INVARIANTS",
    )

    def overrides(self) -> Dict[str, Any]:
        """Non-empty overrides keyed by ``FlowConfig`` field."""
        result: Dict[str, Any] = {}
        if self.log_level is not None:
            result["log_level"] = self.log_level
        if self.validate_invariants is not None:
            result["validate_invariants"] = self.validate_invariants

        timeouts = {
            name: getattr(self, name)
            for name in (
                "pre_search_timeout_sec",
                "analysis_timeout_sec",
                "stream_resumption_ttl_sec",
            )
            if getattr(self, name) is not None
        }
        if timeouts:
            result["timeouts"] = timeouts
        return result

    def apply_to(self, config: FlowConfig) -> FlowConfig:
        """Return a copy of ``config`` with the environment overrides applied."""
        overrides = self.overrides()
        if not overrides:
            return config

        timeouts = overrides.pop("timeouts", None)
        if timeouts:
            overrides["timeouts"] = config.timeouts.model_copy(update=timeouts)
        return config.model_copy(update=overrides)
