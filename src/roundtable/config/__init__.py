"""Configuration management for Roundtable.

This module handles loading, parsing, and validating configuration
from YAML files and environment variables.
"""

from .env_schema import EnvironmentConfig
from .loader import ConfigLoader
from .models import FlowConfig, ModeratorConfig, ParticipantConfig, TimeoutsConfig

__all__ = [
    "ConfigLoader",
    "EnvironmentConfig",
    "FlowConfig",
    "ModeratorConfig",
    "ParticipantConfig",
    "TimeoutsConfig",
]
