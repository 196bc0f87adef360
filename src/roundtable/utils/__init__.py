"""Utility functions and helpers for Roundtable.

This module contains shared utilities including logging setup,
custom exceptions and error categorisation.
"""

from .errors import categorize_error
from .logging import setup_logging, get_logger
from .exceptions import (
    RoundtableError,
    ConfigurationError,
    OrchestrationError,
    PreSearchError,
    ProviderError,
    StateError,
    StreamResumptionError,
    ValidationError,
)

__all__ = [
    "categorize_error",
    "setup_logging",
    "get_logger",
    "RoundtableError",
    "ConfigurationError",
    "OrchestrationError",
    "PreSearchError",
    "ProviderError",
    "StateError",
    "StreamResumptionError",
    "ValidationError",
]
