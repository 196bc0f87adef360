"""Custom exceptions for Roundtable.

This module defines application-specific exceptions for better
error handling and debugging.
"""

from typing import Optional, Any


class RoundtableError(Exception):
    """Base exception for all Roundtable errors.

    All custom exceptions in the package should inherit from this class
    to allow for easy catching of application-specific errors.
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        """Initialize the exception.

        Args:
            message: Error message.
            details: Optional dictionary with additional error details.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(RoundtableError):
    """Raised when there's an error in configuration.

    This includes missing configuration files, invalid YAML syntax,
    missing required fields, or invalid field values.
    """

    pass


class StateError(RoundtableError):
    """Raised when the store is asked to do something its state forbids."""

    pass


class ValidationError(RoundtableError):
    """Raised when validation fails.

    This includes round invariant violations (duplicate user or
    participant messages in a round) and illegal status transitions.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        """Initialize validation error.

        Args:
            message: Error message.
            field: Field that failed validation.
            value: Value that failed validation.
            details: Additional error details.
        """
        super().__init__(message, details)
        self.field = field
        self.value = value


class OrchestrationError(RoundtableError):
    """Raised when participant sequencing would break round ordering."""

    def __init__(
        self,
        message: str,
        round_number: Optional[int] = None,
        participant_index: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        """Initialize orchestration error.

        Args:
            message: Error message.
            round_number: Round being orchestrated.
            participant_index: Participant the operation concerned.
            details: Additional error details.
        """
        super().__init__(message, details)
        self.round_number = round_number
        self.participant_index = participant_index


class ProviderError(RoundtableError):
    """Raised when a model or search provider call fails.

    The category is one of the ``ErrorCategory`` values surfaced on
    failed messages (rate_limit, timeout, ...).
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        category: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        """Initialize provider error.

        Args:
            message: Error message.
            provider: Name of the provider that caused the error.
            category: Error category value, if already known.
            status_code: HTTP status code returned by the provider.
            details: Additional error details.
        """
        super().__init__(message, details)
        self.provider = provider
        self.category = category
        self.status_code = status_code


class PreSearchError(ProviderError):
    """Raised when the web-search pre-step fails for a round."""

    pass


class StreamResumptionError(RoundtableError):
    """Raised when a buffered stream cannot be re-attached."""

    def __init__(
        self,
        message: str,
        stream_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        """Initialize stream resumption error.

        Args:
            message: Error message.
            stream_id: Identifier of the stream that could not be resumed.
            details: Additional error details.
        """
        super().__init__(message, details)
        self.stream_id = stream_id
