"""Error categorisation for Roundtable.

Maps provider exceptions, HTTP status codes and error text onto the
``ErrorCategory`` values carried by failed messages.
"""

import asyncio
from typing import Optional

from roundtable.state.schema import ErrorCategory
from roundtable.utils.exceptions import ProviderError, ValidationError

# Checked in order; the first keyword found wins
_MESSAGE_KEYWORDS = (
    (ErrorCategory.RATE_LIMIT, ("rate limit", "rate_limit", "quota", "too many requests")),
    (ErrorCategory.TIMEOUT, ("timed out", "timeout", "deadline")),
    (
        ErrorCategory.MODEL_UNAVAILABLE,
        ("model not found", "does not exist", "unavailable", "overloaded"),
    ),
    (
        ErrorCategory.NETWORK_ERROR,
        ("connection", "network", "econnreset", "socket"),
    ),
    (ErrorCategory.VALIDATION_ERROR, ("invalid request", "validation", "bad request")),
    (ErrorCategory.SERVER_ERROR, ("internal server error", "server error")),
)


def category_for_status(status_code: Optional[int]) -> Optional[ErrorCategory]:
    """Category implied by an HTTP status code, if any."""
    if status_code is None:
        return None
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if status_code in (408, 504):
        return ErrorCategory.TIMEOUT
    if status_code in (404, 503):
        return ErrorCategory.MODEL_UNAVAILABLE
    if status_code in (400, 422):
        return ErrorCategory.VALIDATION_ERROR
    if status_code >= 500:
        return ErrorCategory.SERVER_ERROR
    return None


def categorize_error_message(message: str) -> ErrorCategory:
    """Categorise free-form error text (case-insensitive)."""
    text = message.lower()
    for category, keywords in _MESSAGE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return ErrorCategory.MODEL_ERROR


def categorize_error(error: BaseException) -> ErrorCategory:
    """Categorise an exception raised by a provider call.

    An explicit category on a ``ProviderError`` wins, then the HTTP status
    code (``status_code`` attribute, as raised by most provider SDKs), then
    the exception type and finally its message.
    """
    if isinstance(error, ProviderError) and error.category:
        try:
            return ErrorCategory(error.category)
        except ValueError:
            pass

    category = category_for_status(getattr(error, "status_code", None))
    if category is not None:
        return category

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK_ERROR
    if isinstance(error, (ValidationError, ValueError)):
        return ErrorCategory.VALIDATION_ERROR

    return categorize_error_message(str(error) or type(error).__name__)
