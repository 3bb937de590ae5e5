"""
Exception hierarchy for the feed digest pipeline.

Transient and per-item errors are recovered inside the component that owns
them; only ConfigurationError and InvalidSchedule are meant to reach the
process boundary.
"""

from typing import Any, Optional


class FeedDigestError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(FeedDigestError):
    """Missing credentials, no enabled sources, scheduling disabled, ..."""


class InvalidSchedule(FeedDigestError):
    """The cron expression or timezone cannot be parsed."""

    def __init__(self, expression: str, reason: str = "") -> None:
        self.expression = expression
        self.reason = reason
        message = f"Invalid cron expression: {expression!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class MalformedRecordError(FeedDigestError):
    """A feed entry that cannot be normalized into a record."""


class RetryExhausted(FeedDigestError):
    """An operation failed on every attempt allowed by its retry policy.

    Attributes:
        operation: Name of the operation, e.g. ``feed_fetch``.
        context: Key/value details identifying the call (url, bucket, ...).
        last_error: The exception raised by the final attempt.
        attempts: Number of attempts made.
    """

    def __init__(
        self,
        operation: str,
        context: Optional[dict[str, Any]] = None,
        last_error: Optional[BaseException] = None,
        attempts: int = 0,
    ) -> None:
        self.operation = operation
        self.context = dict(context or {})
        self.last_error = last_error
        self.attempts = attempts

        message = f"{operation}: failed after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        if self.context:
            details = ", ".join(f"{key}={value}" for key, value in self.context.items())
            message = f"{message} | Context: {details}"
        super().__init__(message)
