"""
Retry executor shared by every external call.

Feed downloads, model calls and document writes all go through 'execute',
each with the named RetryPolicy of its operation kind. The backoff is built
on tenacity and is exactly geometric: ``base_delay * backoff_multiplier **
(attempt - 1)``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import RetryExhausted
from .log_handler import log_operation
from .types import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class OperationContext:
    """Name and identifying details of a retried call, used for logging."""

    name: str
    details: dict[str, Any] = field(default_factory=dict)


def _coerce_context(context: Union[OperationContext, dict[str, Any], str, None]) -> OperationContext:
    if isinstance(context, OperationContext):
        return context
    if isinstance(context, str):
        return OperationContext(name=context)
    details = dict(context or {})
    name = str(details.pop("operation", "operation"))
    return OperationContext(name=name, details=details)


def _log_failed_attempt(context: OperationContext, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log_operation(
            logger,
            logging.WARNING,
            context.name,
            "Attempt %d/%d failed, retrying in %.2fs: %s",
            retry_state.attempt_number,
            policy.max_attempts + 1,
            delay,
            _describe(error),
            **context.details,
        )

    return before_sleep


def _describe(error: Optional[BaseException]) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    return str(error) or error.__class__.__name__


async def _attempt(operation: Callable[[], Awaitable[T]], timeout: Optional[float]) -> T:
    if timeout is None:
        return await operation()
    return await asyncio.wait_for(operation(), timeout=timeout)


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    context: Union[OperationContext, dict[str, Any], str, None] = None,
    *,
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """Run ``operation`` under ``policy``.

    The operation is attempted at most ``policy.max_attempts + 1`` times. A
    per-attempt timeout, when configured, counts as a failed attempt.

    Args:
        operation: Zero-argument coroutine function to call.
        policy: Attempts, backoff and timeout to apply.
        context: Operation name and details reported in log lines.
        sleep: Coroutine used to wait between attempts.

    Returns:
        Whatever the first successful attempt returned.

    Raises:
        RetryExhausted: Every attempt failed; wraps the last error.
    """
    ctx = _coerce_context(context)
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts + 1),
        wait=wait_exponential(
            multiplier=policy.base_delay,
            exp_base=policy.backoff_multiplier,
        ),
        retry=retry_if_exception_type(Exception),
        before_sleep=_log_failed_attempt(ctx, policy),
        sleep=sleep,
        reraise=False,
    )

    try:
        return await retrying(_attempt, operation, policy.timeout)
    except RetryError as exc:
        last_attempt = exc.last_attempt
        last_error = last_attempt.exception()
        log_operation(
            logger,
            logging.ERROR,
            ctx.name,
            "Failed after %d attempts: %s",
            last_attempt.attempt_number,
            _describe(last_error),
            **ctx.details,
        )
        raise RetryExhausted(
            ctx.name,
            ctx.details,
            last_error=last_error,
            attempts=last_attempt.attempt_number,
        ) from last_error
