"""Bounded exponential backoff for remote operations.

Every remote call made during a sync session goes through
``RetryPolicy.run``.  Attempts are strictly sequential: attempt, wait,
double the wait, attempt again, up to ``max_attempts`` in total.  With the
defaults the waits before attempts one to three are 0 s, 1 s and 2 s, and a
failure on the final attempt is surfaced without a further wait.

Errors whose class sets ``retryable = False`` (authentication, quota,
malformed request, not-found) bypass the loop and fail on the first
attempt.  Exceptions that are not ``SyncError`` are classified first:
``ValueError`` (including pydantic validation errors) becomes
``MalformedRequestError``, anything else ``TransientNetworkError``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import MalformedRequestError, SyncError, TransientNetworkError
from .result import Result

T = TypeVar("T")
logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


def classify_exception(exc: Exception) -> SyncError:
    """Map an arbitrary exception onto the sync error taxonomy."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, ValueError):
        return MalformedRequestError(str(exc) or type(exc).__name__, cause=exc)
    return TransientNetworkError(str(exc) or type(exc).__name__, cause=exc)


class RetryPolicy:
    """Retry an async operation with exponential backoff.

    Args:
        max_attempts: Total attempts including the first one.
        initial_delay: Wait in seconds before the second attempt.
        backoff: Multiplier applied to the wait after every failure.
        max_delay: Upper bound for a single wait, bounding the total wait.
        sleep: Awaitable sleep function (injected by tests).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff: float = 2.0,
        max_delay: float = 30.0,
        sleep: Sleeper | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if initial_delay < 0 or max_delay < 0:
            raise ValueError("delays must not be negative")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff = backoff
        self.max_delay = max_delay
        self._sleep: Sleeper = sleep or asyncio.sleep

    def schedule(
        self,
        max_attempts: int | None = None,
        initial_delay: float | None = None,
    ) -> list[float]:
        """Return the wait in seconds before each attempt."""
        attempts = max_attempts or self.max_attempts
        delay = self.initial_delay if initial_delay is None else initial_delay
        waits = [0.0]
        for _ in range(attempts - 1):
            waits.append(min(delay, self.max_delay))
            delay *= self.backoff
        return waits

    async def run(
        self,
        op: Callable[[], Awaitable[T] | T | Result[T]],
        *,
        operation: str = "remote operation",
        max_attempts: int | None = None,
        initial_delay: float | None = None,
    ) -> Result[T]:
        """Run *op* until it succeeds or the attempts are used up.

        *op* may return a plain value, a ``Result``, or an awaitable of
        either; raising counts as a failure.

        Returns:
            ``Result.ok(value)`` on success, otherwise ``Result.fail`` with a
            ``SyncError`` carrying ``operation`` and ``attempts``.
        """
        attempts = max_attempts or self.max_attempts
        waits = self.schedule(attempts, initial_delay)
        error: SyncError | None = None

        for attempt, wait in enumerate(waits, start=1):
            if wait > 0:
                await self._sleep(wait)
            try:
                outcome = op()
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                if isinstance(outcome, Result):
                    outcome = outcome.unwrap()
            except Exception as exc:
                error = classify_exception(exc)
            else:
                if attempt > 1:
                    logger.info(
                        "Operation '%s' succeeded after %d attempts",
                        operation,
                        attempt,
                    )
                return Result.ok(outcome)

            if not error.retryable:
                logger.error(
                    "Operation '%s' failed with non-retryable %s: %s",
                    operation,
                    type(error).__name__,
                    error.message,
                )
                return Result.fail(error.with_context(operation, attempt))

            if attempt < attempts:
                logger.warning(
                    "Attempt %d/%d failed for '%s': %s. Retrying in %.1fs",
                    attempt,
                    attempts,
                    operation,
                    error.message,
                    waits[attempt],
                )
            else:
                logger.error(
                    "Operation '%s' failed after %d attempts: %s",
                    operation,
                    attempts,
                    error.message,
                )

        assert error is not None
        return Result.fail(error.with_context(operation, attempts))
