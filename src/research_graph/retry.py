"""Bounded exponential backoff for rate-limited remote calls.

Every external call made by the pipeline (optimizer, search, ranker,
content fetch, synthesizer, follow-up generator) goes through
:func:`with_retry`. Only rate-limit signals are retried; any other
error propagates on the first failure. Content fetches only signal
HTTP 429 and swallow everything else, so a page that stays rate limited
ends up as a snippet preview rather than a failed report.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from research_graph.exceptions import is_rate_limited

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from research_graph.config import RetrySettings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
_MAX_DELAY = 300.0


def _log_backoff(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "rate_limited_retrying",
        attempt=retry_state.attempt_number,
        delay_seconds=delay,
        error=str(exc),
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Invoke *operation*, retrying on rate-limit errors with backoff.

    After the n-th failed attempt (0-based) the controller sleeps
    ``base_delay * 2**n`` seconds before trying again. Errors that are not
    rate-limit signals propagate immediately. When ``max_attempts`` is
    exhausted the last error is re-raised unchanged.

    Args:
        operation: Zero-argument coroutine factory to invoke.
        max_attempts: Total number of invocations allowed.
        base_delay: Base backoff delay in seconds.
        sleep: Awaitable sleep function (injected by tests).

    Returns:
        Whatever *operation* returns on its first successful attempt.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(is_rate_limited),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, max=_MAX_DELAY),
        before_sleep=_log_backoff,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable")  # pragma: no cover


class RetryPolicy:
    """Bound retry parameters shared by every stage adapter."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(max_attempts=settings.max_attempts, base_delay=settings.base_delay)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* under this policy."""
        return await with_retry(
            operation,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )
