"""Unit tests for research_graph.retry - bounded exponential backoff."""

from __future__ import annotations

import pytest

from research_graph.config import RetrySettings
from research_graph.exceptions import RateLimitedError, UpstreamUnavailableError
from research_graph.retry import RetryPolicy, with_retry


class _Flaky:
    """Raises ``failures`` rate-limit errors, then returns ``"ok"``."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or RateLimitedError("429 Too Many Requests")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class TestWithRetry:
    """Rate-limited operations are retried with growing delays."""

    @pytest.mark.asyncio()
    async def test_first_attempt_succeeds(self) -> None:
        op, sleeps = _Flaky(0), _Sleeps()
        assert await with_retry(op, sleep=sleeps) == "ok"
        assert op.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio()
    async def test_recovers_before_limit(self) -> None:
        op, sleeps = _Flaky(2), _Sleeps()
        result = await with_retry(op, max_attempts=3, base_delay=1.0, sleep=sleeps)
        assert result == "ok"
        assert op.calls == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio()
    async def test_delays_strictly_increase(self) -> None:
        op, sleeps = _Flaky(4), _Sleeps()
        await with_retry(op, max_attempts=5, base_delay=0.5, sleep=sleeps)
        assert sleeps.delays == [0.5, 1.0, 2.0, 4.0]

    @pytest.mark.asyncio()
    async def test_exhausted_reraises_last_error(self) -> None:
        op, sleeps = _Flaky(10), _Sleeps()
        with pytest.raises(RateLimitedError):
            await with_retry(op, max_attempts=3, base_delay=1.0, sleep=sleeps)
        assert op.calls == 3
        assert len(sleeps.delays) == 2

    @pytest.mark.asyncio()
    async def test_other_errors_not_retried(self) -> None:
        op = _Flaky(1, UpstreamUnavailableError("down", status_code=503))
        sleeps = _Sleeps()
        with pytest.raises(UpstreamUnavailableError):
            await with_retry(op, max_attempts=3, sleep=sleeps)
        assert op.calls == 1
        assert sleeps.delays == []


class TestRetryPolicy:
    def test_from_settings(self) -> None:
        policy = RetryPolicy.from_settings(RetrySettings(max_attempts=5, base_delay=0.25))
        assert policy.max_attempts == 5
        assert policy.base_delay == 0.25

    @pytest.mark.asyncio()
    async def test_run_uses_injected_sleep(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(max_attempts=2, base_delay=3.0, sleep=sleeps)
        op = _Flaky(1)
        assert await policy.run(op) == "ok"
        assert sleeps.delays == [3.0]
