"""Tests for retry-with-backoff, the circuit breaker and guarded calls."""

import asyncio

import httpx
import pytest

from audit_swarm.services.exceptions import (
    DependencyUnavailable,
    GithubAuthError,
    GithubNotFoundError,
    GithubRateLimitError,
    GithubRetryableError,
)
from audit_swarm.services.resilience import (
    BreakerState,
    CircuitBreaker,
    CircuitBreakerRegistry,
    guarded_call,
    is_retryable_error,
    retry_with_backoff,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Flaky:
    """Fails `failures` times with `error`, then returns "ok"."""

    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


# ═══════════════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassification:
    @pytest.mark.parametrize("error", [
        GithubRetryableError("boom", status_code=502),
        GithubRateLimitError("slow down", retry_after=3),
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("refused"),
    ])
    def test_retryable(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize("error", [
        GithubAuthError("bad token", status_code=401),
        GithubNotFoundError("missing", status_code=404),
        ValueError("bad input"),
    ])
    def test_not_retryable(self, error):
        assert not is_retryable_error(error)

    def test_http_status_errors_use_status_code(self):
        request = httpx.Request("GET", "https://example.com")
        server = httpx.HTTPStatusError("5xx", request=request, response=httpx.Response(503, request=request))
        client = httpx.HTTPStatusError("4xx", request=request, response=httpx.Response(400, request=request))
        assert is_retryable_error(server)
        assert not is_retryable_error(client)


# ═══════════════════════════════════════════════════════════════════════════
# Retry
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, fake_sleep, sleeps):
        op = Flaky(2, GithubRetryableError("502"))
        result = await retry_with_backoff(op, max_attempts=3, initial_delay=1, jitter=0, sleep=fake_sleep)
        assert result == "ok"
        assert op.calls == 3
        assert sleeps == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self, fake_sleep):
        op = Flaky(10, GithubRetryableError("still down"))
        with pytest.raises(GithubRetryableError, match="still down"):
            await retry_with_backoff(op, max_attempts=3, initial_delay=0, sleep=fake_sleep)
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, fake_sleep, sleeps):
        op = Flaky(1, GithubNotFoundError("404"))
        with pytest.raises(GithubNotFoundError):
            await retry_with_backoff(op, max_attempts=5, sleep=fake_sleep)
        assert op.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, fake_sleep, sleeps):
        op = Flaky(4, GithubRetryableError("502"))
        await retry_with_backoff(op, max_attempts=5, initial_delay=1, max_delay=3, jitter=0, sleep=fake_sleep)
        assert sleeps == [1, 2, 3, 3]

    @pytest.mark.asyncio
    async def test_retry_after_hint_extends_the_wait(self, fake_sleep, sleeps):
        op = Flaky(1, GithubRateLimitError("limited", retry_after=5))
        await retry_with_backoff(op, max_attempts=2, initial_delay=1, max_delay=30, jitter=0, sleep=fake_sleep)
        assert sleeps == [5.0]


# ═══════════════════════════════════════════════════════════════════════════
# Circuit breaker
# ═══════════════════════════════════════════════════════════════════════════

class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_short_circuits(self):
        clock = FakeClock()
        breaker = CircuitBreaker("dep", failure_threshold=2, reset_timeout=30, clock=clock)
        op = Flaky(10, GithubRetryableError("down"))

        for _ in range(2):
            with pytest.raises(GithubRetryableError):
                await breaker.call(op)
        assert breaker.state == BreakerState.open

        with pytest.raises(DependencyUnavailable):
            await breaker.call(op)
        assert op.calls == 2

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("dep", failure_threshold=1, reset_timeout=30, clock=clock)
        with pytest.raises(GithubRetryableError):
            await breaker.call(Flaky(1, GithubRetryableError("down")))

        clock.now += 31
        assert await breaker.call(Flaky(0, None)) == "ok"
        assert breaker.state == BreakerState.closed
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("dep", failure_threshold=3, reset_timeout=30, clock=clock)
        for _ in range(3):
            with pytest.raises(GithubRetryableError):
                await breaker.call(Flaky(1, GithubRetryableError("down")))

        clock.now += 31
        with pytest.raises(GithubRetryableError):
            await breaker.call(Flaky(1, GithubRetryableError("still down")))
        assert breaker.state == BreakerState.open
        assert breaker.opened_at == clock.now

    @pytest.mark.asyncio
    async def test_cancelled_half_open_call_frees_the_slot(self):
        clock = FakeClock()
        breaker = CircuitBreaker("dep", failure_threshold=1, reset_timeout=30, clock=clock)
        with pytest.raises(GithubRetryableError):
            await breaker.call(Flaky(1, GithubRetryableError("down")))

        clock.now += 31
        with pytest.raises(asyncio.CancelledError):
            await breaker.call(Flaky(1, asyncio.CancelledError()))
        assert breaker.state == BreakerState.half_open

        assert await breaker.call(Flaky(0, None)) == "ok"
        assert breaker.state == BreakerState.closed

    @pytest.mark.asyncio
    async def test_client_errors_do_not_trip_the_breaker(self):
        breaker = CircuitBreaker("dep", failure_threshold=1)
        with pytest.raises(GithubNotFoundError):
            await breaker.call(Flaky(1, GithubNotFoundError("404")))
        assert breaker.state == BreakerState.closed

    def test_registry_returns_one_breaker_per_name(self):
        registry = CircuitBreakerRegistry(failure_threshold=7)
        assert registry.get("github") is registry.get("github")
        assert registry.get("github") is not registry.get("reasoning:groq")
        assert registry.get("github").failure_threshold == 7
        assert set(registry.statuses()) == {"github", "reasoning:groq"}


# ═══════════════════════════════════════════════════════════════════════════
# Guarded call
# ═══════════════════════════════════════════════════════════════════════════

class TestGuardedCall:
    @pytest.mark.asyncio
    async def test_exhausted_retries_become_dependency_unavailable(self, fake_sleep):
        breaker = CircuitBreaker("github", failure_threshold=100)
        with pytest.raises(DependencyUnavailable) as exc:
            await guarded_call(breaker, Flaky(10, GithubRetryableError("down")), max_attempts=2, sleep=fake_sleep)
        assert exc.value.dependency == "github"
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_non_retryable_errors_pass_through(self, fake_sleep):
        breaker = CircuitBreaker("github", failure_threshold=100)
        with pytest.raises(GithubAuthError):
            await guarded_call(breaker, Flaky(1, GithubAuthError("401")), max_attempts=3, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_open_breaker_surfaces_directly(self, fake_sleep):
        clock = FakeClock()
        breaker = CircuitBreaker("github", failure_threshold=1, reset_timeout=60, clock=clock)
        breaker.record_failure()
        op = Flaky(0, None)
        with pytest.raises(DependencyUnavailable):
            await guarded_call(breaker, op, max_attempts=3, sleep=fake_sleep)
        assert op.calls == 0
