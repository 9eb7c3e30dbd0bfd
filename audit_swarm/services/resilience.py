"""
Resilience utilities shared by every stage that talks to the outside world.

  - retry_with_backoff: exponential backoff for retryable failures only
  - CircuitBreaker: per-dependency consecutive-failure breaker with a
    half-open probe after the cool-down window
  - guarded_call: breaker + retry, normalizing give-ups to DependencyUnavailable
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from audit_swarm.config import get_settings
from audit_swarm.services.exceptions import (
    DependencyUnavailable,
    GithubAuthError,
    GithubNotFoundError,
    GithubRateLimitError,
    GithubRetryableError,
)

logger = logging.getLogger("resilience")
settings = get_settings()

T = TypeVar("T")

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


# ─── Error classification ───────────────────────────────

def is_retryable_error(error: BaseException) -> bool:
    """Timeouts, 5xx and rate limits are retryable; other 4xx are not."""
    if isinstance(error, (GithubRetryableError, GithubRateLimitError)):
        return True
    if isinstance(error, (GithubAuthError, GithubNotFoundError)):
        return False
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS or error.response.status_code >= 500

    # SDK errors (groq, openai-compatible) expose status_code
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS or status >= 500

    name = type(error).__name__.lower()
    return "timeout" in name or "connection" in name


# ─── Retry ──────────────────────────────────────────────

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    initial_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    multiplier: float = 2.0,
    jitter: float = 0.25,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run `operation`, retrying retryable failures. Re-raises the last error."""
    attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS
    delay = settings.RETRY_INITIAL_DELAY if initial_delay is None else initial_delay
    ceiling = settings.RETRY_MAX_DELAY if max_delay is None else max_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not is_retryable(e):
                raise

            wait = min(delay * (multiplier ** (attempt - 1)), ceiling)
            retry_after = getattr(e, "retry_after", None)
            if isinstance(retry_after, (int, float)) and retry_after > 0:
                wait = min(max(wait, float(retry_after)), ceiling)
            wait += wait * jitter * random.random()

            logger.warning(f"[Retry] {label} attempt {attempt}/{attempts} failed ({e}); retrying in {wait:.2f}s")
            await sleep(wait)

    raise RuntimeError("unreachable")


# ─── Circuit breaker ────────────────────────────────────

class BreakerState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failures and rejects calls
    for `reset_timeout` seconds. The first call after that is a single
    half-open probe: success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        counts_as_failure: Callable[[BaseException], bool] = is_retryable_error,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.BREAKER_FAILURE_THRESHOLD
        self.reset_timeout = settings.BREAKER_RESET_SECONDS if reset_timeout is None else reset_timeout
        self.counts_as_failure = counts_as_failure
        self._clock = clock
        self.state = BreakerState.closed
        self.failures = 0
        self.opened_at = 0.0
        self._probe_in_flight = False

    def _before_call(self) -> None:
        if self.state == BreakerState.open:
            if self._clock() - self.opened_at < self.reset_timeout:
                raise DependencyUnavailable(self.name, f"Circuit breaker open for {self.name}")
            self.state = BreakerState.half_open
            logger.info(f"[CircuitBreaker] {self.name} half-open, probing")

        if self.state == BreakerState.half_open:
            if self._probe_in_flight:
                raise DependencyUnavailable(self.name, f"Circuit breaker half-open for {self.name}")
            self._probe_in_flight = True

    def record_success(self) -> None:
        if self.state != BreakerState.closed:
            logger.info(f"[CircuitBreaker] {self.name} closed")
        self.state = BreakerState.closed
        self.failures = 0
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        self._probe_in_flight = False
        if self.state == BreakerState.half_open or self.failures >= self.failure_threshold:
            if self.state != BreakerState.open:
                logger.warning(f"[CircuitBreaker] {self.name} opened after {self.failures} consecutive failures")
            self.state = BreakerState.open
            self.opened_at = self._clock()

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await operation()
        except Exception as e:
            if self.counts_as_failure(e):
                self.record_failure()
            else:
                # the dependency answered; a client error says nothing about its health
                self.record_success()
            raise
        finally:
            # a cancelled probe must not leave the half-open slot taken
            self._probe_in_flight = False
        self.record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {"state": self.state.value, "failures": self.failures}


class CircuitBreakerRegistry:
    """Keyed store of breakers, one per named dependency."""

    def __init__(self, **defaults: Any):
        self._defaults = defaults
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, **self._defaults)
        return self._breakers[name]

    def reset(self, name: str) -> None:
        self._breakers.pop(name, None)

    def statuses(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot() for name, b in self._breakers.items()}


breakers = CircuitBreakerRegistry()


async def guarded_call(
    breaker: CircuitBreaker,
    operation: Callable[[], Awaitable[T]],
    **retry_kwargs: Any,
) -> T:
    """
    Breaker-checked retry. Retryable failures that survive every attempt
    surface as DependencyUnavailable; non-retryable errors pass through.
    """
    retry_kwargs.setdefault("label", breaker.name)
    retryable = retry_kwargs.setdefault("is_retryable", is_retryable_error)
    try:
        return await retry_with_backoff(lambda: breaker.call(operation), **retry_kwargs)
    except DependencyUnavailable:
        raise
    except Exception as e:
        if retryable(e):
            raise DependencyUnavailable(breaker.name, f"{breaker.name} failed after retries: {e}") from e
        raise
