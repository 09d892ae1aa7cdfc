"""
Retry with backoff and circuit breaking for calls to external collaborators.

Retry is built on tenacity's AsyncRetrying with our own wait and retry
predicates so that the delay sequence and the retryable decision follow
RetryConfig exactly. The circuit breaker is a small per-dependency state
machine; breakers are owned by a BreakerRegistry that is created once per
process and passed to whatever needs it.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import CircuitBreakerOpenError, PipelineError
from .metrics import MetricsRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings (lowercased) that mark an error message as transient
TRANSIENT_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "throttl",
    "rate limit",
    "too many requests",
    "service unavailable",
    "internal server error",
    "connection",
    "network",
    "econnreset",
    "enotfound",
    "etimedout",
)

# Builtin network errors that are always worth another attempt
TRANSIENT_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    BrokenPipeError,
)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    retryable_codes: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {"TIMEOUT_ERROR", "THROTTLING_ERROR", "INTERNAL_ERROR", "EXTERNAL_SERVICE_ERROR"}
        )
    )


def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    """Decide whether an error is worth another attempt.

    An explicit ``retryable`` flag on a PipelineError wins. Otherwise the
    error is retryable when its code is in the allow-list or its message
    matches a known transient pattern.
    """
    if isinstance(error, PipelineError) and error.retryable is not None:
        return error.retryable
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in config.retryable_codes:
        return True

    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


class RetryHandler:
    """Runs an async operation with exponential backoff and jitter."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._metrics = metrics

    def base_delay_for(self, attempt: int) -> float:
        """Backoff delay without jitter for the given (1-based) failed attempt."""
        delay = self.config.base_delay * (self.config.backoff_multiplier ** (attempt - 1))
        return min(delay, self.config.max_delay)

    def compute_delay(self, attempt: int) -> float:
        """Delay before the next attempt: capped backoff plus jitter in [0, jitter)."""
        return self.base_delay_for(attempt) + self._rng.random() * self.config.jitter

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable(error, self.config)

    async def execute(self, operation: Callable[[], Awaitable[T]], operation_name: str = "operation") -> T:
        """Run ``operation`` until it succeeds, fails non-retryably, or attempts run out.

        The last error is re-raised unchanged.
        """

        def wait(retry_state: RetryCallState) -> float:
            return self.compute_delay(retry_state.attempt_number)

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"Retrying {operation_name} after attempt {retry_state.attempt_number} "
                f"in {delay:.2f}s: {error}",
                extra={"operation": operation_name, "attempt": retry_state.attempt_number},
            )
            if self._metrics:
                self._metrics.record_retry(operation_name, retry_state.attempt_number)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(operation)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """Fail-fast guard around one named dependency.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN rejects every call until ``recovery_timeout`` has elapsed, then the
    next call moves the breaker to HALF_OPEN. HALF_OPEN admits at most
    ``half_open_max_calls`` trial calls: a success closes the breaker, a
    failure re-opens it. Rejected calls raise CircuitBreakerOpenError and
    never reach the dependency.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.info(
            f"Circuit breaker {self.name}: {self._state.value} -> {new_state.value}",
            extra={"breaker": self.name, "breaker_state": new_state.value},
        )
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            if self._metrics:
                self._metrics.record_breaker_open(self.name)
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._opened_at = None

    def _admit(self) -> None:
        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and self._clock() - self._opened_at >= self.config.recovery_timeout:
                self._transition(CircuitState.HALF_OPEN)
            else:
                raise CircuitBreakerOpenError(self.name)

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_calls >= self.config.half_open_max_calls:
                raise CircuitBreakerOpenError(self.name, half_open_limit=True)
            self._half_open_calls += 1

    def _on_success(self) -> None:
        self._success_count += 1
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._half_open_calls = 0

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failureCount": self._failure_count,
            "successCount": self._success_count,
            "halfOpenCalls": self._half_open_calls,
        }


class BreakerRegistry:
    """Process-wide owner of named circuit breakers."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config or self.default_config,
                clock=self._clock,
                metrics=self._metrics,
            )
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}


async def call_with_resilience(
    operation: Callable[[], Awaitable[T]],
    *,
    breaker: CircuitBreaker,
    retry: RetryHandler,
    operation_name: str,
) -> T:
    """Run ``operation`` through the breaker, retrying retryable failures.

    A breaker rejection is not retryable, so an open breaker fails fast.
    """

    async def attempt() -> T:
        return await breaker.call(operation)

    return await retry.execute(attempt, operation_name=operation_name)
