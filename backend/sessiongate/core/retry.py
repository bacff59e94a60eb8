"""Retry with exponential backoff and a circuit breaker for outbound calls.

Used for calls to the external identity authority, where a burst of failures
should stop hammering the provider and surface as "unavailable" quickly.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Calls flow normally
    OPEN = "open"  # Calls rejected until the timeout elapses
    HALF_OPEN = "half_open"  # Probing whether the service recovered


@dataclass
class RetryConfig:
    """How many times and how fast to retry a failing call."""

    max_retries: int = 2
    base_delay: float = 0.25
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = (
        httpx.TimeoutException,
        httpx.TransportError,
        ConnectionError,
        TimeoutError,
    )
    retryable_status_codes: tuple = (429, 502, 503, 504)


@dataclass
class CircuitBreakerConfig:
    """Thresholds for opening and closing a circuit."""

    failure_threshold: int = 5
    success_threshold: int = 1
    timeout: float = 30.0  # Seconds before a half-open probe is allowed


@dataclass
class CircuitBreakerState:
    """Mutable state for circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None


class CircuitBreakerOpen(Exception):
    """Raised instead of calling a service whose circuit is open."""

    def __init__(self, service_name: str, retry_after: float):
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker open for {service_name}. Retry after {retry_after:.1f}s")


class CircuitBreaker:
    """Per-service circuit breaker, shared through a name registry."""

    _instances: dict[str, "CircuitBreaker"] = {}

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()

    @classmethod
    def get_or_create(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> "CircuitBreaker":
        """Get existing circuit breaker or create new one."""
        if service_name not in cls._instances:
            cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def get(cls, service_name: str) -> "CircuitBreaker | None":
        """Get a registered circuit breaker, if any."""
        return cls._instances.get(service_name)

    @property
    def state(self) -> CircuitState:
        return self._state.state

    async def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        async with self._lock:
            self._state = CircuitBreakerState()
        logger.info(f"Circuit breaker reset for {self.service_name}")

    async def check(self) -> None:
        """Raise CircuitBreakerOpen unless a call may proceed."""
        async with self._lock:
            if self._state.state != CircuitState.OPEN:
                return
            elapsed = time.monotonic() - (self._state.last_failure_time or 0.0)
            if elapsed < self.config.timeout:
                raise CircuitBreakerOpen(self.service_name, self.config.timeout - elapsed)
            logger.info(f"Circuit breaker half-opening for {self.service_name}")
            self._state.state = CircuitState.HALF_OPEN
            self._state.success_count = 0

    async def record_success(self) -> None:
        async with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    logger.info(f"Circuit breaker closing for {self.service_name}")
                    self._state = CircuitBreakerState()
            else:
                self._state.failure_count = 0

    async def record_failure(self, exception: Exception) -> None:
        async with self._lock:
            # Already open: keep the original failure time so the timeout can elapse
            if self._state.state == CircuitState.OPEN:
                return
            self._state.failure_count += 1
            self._state.last_failure_time = time.monotonic()
            if self._state.state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker reopening for {self.service_name}: {exception}")
                self._state.state = CircuitState.OPEN
            elif self._state.failure_count >= self.config.failure_threshold:
                logger.warning(
                    f"Circuit breaker opening for {self.service_name}: "
                    f"{self._state.failure_count} failures"
                )
                self._state.state = CircuitState.OPEN


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def _is_retryable(exc: Exception, config: RetryConfig) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in config.retryable_status_codes
    return isinstance(exc, config.retryable_exceptions)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    circuit_breaker: CircuitBreaker | None = None,
) -> T:
    """Await ``func()`` with retries on transient errors.

    Non-retryable errors and CircuitBreakerOpen propagate immediately; the last
    transient error propagates once retries are exhausted.
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        if circuit_breaker:
            await circuit_breaker.check()
        try:
            result = await func()
        except Exception as e:
            if circuit_breaker:
                await circuit_breaker.record_failure(e)
            if not _is_retryable(e, config) or attempt >= config.max_retries:
                logger.warning(f"Call failed after {attempt + 1} attempt(s): {e}")
                raise
            delay = calculate_backoff_delay(attempt, config)
            logger.info(f"Retry {attempt + 1}/{config.max_retries} in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
        else:
            if circuit_breaker:
                await circuit_breaker.record_success()
            return result

    raise RuntimeError("unreachable")
