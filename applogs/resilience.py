"""
Resilience patterns for the applogs transport.

A circuit breaker stops the transport from hammering a collector that keeps
failing, and a retry policy spaces out attempts within one send.

Usage:
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=5), name="collector")
    retry = RetryPolicy(RetryConfig(max_retries=3, retry_delay=1.0))

    if breaker.should_allow_request():
        for attempt in retry.attempts():
            ...
            await asyncio.sleep(retry.delay_for(attempt))

Everything here is driven from a single event loop, so no locking is done.
"""

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, sends go through
    OPEN = "open"  # Collector failing, sends are skipped
    HALF_OPEN = "half_open"  # Probing whether the collector recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = 5  # Failed sends before opening
    reset_timeout: float = 60.0  # Seconds before probing again
    half_open_max_calls: int = 1  # Probe sends allowed while half-open


@dataclass
class RetryConfig:
    """Configuration for retries within a single send."""

    max_retries: int = 3  # Total attempts per send
    retry_delay: float = 1.0  # Delay unit, multiplied by the attempt number
    max_delay: float = 30.0
    jitter: float = 0.0  # Random jitter factor (0-1)


class CircuitBreaker:
    """
    Circuit breaker around the collector.

    States:
        CLOSED: Normal operation, all sends go through
        OPEN: Collector is failing, sends fail fast
        HALF_OPEN: reset_timeout elapsed, limited probe sends allowed
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._half_open_calls = 0
        self._listeners: list[Callable[[CircuitState, CircuitState], None]] = []

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the timeout passed."""
        if self._state == CircuitState.OPEN and self._reset_due():
            self._transition_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _reset_due(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.config.reset_timeout

    def _transition_to(self, new_state: CircuitState):
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        logger.info(f"Circuit breaker '{self.name}' transitioned: {old_state.value} -> {new_state.value}")

        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0

        for listener in self._listeners:
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.warning(f"Circuit breaker listener error: {e}")

    def should_allow_request(self) -> bool:
        """Whether a send may go out now."""
        current = self.state
        if current == CircuitState.CLOSED:
            return True
        if current == CircuitState.OPEN:
            return False
        if self._half_open_calls < self.config.half_open_max_calls:
            self._half_open_calls += 1
            return True
        return False

    def record_success(self):
        self._failure_count = 0
        if self._state != CircuitState.CLOSED:
            self._transition_to(CircuitState.CLOSED)

    def record_failure(self):
        self._failure_count += 1
        self._last_failure_time = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._failure_count >= self.config.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def reset(self):
        """Force the breaker back to CLOSED."""
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._last_failure_time = None

    def on_state_change(self, listener: Callable[[CircuitState, CircuitState], None]):
        self._listeners.append(listener)

    def get_stats(self) -> dict:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
        }


class RetryPolicy:
    """Linear retry schedule: attempt N waits retry_delay * N before N + 1."""

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()

    def attempts(self) -> Iterator[int]:
        """Attempt numbers, starting at 1."""
        return iter(range(1, self.config.max_retries + 1))

    def is_last(self, attempt: int) -> bool:
        return attempt >= self.config.max_retries

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after a failed ``attempt``."""
        delay = min(self.config.retry_delay * attempt, self.config.max_delay)
        if self.config.jitter > 0:
            spread = delay * self.config.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)
