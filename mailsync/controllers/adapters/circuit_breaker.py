"""
Per-host circuit breakers for provider endpoints.

Lifecycle of one breaker:

* closed: calls go through; consecutive transient failures are counted.
* open: entered when the count reaches `failure_threshold`. Calls fail fast
  with TransientNetworkError until `reset_timeout` seconds have passed.
* half_open: after the timeout a single trial call is let through. Success
  closes the breaker and clears the count; failure opens it again.

Only TransientNetworkError counts as a failure. Auth and protocol errors mean
the host answered, so they count as success for the breaker.
"""

import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncGenerator, Callable

from mailsync.exceptions import ProtocolError, TransientNetworkError
from settings import settings


class CircuitState(Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int,
        reset_timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self.name = name
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock

        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.closed
        if self._clock() - self._opened_at >= self._reset_timeout:
            return CircuitState.half_open
        return CircuitState.open

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> None:
        state = self.state
        if state is CircuitState.open:
            raise TransientNetworkError(f"Circuit open for {self.name}")
        if state is CircuitState.half_open:
            if self._trial_in_flight:
                raise TransientNetworkError(f"Circuit half-open for {self.name}, trial call in progress")
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._opened_at is not None:
            self._logger.info(f"Circuit closed for {self.name}")
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._trial_in_flight = False
        self._failures += 1
        if self._opened_at is not None or self._failures >= self._failure_threshold:
            self._opened_at = self._clock()
            self._logger.warning(f"Circuit opened for {self.name} after {self._failures} consecutive failures")

    def reset(self) -> None:
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    @asynccontextmanager
    async def guard(self) -> AsyncGenerator[None, None]:
        self.before_call()
        try:
            yield
        except TransientNetworkError:
            self.record_failure()
            raise
        except ProtocolError:
            self.record_success()
            raise
        except BaseException:
            self._trial_in_flight = False
            raise
        else:
            self.record_success()


class CircuitBreakerRegistry:
    """Process-wide breakers keyed by host, created on first use."""

    def __init__(self, failure_threshold: int | None = None, reset_timeout: float | None = None) -> None:
        self._failure_threshold = failure_threshold or settings.circuit_breaker.failure_threshold
        self._reset_timeout = reset_timeout or settings.circuit_breaker.reset_timeout_seconds
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, host: str) -> CircuitBreaker:
        breaker = self._breakers.get(host)
        if breaker is None:
            breaker = CircuitBreaker(host, self._failure_threshold, self._reset_timeout)
            self._breakers[host] = breaker
        return breaker

    def snapshot(self) -> dict[str, str]:
        return {host: breaker.state.value for host, breaker in self._breakers.items()}
