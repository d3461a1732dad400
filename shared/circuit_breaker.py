"""
Circuit breaker guarding calls to the remote content store.

After ``failure_threshold`` consecutive transient failures the breaker opens
and calls fail fast until ``recovery_timeout`` has passed. It then lets a
single probe through (half-open); concurrent callers keep failing fast until
the probe settles, so a recovering remote is not hit by every waiting reader
at once.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

from shared.logging import get_logger

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised instead of calling through while the breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is open, retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Only ``expected_exception`` failures count towards opening the breaker;
    other exceptions (not-found, quota refusals) pass through untouched and
    count as a healthy round trip.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 expected_exception: ExceptionTypes = Exception,
                 name: str = "default",
                 clock: Callable[[], float] = time.time,
                 on_state_change: Optional[Callable[[str, CircuitBreakerState], None]] = None):
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.clock = clock
        self.on_state_change = on_state_change
        self.logger = get_logger(f"content.breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._total_failures = 0
        self._total_rejections = 0

    def _transition(self, state: CircuitBreakerState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        self.logger.info("Circuit breaker state changed", previous=previous.value, state=state.value)
        if self.on_state_change:
            self.on_state_change(self.name, state)

    def retry_after(self) -> float:
        """Seconds until a probe will be allowed (0 when calls go through)."""
        if self._state is not CircuitBreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout - self.clock())

    def _admit(self) -> bool:
        if self._state is CircuitBreakerState.CLOSED:
            return True
        if self._state is CircuitBreakerState.OPEN:
            if self.retry_after() > 0:
                return False
            self._transition(CircuitBreakerState.HALF_OPEN)
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` through the breaker."""
        if not self._admit():
            self._total_rejections += 1
            raise CircuitBreakerOpenException(self.name, self.retry_after())

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except Exception:
            # The remote answered; the error is about the request, not the link
            self._on_success()
            raise
        except BaseException:
            self._probe_in_flight = False
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self._probe_in_flight = False
        self._consecutive_failures = 0
        self._opened_at = None
        self._transition(CircuitBreakerState.CLOSED)

    def _on_failure(self) -> None:
        self._probe_in_flight = False
        self._consecutive_failures += 1
        self._total_failures += 1
        if self._state is CircuitBreakerState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self.clock()
            if self._state is not CircuitBreakerState.OPEN:
                self.logger.warning(
                    "Circuit breaker opened",
                    consecutive_failures=self._consecutive_failures,
                    threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                )
            self._transition(CircuitBreakerState.OPEN)

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "total_failures": self._total_failures,
            "total_rejections": self._total_rejections,
            "retry_after": round(self.retry_after(), 3),
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    def is_open(self) -> bool:
        return self._state is CircuitBreakerState.OPEN
