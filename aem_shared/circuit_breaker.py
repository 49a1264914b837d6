"""
Circuit breaker pattern implementation for resilient AEM calls.
"""

import time
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable, FrozenSet, Iterable

from aem_shared.logging import get_logger
from aem_shared.errors import (
    AEMException,
    CircuitBreakerOpenError,
    ErrorKind,
    RECOVERABLE_KINDS,
    is_recoverable,
)


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker for a single named dependency.

    Admission and state transitions never await, so on one event loop they
    are serialized per breaker. While HALF_OPEN a single probe call is in
    flight; every other caller is rejected until the probe settles.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 expected_kinds: Optional[Iterable[ErrorKind]] = None,
                 name: str = "default",
                 clock: Callable[[], float] = time.time):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_kinds: FrozenSet[ErrorKind] = frozenset(expected_kinds or RECOVERABLE_KINDS)
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_requests = 0
        self._rejected_requests = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _time_until_next_attempt(self) -> float:
        if self._next_attempt_time is None:
            return 0.0
        return max(0.0, self._next_attempt_time - self._clock())

    def _acquire_permission(self) -> bool:
        """Decide whether a call may run. Returns True when it is the probe."""
        if self._state == CircuitBreakerState.OPEN:
            if self._time_until_next_attempt() > 0:
                self._reject("Circuit breaker rejected request - circuit is OPEN")
            self._state = CircuitBreakerState.HALF_OPEN
            self.logger.info("Circuit breaker transitioning to half-open", circuit=self.name)

        if self._state == CircuitBreakerState.HALF_OPEN:
            if self._probe_in_flight:
                self._reject("Circuit breaker rejected request - probe in flight")
            self._probe_in_flight = True
            return True

        return False

    def _reject(self, message: str):
        self._rejected_requests += 1
        self.logger.warning(message, circuit=self.name, state=self._state.value)
        raise CircuitBreakerOpenError(
            self.name,
            retry_after=self._time_until_next_attempt(),
            next_attempt_time=self._next_attempt_time,
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        self._total_requests += 1
        is_probe = self._acquire_permission()

        try:
            result = await func(*args, **kwargs)
        except BaseException as e:
            self._on_failure(e, is_probe)
            raise

        self._on_success(is_probe)
        return result

    execute = call

    def _counts_as_failure(self, error: BaseException) -> bool:
        if isinstance(error, AEMException):
            return error.kind in self.expected_kinds and error.recoverable
        return is_recoverable(error)

    def _on_success(self, is_probe: bool):
        self._success_count += 1
        if is_probe:
            self._probe_in_flight = False
            self._state = CircuitBreakerState.CLOSED
            self._next_attempt_time = None
            self.logger.info("Circuit breaker reset to CLOSED after successful call", circuit=self.name)
        if self._state == CircuitBreakerState.CLOSED:
            self._failure_count = 0

    def _on_failure(self, error: BaseException, is_probe: bool):
        if is_probe:
            self._probe_in_flight = False

        if not self._counts_as_failure(error):
            # Only recoverable failures of expected kinds count
            return

        self._failure_count += 1
        self._last_failure_time = self._clock()

        if is_probe:
            self._open("Circuit breaker failed in HALF_OPEN, returning to OPEN")
        elif self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
            self._open("Circuit breaker opened due to failures")

    def _open(self, message: str):
        self._state = CircuitBreakerState.OPEN
        self._next_attempt_time = self._clock() + self.recovery_timeout
        self.logger.warning(
            message,
            circuit=self.name,
            failure_count=self._failure_count,
            threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout,
        )

    def force_open(self):
        """Force the circuit OPEN for a full recovery window."""
        self._state = CircuitBreakerState.OPEN
        self._probe_in_flight = False
        self._last_failure_time = self._clock()
        self._next_attempt_time = self._last_failure_time + self.recovery_timeout
        self.logger.warning("Circuit breaker manually forced to OPEN", circuit=self.name)

    def reset(self):
        """Reset the circuit to CLOSED and clear counters."""
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._probe_in_flight = False
        self._last_failure_time = None
        self._next_attempt_time = None
        self.logger.info("Circuit breaker manually reset to CLOSED", circuit=self.name)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_requests": self._total_requests,
            "rejected_requests": self._rejected_requests,
            "last_failure_time": self._last_failure_time,
            "next_attempt_time": self._next_attempt_time,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN


class CircuitBreakerManager:
    """Registry that lazily creates one circuit breaker per operation key."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.time):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.logger = get_logger("circuit_breaker_manager")

    def get_circuit_breaker(self,
                            name: str,
                            failure_threshold: Optional[int] = None,
                            recovery_timeout: Optional[float] = None,
                            expected_kinds: Optional[Iterable[ErrorKind]] = None) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                failure_threshold=failure_threshold or self.failure_threshold,
                recovery_timeout=recovery_timeout or self.recovery_timeout,
                expected_kinds=expected_kinds,
                name=name,
                clock=self._clock,
            )
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self.circuit_breakers.get(name)

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }

    def reset(self, name: str) -> bool:
        """Reset a single breaker. Returns False when it does not exist."""
        breaker = self.circuit_breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self):
        for breaker in self.circuit_breakers.values():
            breaker.reset()

    def remove(self, name: str) -> bool:
        return self.circuit_breakers.pop(name, None) is not None
