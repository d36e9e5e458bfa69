"""
Circuit Breaker for Protocol Store Dependencies

One independent breaker per named dependency ("structured-store",
"vector-index", ...). States:
- CLOSED: calls pass through, consecutive failures counted
- OPEN: calls rejected immediately so the caller goes to its fallback
- HALF_OPEN: after the reset timeout, a limited number of trial calls

Transitions:
    CLOSED --threshold consecutive failures--> OPEN
    OPEN --reset timeout elapsed, next request--> HALF_OPEN
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN

Usage:
    registry = CircuitBreakerRegistry(CircuitBreakerConfig())
    protocol = await registry.call("structured-store", lambda: store.get_by_code("1210"))
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .config import CircuitBreakerConfig
from .error_handling import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """States of the circuit breaker"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerMetrics:
    """Counters for a single breaker"""
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    rejected_calls: int = 0
    state_changes: int = 0

    @property
    def failure_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.total_failures / self.total_calls


class CircuitBreaker:
    """
    Circuit breaker state machine for one dependency.

    The clock is injectable so transitions can be tested without sleeping.
    State changes happen only through allow_request(), record_success(),
    record_failure() and reset().
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """
        Decide whether a call may go to the dependency.

        An OPEN breaker whose reset timeout has elapsed moves to HALF_OPEN
        and admits up to half_open_max_calls trial calls.
        """
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed >= self.config.reset_timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)
            else:
                self.metrics.rejected_calls += 1
                return False

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_calls >= self.config.half_open_max_calls:
                self.metrics.rejected_calls += 1
                return False
            self._half_open_calls += 1

        self.metrics.total_calls += 1
        return True

    def record_success(self) -> None:
        self.metrics.total_successes += 1
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0

    def record_failure(self, exception: Optional[BaseException] = None) -> None:
        self.metrics.total_failures += 1
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if exception is not None:
            logger.debug(f"Circuit '{self.name}' recorded failure: {exception!r}")

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to CLOSED (operator action / tests)."""
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._last_failure_time = None

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return

        log = logger.info if new_state == CircuitState.CLOSED else logger.warning
        log(
            f"Circuit breaker '{self.name}' transitioned: "
            f"{self._state.value} → {new_state.value}",
            extra={
                "breaker_name": self.name,
                "old_state": self._state.value,
                "new_state": new_state.value,
                "failure_count": self._failure_count,
            },
        )

        self._state = new_state
        self.metrics.state_changes += 1
        self._half_open_calls = 0

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._failure_count = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "threshold": self.config.failure_threshold,
            "reset_timeout_seconds": self.config.reset_timeout_seconds,
            "total_calls": self.metrics.total_calls,
            "total_failures": self.metrics.total_failures,
            "rejected_calls": self.metrics.rejected_calls,
            "failure_rate": round(self.metrics.failure_rate, 4),
        }


class CircuitBreakerRegistry:
    """
    Breakers keyed by dependency name, shared by concurrent requests.

    Every read or write of breaker state goes through an asyncio.Lock; the
    dependency call itself runs outside the lock.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = asyncio.Lock()

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.config, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    async def acquire(self, name: str) -> None:
        """Raise CircuitOpenError unless the named breaker admits a call."""
        async with self._lock:
            breaker = self.get(name)
            if not breaker.allow_request():
                raise CircuitOpenError(
                    f"Circuit breaker '{name}' is {breaker.state.value}",
                    details={"dependency": name, "state": breaker.state.value},
                )

    async def record_success(self, name: str) -> None:
        async with self._lock:
            self.get(name).record_success()

    async def record_failure(self, name: str, exception: Optional[BaseException] = None) -> None:
        async with self._lock:
            self.get(name).record_failure(exception)

    async def call(self, name: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run func() through the named breaker."""
        await self.acquire(name)
        try:
            result = await func()
        except Exception as e:
            await self.record_failure(name, e)
            raise
        await self.record_success(name)
        return result

    async def reset_all(self) -> None:
        async with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()

    def any_open(self) -> bool:
        return any(b.is_open for b in self._breakers.values())

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot() for name, b in sorted(self._breakers.items())}
