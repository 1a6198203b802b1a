"""Per-dependency circuit breaker and the registry that owns breakers by name."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from taskpool.errors import CircuitOpenError
from taskpool.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeListener = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    success_threshold: int = 1
    half_open_max_attempts: int = 3

    def validate(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1.")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1.")
        if self.reset_timeout_seconds < 0:
            raise ValueError("reset_timeout_seconds must be >= 0.")
        if self.half_open_max_attempts < self.success_threshold:
            raise ValueError(
                "half_open_max_attempts must be >= success_threshold, "
                "otherwise a half-open breaker can never close.",
            )


@dataclass(slots=True)
class BreakerResult(Generic[T]):
    """Outcome of a guarded call."""

    success: bool
    value: T | None = None
    error: BaseException | None = None
    was_rejected: bool = False


@dataclass(slots=True)
class FallbackResult(Generic[T]):
    """Guarded call result with a fallback substituted on failure."""

    value: T
    degraded: bool
    error: BaseException | None = None


@dataclass(slots=True)
class CircuitBreakerStats:
    """Health snapshot for one breaker."""

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    total_failures: int
    total_successes: int
    total_rejections: int
    half_open_attempts: int
    state_changes: int
    time_in_state_seconds: float
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None


@dataclass(slots=True)
class _Counters:
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0
    half_open_attempts: int = 0
    state_changes: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None


class CircuitBreaker:
    """Closed/open/half-open state machine guarding one dependency."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.config.validate()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._counters = _Counters()
        self._last_failure_monotonic: float | None = None
        self._state_entered_monotonic = clock()
        self._listeners: list[StateChangeListener] = []

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    def on_state_change(self, listener: StateChangeListener) -> None:
        """Register a `(name, new_state, previous_state)` callback."""

        self._listeners.append(listener)

    def can_execute(self) -> bool:
        """Whether a call may proceed now.

        The only mutation is the lazy open -> half_open transition once the
        reset timeout has elapsed since the last failure.
        """

        if self._state is CircuitState.CLOSED:
            return True
        if self._state is CircuitState.OPEN:
            if self.seconds_until_reset() > 0:
                return False
            self._transition(CircuitState.HALF_OPEN)
        return self._counters.half_open_attempts < self.config.half_open_max_attempts

    def seconds_until_reset(self) -> float:
        """Remaining open time; zero unless the breaker is open."""

        if self._state is not CircuitState.OPEN or self._last_failure_monotonic is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_monotonic
        return max(0.0, self.config.reset_timeout_seconds - elapsed)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> BreakerResult[T]:
        """Run the operation unless the breaker rejects it."""

        if not self._admit():
            return BreakerResult(success=False, was_rejected=True)
        try:
            value = await operation()
        except Exception as error:  # noqa: BLE001
            self.record_failure(error)
            return BreakerResult(success=False, error=error)
        self.record_success()
        return BreakerResult(success=True, value=value)

    async def execute_with_fallback(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: T,
    ) -> FallbackResult[T]:
        """Run the operation, substituting `fallback` when it fails or is rejected."""

        result = await self.execute(operation)
        if result.success:
            return FallbackResult(value=result.value, degraded=False)  # type: ignore[arg-type]
        if result.was_rejected:
            logger.info("Circuit %s open, serving fallback", self.name)
            return FallbackResult(value=fallback, degraded=True, error=self._open_error())
        return FallbackResult(value=fallback, degraded=True, error=result.error)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run the operation and return its value, raising on failure or rejection."""

        if not self._admit():
            raise self._open_error()
        try:
            value = await operation()
        except Exception as error:
            self.record_failure(error)
            raise
        self.record_success()
        return value

    def record_success(self) -> None:
        counters = self._counters
        counters.total_successes += 1
        counters.consecutive_successes += 1
        counters.consecutive_failures = 0
        counters.last_success_at = utc_now()
        if self._state is not CircuitState.HALF_OPEN:
            return
        if counters.consecutive_successes >= self.config.success_threshold:
            self._transition(CircuitState.CLOSED)
        elif counters.half_open_attempts >= self.config.half_open_max_attempts:
            self._trip()

    def record_failure(self, error: BaseException | None = None) -> None:
        counters = self._counters
        counters.total_failures += 1
        counters.consecutive_failures += 1
        counters.consecutive_successes = 0
        counters.last_failure_at = utc_now()
        counters.last_error = str(error) if error is not None else None
        self._last_failure_monotonic = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._trip()
        elif (
            self._state is CircuitState.CLOSED
            and counters.consecutive_failures >= self.config.failure_threshold
        ):
            self._trip()

    def reset(self) -> None:
        """Force the breaker closed and clear all counters."""

        previous = self._state
        self._counters = _Counters()
        self._last_failure_monotonic = None
        self._state = CircuitState.CLOSED
        self._state_entered_monotonic = self._clock()
        if previous is not CircuitState.CLOSED:
            self._notify(CircuitState.CLOSED, previous)

    def stats(self) -> CircuitBreakerStats:
        counters = self._counters
        return CircuitBreakerStats(
            name=self.name,
            state=self._state,
            consecutive_failures=counters.consecutive_failures,
            consecutive_successes=counters.consecutive_successes,
            total_failures=counters.total_failures,
            total_successes=counters.total_successes,
            total_rejections=counters.total_rejections,
            half_open_attempts=counters.half_open_attempts,
            state_changes=counters.state_changes,
            time_in_state_seconds=self._clock() - self._state_entered_monotonic,
            last_failure_at=counters.last_failure_at,
            last_success_at=counters.last_success_at,
            last_error=counters.last_error,
        )

    def _admit(self) -> bool:
        if not self.can_execute():
            self._counters.total_rejections += 1
            return False
        if self._state is CircuitState.HALF_OPEN:
            self._counters.half_open_attempts += 1
        return True

    def _open_error(self) -> CircuitOpenError:
        return CircuitOpenError(self.name, retry_after_seconds=self.seconds_until_reset())

    def _trip(self) -> None:
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        self._state_entered_monotonic = self._clock()
        counters = self._counters
        counters.state_changes += 1
        if new_state is CircuitState.HALF_OPEN:
            counters.consecutive_successes = 0
            counters.half_open_attempts = 0
        elif new_state is CircuitState.CLOSED:
            counters.consecutive_failures = 0
            counters.half_open_attempts = 0
        self._notify(new_state, previous)

    def _notify(self, new_state: CircuitState, previous: CircuitState) -> None:
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log("Circuit %s: %s -> %s", self.name, previous.value, new_state.value)
        for listener in self._listeners:
            listener(self.name, new_state, previous)


@dataclass(slots=True)
class CircuitBreakerRegistry:
    """Get-or-create breakers by dependency name."""

    default_config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    overrides: dict[str, CircuitBreakerConfig] = field(default_factory=dict)
    clock: Callable[[], float] = time.monotonic
    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict, init=False)

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Return the breaker for `name`, creating it on first use.

        `config` only applies when the breaker does not exist yet.
        """

        breaker = self._breakers.get(name)
        if breaker is None:
            effective = config or self.overrides.get(name) or self.default_config
            breaker = CircuitBreaker(name, effective, clock=self.clock)
            self._breakers[name] = breaker
            logger.debug("Created circuit breaker %s", name)
        return breaker

    def stats(self) -> dict[str, CircuitBreakerStats]:
        return {name: breaker.stats() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def names(self) -> list[str]:
        return list(self._breakers)

    def __len__(self) -> int:
        return len(self._breakers)

    def __contains__(self, name: Any) -> bool:
        return name in self._breakers
