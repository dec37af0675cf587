import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from atende.logging_config import get_logger

logger = get_logger("resilience.circuit_breaker")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerError(Exception):
    retryable = False

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open, retry in {retry_after:.1f}s")


class CircuitBreaker:
    """Stops calling a failing dependency for ``reset_timeout`` seconds.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects calls until the timeout passes, then lets trial calls through as
    HALF_OPEN. ``success_threshold`` trial successes close it again; any
    trial failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
        on_open: Optional[Callable[["CircuitBreaker"], None]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._on_open = on_open
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info("Circuit half-open", extra={"context": {"circuit": self.name}})
        return self._state

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.reset_timeout

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.state == CircuitState.OPEN:
            retry_after = self.reset_timeout - (self._clock() - (self._opened_at or 0.0))
            raise CircuitBreakerError(self.name, max(retry_after, 0.0))

        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._opened_at = None
                logger.info("Circuit closed", extra={"context": {"circuit": self.name}})
        else:
            self._failures = 0

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._trip()
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._trip()

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._successes = 0
        logger.error(
            "Circuit opened",
            extra={"context": {"circuit": self.name, "failures": self._failures}},
        )
        if self._on_open:
            try:
                self._on_open(self)
            except Exception as exc:
                logger.error(f"Circuit on_open callback failed: {exc}")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = None

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "successes": self._successes,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
        }
