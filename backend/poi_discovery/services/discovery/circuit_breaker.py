# backend/poi_discovery/services/discovery/circuit_breaker.py
"""
Circuit breaker for the embedding and completion services.

Stops hammering an upstream that is already failing; callers see
CircuitOpenError immediately and map it to UpstreamUnavailable.
"""
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, Type, TypeVar

from poi_discovery.services.discovery.metrics import update_circuit_breaker_state

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""

    failure_threshold: int = 5  # Failures inside the window before opening
    success_threshold: int = 1  # Successes to close from half-open
    timeout_seconds: float = 60.0  # Time before trying half-open
    window_seconds: float = 30.0  # Window for counting failures


class CircuitOpenError(Exception):
    """Raised when attempting to call through an open circuit."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Circuit {name} is OPEN")


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for protecting external service calls.

    Failures are counted inside a sliding window; exceptions listed in
    ``ignored_exceptions`` pass through without counting as failures.

    Usage:
        breaker = CircuitBreaker(name="openai_embedding")

        try:
            vector = await breaker.call(provider.embed, text)
        except CircuitOpenError:
            ...
    """

    name: str
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    ignored_exceptions: Tuple[Type[BaseException], ...] = ()

    # State
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: Deque[float] = field(default_factory=deque, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: Optional[float] = field(default=None, init=False)
    _last_state_change: float = field(default_factory=time.monotonic, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _transition(self, new_state: CircuitState, reason: str = "") -> None:
        # Caller holds the lock
        old_state = self._state
        self._state = new_state
        self._last_state_change = time.monotonic()
        suffix = f" ({reason})" if reason else ""
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit {self.name}: {old_state.value.upper()} -> {new_state.value.upper()}{suffix}"
        )
        update_circuit_breaker_state(self.name, new_state.value)

    def _prune_failures(self, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _should_attempt(self) -> bool:
        """Check if we should attempt the call."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - self._last_state_change
                if elapsed < self.config.timeout_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
            return True

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._failures.clear()
                    self._success_count = 0
                    self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failures.clear()

    def _record_failure(self) -> None:
        with self._lock:
            now = time.monotonic()
            self._last_failure_time = now

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open goes back to open
                self._success_count = 0
                self._transition(CircuitState.OPEN, "test failed")
            elif self._state == CircuitState.CLOSED:
                self._failures.append(now)
                self._prune_failures(now)
                if len(self._failures) >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN, f"{len(self._failures)} failures")

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute a function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open and not ready to test
        """
        if not self._should_attempt():
            raise CircuitOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            self._record_success()
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._failures.clear()
            self._success_count = 0
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED, "manual reset")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_failures": len(self._failures),
                "last_failure_age_s": (
                    round(time.monotonic() - self._last_failure_time, 1)
                    if self._last_failure_time is not None
                    else None
                ),
            }


# Pre-configured circuit breakers for discovery upstreams
EMBEDDING_CIRCUIT = CircuitBreaker(
    name="openai_embedding",
    config=CircuitBreakerConfig(
        failure_threshold=3,
        timeout_seconds=60.0,
        window_seconds=30.0,
    ),
)

COMPLETION_CIRCUIT = CircuitBreaker(
    name="openai_completion",
    config=CircuitBreakerConfig(
        failure_threshold=5,
        timeout_seconds=60.0,
        window_seconds=60.0,
    ),
)
