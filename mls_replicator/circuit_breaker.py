"""
Circuit Breaker Module

Guards calls to an MLS source so that a source which keeps failing is not
hammered by every scheduled run. One breaker exists per source name.

States:
- CLOSED: requests pass through, failures are counted
- OPEN: requests fail fast with CircuitOpenError
- HALF_OPEN: recovery timeout elapsed, trial requests decide the next state

Usage:
    breaker = await circuit_breakers.get("utahRealEstate")
    page = await breaker.call(client.get, url)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from mls_replicator.config import settings
from mls_replicator.errors import ReplicatorError
from mls_replicator.metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ReplicatorError):
    """Raised instead of calling a source whose breaker is open."""

    def __init__(self, source: str, remaining_seconds: float) -> None:
        self.source = source
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit breaker open for '{source}', retry in {remaining_seconds:.1f}s"
        )


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 2
    # Exceptions that never count as a failure
    ignored_exceptions: tuple[type[Exception], ...] = ()

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_timeout,
            success_threshold=settings.circuit_breaker_success_threshold,
        )


@dataclass
class _BreakerCounters:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    opened_at: float | None = None
    changed_at: float = field(default_factory=time.monotonic)


class CircuitBreaker:
    """
    Three-state breaker around an async callable.

    Only the state bookkeeping is done under the lock; the wrapped call
    itself runs unlocked so concurrent requests to the same source are not
    serialized.
    """

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._counters = _BreakerCounters()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._counters.state

    @property
    def is_open(self) -> bool:
        return self._counters.state == CircuitState.OPEN

    def _remaining(self) -> float:
        if self._counters.opened_at is None:
            return 0.0
        elapsed = time.monotonic() - self._counters.opened_at
        return max(0.0, self.config.recovery_timeout - elapsed)

    def _set_state(self, new_state: CircuitState) -> None:
        old_state = self._counters.state
        if old_state == new_state:
            return

        self._counters.state = new_state
        self._counters.changed_at = time.monotonic()
        self._counters.successes = 0
        if new_state == CircuitState.CLOSED:
            self._counters.failures = 0
            self._counters.opened_at = None
        elif new_state == CircuitState.OPEN:
            self._counters.opened_at = time.monotonic()

        logger.warning(
            "Circuit breaker '%s': %s -> %s", self.name, old_state.value, new_state.value
        )
        metrics.record_circuit_breaker_state(self.name, new_state.value)

    def _on_failure(self, exc: Exception) -> None:
        if isinstance(exc, self.config.ignored_exceptions):
            return

        self._counters.failures += 1
        self._counters.successes = 0
        metrics.record_circuit_breaker_failure(self.name)

        if self._counters.state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
        elif (
            self._counters.state == CircuitState.CLOSED
            and self._counters.failures >= self.config.failure_threshold
        ):
            self._set_state(CircuitState.OPEN)

    def _on_success(self) -> None:
        self._counters.successes += 1
        if self._counters.state == CircuitState.CLOSED:
            self._counters.failures = 0
        elif (
            self._counters.state == CircuitState.HALF_OPEN
            and self._counters.successes >= self.config.success_threshold
        ):
            self._set_state(CircuitState.CLOSED)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: The breaker is open and the recovery timeout
                has not elapsed yet.
        """
        async with self._lock:
            if self._counters.state == CircuitState.OPEN:
                if self._remaining() > 0:
                    raise CircuitOpenError(self.name, self._remaining())
                self._set_state(CircuitState.HALF_OPEN)

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            async with self._lock:
                self._on_failure(exc)
            raise

        async with self._lock:
            self._on_success()
        return result

    async def reset(self) -> None:
        async with self._lock:
            self._set_state(CircuitState.CLOSED)
            self._counters = _BreakerCounters()

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._counters.state.value,
            "failure_count": self._counters.failures,
            "success_count": self._counters.successes,
            "remaining_timeout": self._remaining() if self.is_open else None,
        }


class CircuitBreakerRegistry:
    """Breakers by source name, created on first use."""

    def __init__(self, default_config: CircuitBreakerConfig | None = None) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._lock = asyncio.Lock()

    async def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        async with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, config or self._default_config)
            return self._breakers[name]

    async def get_all_status(self) -> list[dict[str, Any]]:
        async with self._lock:
            return [breaker.get_status() for breaker in self._breakers.values()]

    async def reset_all(self) -> None:
        async with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            await breaker.reset()


circuit_breakers = CircuitBreakerRegistry(default_config=CircuitBreakerConfig.from_settings())
