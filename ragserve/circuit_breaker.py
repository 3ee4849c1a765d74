"""
Circuit Breaker Pattern for Fault Tolerance

Implements the circuit breaker pattern for async capability clients
(embeddings, language model) so a failing upstream fails fast instead of
tying up request tasks until their timeouts fire.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Too many failures, requests are blocked (fail fast)
- HALF_OPEN: Testing if service recovered, limited requests allowed
"""

from __future__ import annotations

import time
from enum import Enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Any, Optional, TypeVar, Dict
from threading import RLock

from loguru import logger

from ragserve.errors import CircuitOpenError
from ragserve.metrics import circuit_breaker_state_changes, track_circuit_breaker

T = TypeVar("T")


# ============================================================================
# Data Structures
# ============================================================================


class CircuitState(str, Enum):
    """Circuit breaker state."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Blocking requests (fail fast)
    HALF_OPEN = "half_open"    # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5         # Failures before opening
    recovery_timeout_seconds: float = 60.0  # Time before trying half-open
    success_threshold: int = 2         # Successes in half-open before closing
    half_open_max_calls: int = 1       # Trial calls allowed in flight while half-open
    name: str = "circuit_breaker"


@dataclass
class CircuitBreakerMetrics:
    """Metrics for monitoring circuit breaker."""
    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0
    rejected_requests: int = 0
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: int = 0
    time_opened: Optional[float] = None


# ============================================================================
# Circuit Breaker Implementation
# ============================================================================


class CircuitBreaker:
    """
    Circuit breaker for async calls to external services.

    The lock only guards bookkeeping; it is never held across an await.
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.metrics = CircuitBreakerMetrics()
        self._lock = RLock()
        self._clock = clock
        self._half_open_successes = 0
        self._half_open_in_flight = 0

    @property
    def name(self) -> str:
        return self.config.name

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Await ``func(*args, **kwargs)`` through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open or the half-open trial slots are taken
        """
        with self._lock:
            self._check_state_transition()

            if self.state == CircuitState.OPEN:
                self.metrics.rejected_requests += 1
                raise CircuitOpenError(
                    f"Circuit breaker '{self.config.name}' is OPEN - service unavailable",
                    service=self.config.name,
                )

            probing = self.state == CircuitState.HALF_OPEN
            if probing:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    self.metrics.rejected_requests += 1
                    raise CircuitOpenError(
                        f"Circuit breaker '{self.config.name}' is testing recovery - "
                        f"max concurrent requests exceeded",
                        service=self.config.name,
                    )
                self._half_open_in_flight += 1

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            if probing:
                with self._lock:
                    self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def _check_state_transition(self) -> None:
        """Move OPEN -> HALF_OPEN once the recovery timeout has elapsed."""
        if self.state != CircuitState.OPEN:
            return
        now = self._clock()
        if self.metrics.time_opened is None:
            self.metrics.time_opened = now
        elapsed = now - self.metrics.time_opened
        if elapsed >= self.config.recovery_timeout_seconds:
            self._transition_to(CircuitState.HALF_OPEN)
            logger.info(
                f"Circuit breaker '{self.config.name}' transitioning to HALF_OPEN "
                f"after {elapsed:.1f}s timeout"
            )

    def _on_success(self) -> None:
        with self._lock:
            self.metrics.total_successes += 1
            self.metrics.total_requests += 1
            self.metrics.consecutive_failures = 0
            self.metrics.last_success_time = self._clock()

            if self.state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.success_threshold:
                    logger.info(
                        f"Circuit breaker '{self.config.name}' transitioning to CLOSED "
                        f"after {self._half_open_successes} successes"
                    )
                    self._transition_to(CircuitState.CLOSED)
            self._export()

    def _on_failure(self, error: Exception) -> None:
        with self._lock:
            self.metrics.total_failures += 1
            self.metrics.total_requests += 1
            self.metrics.consecutive_failures += 1
            self.metrics.last_failure_time = self._clock()

            logger.warning(
                f"Circuit breaker '{self.config.name}' failure "
                f"({self.metrics.consecutive_failures}/{self.config.failure_threshold}): {error}"
            )

            # A failed trial call reopens immediately
            if self.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self.metrics.consecutive_failures >= self.config.failure_threshold:
                logger.error(
                    f"Circuit breaker '{self.config.name}' transitioning to OPEN - "
                    f"{self.metrics.consecutive_failures} consecutive failures"
                )
                self._transition_to(CircuitState.OPEN)
            self._export()

    def _transition_to(self, new_state: CircuitState) -> None:
        if self.state == new_state:
            return
        old_state = self.state
        self.state = new_state
        self.metrics.state_changes += 1
        self.metrics.time_opened = self._clock() if new_state == CircuitState.OPEN else None
        self._half_open_successes = 0
        circuit_breaker_state_changes.labels(
            name=self.config.name, from_state=old_state.value, to_state=new_state.value
        ).inc()
        logger.info(
            f"Circuit breaker '{self.config.name}' transitioned from "
            f"{old_state.value} to {new_state.value}"
        )
        self._export()

    def _export(self) -> None:
        track_circuit_breaker(
            self.config.name,
            self.state.value,
            {"consecutive_failures": self.metrics.consecutive_failures},
        )

    def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self.metrics.consecutive_failures = 0
            self._half_open_successes = 0
            self._half_open_in_flight = 0
            self._export()
            logger.info(f"Circuit breaker '{self.config.name}' manually reset")

    def get_state(self) -> CircuitState:
        with self._lock:
            self._check_state_transition()
            return self.state

    def get_status(self) -> Dict[str, Any]:
        """Get human-readable status."""
        with self._lock:
            self._check_state_transition()
            m = self.metrics
            success_rate = (m.total_successes / m.total_requests * 100) if m.total_requests > 0 else 0
            return {
                "name": self.config.name,
                "state": self.state.value,
                "total_requests": m.total_requests,
                "total_failures": m.total_failures,
                "total_successes": m.total_successes,
                "rejected_requests": m.rejected_requests,
                "success_rate": f"{success_rate:.1f}%",
                "consecutive_failures": m.consecutive_failures,
                "failure_threshold": self.config.failure_threshold,
                "state_changes": m.state_changes,
            }


# ============================================================================
# Global Circuit Breaker Registry
# ============================================================================


class CircuitBreakerRegistry:
    """Global registry for managing multiple circuit breakers."""

    def __init__(self):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = RLock()

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                if config is None:
                    config = CircuitBreakerConfig(name=name)
                else:
                    config.name = name
                breaker = CircuitBreaker(config)
                self._breakers[name] = breaker
                logger.info(f"Registered circuit breaker '{name}'")
            return breaker

    def list_all(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()
            logger.info("Reset all circuit breakers")


# Global registry instance
_registry = CircuitBreakerRegistry()


def get_circuit_breaker(name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Get or create a circuit breaker from the global registry."""
    return _registry.get_or_create(name, config)


def get_all_circuit_breakers() -> Dict[str, Dict[str, Any]]:
    """Get status of all registered circuit breakers."""
    return _registry.list_all()


def reset_all_circuit_breakers() -> None:
    """Reset all circuit breakers."""
    _registry.reset_all()
