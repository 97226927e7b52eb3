"""
Circuit Breaker Pattern Implementation

Guards calls to the planner model, the metadata catalog and the channel APIs so
that a failing provider is skipped quickly instead of stalling every turn.
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Any, Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5         # Failures before opening
    success_threshold: int = 2          # Successes in half-open to close
    timeout_seconds: float = 30.0       # Time before trying half-open
    half_open_max_calls: int = 3        # Max calls in half-open state


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Circuit breaker for external service protection.

    States:
    - CLOSED: Normal operation, tracking failures
    - OPEN: Service is failing, block all requests
    - HALF_OPEN: Testing if service recovered
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # threading.Lock: Celery tasks run each call on a fresh event loop
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        """Get or create circuit breaker instance for a service"""
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Reset all circuit breakers (for testing)"""
        with cls._instances_lock:
            cls._instances.clear()

    @classmethod
    def snapshot_all(cls) -> dict[str, dict[str, Any]]:
        """State of every registered breaker, for the readiness endpoint"""
        with cls._instances_lock:
            breakers = list(cls._instances.values())
        return {cb.service_name: cb.snapshot() for cb in breakers}

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.state.value,
            "failure_count": self._state.failure_count,
            "retry_after_seconds": round(self.get_retry_after(), 1),
        }

    def _should_attempt_reset(self) -> bool:
        """Check if enough time passed to try half-open"""
        if self._state.state != CircuitState.OPEN:
            return False

        time_since_failure = time.time() - self._state.last_failure_time
        return time_since_failure >= self.config.timeout_seconds

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state; caller holds the lock"""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0

        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value
            }
        )

    async def record_success(self) -> None:
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                # Any failure in half-open goes back to open
                self._transition_to(CircuitState.OPEN)
            elif self._state.failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        """Check if a request can be executed"""
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition_to(CircuitState.HALF_OPEN)
                    return True
                return False

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        """Get seconds until circuit might close"""
        if self._state.state != CircuitState.OPEN:
            return 0.0

        time_since_failure = time.time() - self._state.last_failure_time
        remaining = self.config.timeout_seconds - time_since_failure
        return max(0.0, remaining)

    async def execute(
        self,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute a function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If circuit is open
        """
        if not await self.can_execute():
            retry_after = self.get_retry_after()
            raise CircuitBreakerOpenError(self.service_name, retry_after)

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)

            await self.record_success()
            return result
        except Exception as e:
            await self.record_failure(e)
            raise


def get_telegram_circuit_breaker() -> CircuitBreaker:
    """Get circuit breaker for Telegram API"""
    return CircuitBreaker.get_instance(
        "telegram",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0
        )
    )


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    """Get circuit breaker for WhatsApp Cloud API"""
    return CircuitBreaker.get_instance(
        "whatsapp",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0
        )
    )


def get_planner_circuit_breaker() -> CircuitBreaker:
    """Get circuit breaker for the language-model planner"""
    return CircuitBreaker.get_instance(
        "anthropic",
        CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=1,
            timeout_seconds=60.0
        )
    )


def get_catalog_circuit_breaker() -> CircuitBreaker:
    """Get circuit breaker for the TMDB catalog"""
    return CircuitBreaker.get_instance(
        "tmdb",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0
        )
    )
