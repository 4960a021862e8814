"""
Circuit Breaker

Guards calls to the WhatsApp gateway and the completion backend so a failing
dependency is short-circuited instead of hammered by every session.

CLOSED counts consecutive failures; at ``failure_threshold`` the circuit
opens and every call fails fast with CircuitBreakerOpenError. After
``timeout_seconds`` it goes HALF_OPEN and lets up to ``half_open_max_calls``
trial calls through: ``success_threshold`` successes close it again, any
failure reopens it.
"""
import inspect
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, ParamSpec, TypeVar, Union

from app.core.logging import get_logger
from app.core.exceptions import (
    CircuitBreakerOpenError,
    CompletionAuthError,
    CompletionQuotaExceededError,
)

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    # שגיאות שמעידות על הקריאה ולא על השירות — לא נספרות ככשל
    excluded_exceptions: tuple[type[BaseException], ...] = ()


class CircuitBreaker:
    """One breaker per external service, shared through ``get_instance``"""

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._trial_calls = 0
        self._opened_at = 0.0
        # threading.Lock — משותף גם ל-event loops של Celery
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        """Registered breaker for ``service_name``; ``config`` only applies on first use"""
        with cls._instances_lock:
            breaker = cls._instances.get(service_name)
            if breaker is None:
                breaker = cls._instances[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        with cls._instances_lock:
            cls._instances.clear()

    @classmethod
    def snapshot(cls) -> dict[str, str]:
        """State of every registered breaker, for /health"""
        with cls._instances_lock:
            return {name: breaker.state.value for name, breaker in cls._instances.items()}

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def get_retry_after(self) -> float:
        """Seconds until an open circuit admits a trial call"""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))

    def _move_to(self, new_state: CircuitState) -> None:
        """Caller holds self._lock"""
        old_state, self._state = self._state, new_state
        self._successes = 0
        self._trial_calls = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._failures = 0
        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={"service": self.service_name, "old_state": old_state.value, "new_state": new_state.value},
        )

    def _admit(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    return False
                self._trial_calls += 1
            return True

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def _on_failure(self, error: Exception) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error),
                },
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[P, Union[T, Awaitable[T]]],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Run ``func`` (sync or async) through the breaker.

        Raises:
            CircuitBreakerOpenError: the circuit is open, or half-open with no trial slot left
        """
        if not self._admit():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except self.config.excluded_exceptions:
            # השירות ענה — הבעיה בבקשה/בחשבון, לא בזמינות
            self._on_success()
            raise
        except Exception as exc:
            self._on_failure(exc)
            raise

        self._on_success()
        return result


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    """Shared by every WPPConnect gateway call"""
    return CircuitBreaker.get_instance(
        "whatsapp",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )


def get_completion_circuit_breaker() -> CircuitBreaker:
    """Completion backend breaker.

    Quota and credential errors are per-account problems, not outages, so they
    never open the circuit for every other tenant.
    """
    return CircuitBreaker.get_instance(
        "completion",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=60.0,
            excluded_exceptions=(CompletionQuotaExceededError, CompletionAuthError),
        ),
    )
