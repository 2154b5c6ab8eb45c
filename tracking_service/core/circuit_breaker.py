"""
Circuit breaker for the shared tracking store.

While Redis is down every pipeline run would otherwise wait out connection
timeouts. After ``failure_threshold`` consecutive store failures the circuit
opens: guarded blocks raise ``CircuitBreakerError`` immediately and the
pipeline resolves the event to VALIDATION_FAILED. After ``recovery_timeout``
seconds the circuit lets probes through; ``success_threshold`` successful
probes close it again, a single failed probe reopens it.

Usage:
    breaker = get_circuit_breaker("redis", failure_threshold=5, recovery_timeout=30)
    async with breaker:
        await client.get(key)
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Tracking errors raised inside a guarded block are outcomes, not outages.
STORE_EXCEPTIONS = (RedisError, ConnectionError, TimeoutError, OSError)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerStats:
    name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    total_requests: int = 0
    total_failures: int = 0
    total_rejections: int = 0
    total_circuit_opens: int = 0

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["state"] = self.state.value
        data["failure_rate"] = self.total_failures / self.total_requests if self.total_requests else 0.0
        return data


class CircuitBreakerError(Exception):
    """A store call was refused because the circuit is open"""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Store circuit '{name}' is open, retry in {retry_after:.0f}s")


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 2,
        expected_exceptions: tuple = STORE_EXCEPTIONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.expected_exceptions = expected_exceptions
        self.stats = CircuitBreakerStats(name=name)
        self._clock = clock
        self._opened_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self.stats.state

    @property
    def retry_after(self) -> float:
        """Seconds until an open circuit starts probing; 0 unless OPEN."""
        if self.stats.state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _transition(self, state: CircuitState):
        self.stats.state = state
        self.stats.failure_count = 0
        self.stats.success_count = 0
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self.stats.total_circuit_opens += 1
        elif state == CircuitState.CLOSED:
            self._opened_at = None

    def _admit(self):
        with self._lock:
            if self.stats.state != CircuitState.OPEN:
                return
            if self.retry_after > 0:
                self.stats.total_rejections += 1
                raise CircuitBreakerError(self.name, self.retry_after)
            self._transition(CircuitState.HALF_OPEN)
            logger.info(f"Store circuit '{self.name}' probing")

    def _settle(self, error: Optional[BaseException]):
        if error is not None and not isinstance(error, self.expected_exceptions):
            return
        with self._lock:
            self.stats.total_requests += 1
            if error is None:
                self.stats.success_count += 1
                if self.stats.state == CircuitState.HALF_OPEN:
                    if self.stats.success_count >= self.success_threshold:
                        self._transition(CircuitState.CLOSED)
                        logger.info(f"Store circuit '{self.name}' closed")
                else:
                    self.stats.failure_count = 0
                return

            self.stats.total_failures += 1
            self.stats.failure_count += 1
            if self.stats.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                logger.warning(f"Store circuit '{self.name}' reopened, probe failed: {error}")
            elif self.stats.failure_count >= self.failure_threshold:
                failures = self.stats.failure_count
                self._transition(CircuitState.OPEN)
                logger.warning(f"Store circuit '{self.name}' opened after {failures} failures: {error}")

    async def __aenter__(self):
        self._admit()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._settle(exc_val)
        return False

    def __enter__(self):
        self._admit()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._settle(exc_val)
        return False

    def reset(self):
        """Close the circuit, e.g. after a fresh successful connect."""
        with self._lock:
            self._transition(CircuitState.CLOSED)


_circuit_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 30.0,
    success_threshold: int = 2,
) -> CircuitBreaker:
    """Return the breaker registered under ``name``, creating it on first use."""
    with _registry_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(
                name,
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                success_threshold=success_threshold,
            )
        return _circuit_breakers[name]


def get_all_circuit_breaker_stats() -> Dict[str, Dict]:
    with _registry_lock:
        return {name: cb.stats.to_dict() for name, cb in _circuit_breakers.items()}


def reset_all_circuit_breakers():
    with _registry_lock:
        for cb in _circuit_breakers.values():
            cb.reset()


redis_circuit_breaker = get_circuit_breaker("redis")
