"""
Ingestion rate limiting.

Each organization gets a sliding window of admitted units. A single event
costs one unit and a batch of N events costs N, so batching is not a way
around the limit. A refused call raises RateLimitExceededError, which the
API turns into HTTP 429 with Retry-After.

Usage:
    limiter = RateLimiter(name="ingest", max_requests=600, window_seconds=60)
    limiter.check(organization_id, cost=len(events))
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Dict, Optional

from tracking_service.core.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterStats:
    name: str
    total_requests: int = 0
    total_allowed: int = 0
    total_rejected: int = 0

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["rejection_rate"] = self.total_rejected / self.total_requests if self.total_requests else 0.0
        return data


class RateLimiter:
    """
    Per-key sliding window.

    ``_windows`` maps a key to the admission times of its units, oldest
    first; a batch admitted at ``t`` adds ``cost`` copies of ``t``.
    """

    def __init__(
        self,
        name: str,
        max_requests: int = 600,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.stats = RateLimiterStats(name=name)
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _expire(self, admitted: Deque[float], now: float):
        horizon = now - self.window_seconds
        while admitted and admitted[0] <= horizon:
            admitted.popleft()

    def acquire(self, key: str, cost: int = 1) -> bool:
        """Admit ``cost`` units for ``key`` only if all of them fit."""
        with self._lock:
            now = self._clock()
            admitted = self._windows.setdefault(key, deque())
            self._expire(admitted, now)
            self.stats.total_requests += 1

            if len(admitted) + cost > self.max_requests:
                self.stats.total_rejected += 1
                logger.debug(f"{self.name}: refusing {cost} units for {key}, {len(admitted)} in window")
                return False

            admitted.extend([now] * cost)
            self.stats.total_allowed += 1
            return True

    def get_wait_time(self, key: str, cost: int = 1) -> float:
        """Seconds until ``cost`` more units would fit; 0 when they fit now."""
        with self._lock:
            admitted = self._windows.get(key)
            if not admitted:
                return 0.0
            now = self._clock()
            self._expire(admitted, now)
            excess = len(admitted) + cost - self.max_requests
            if excess <= 0:
                return 0.0
            if excess > len(admitted):
                # cost alone exceeds the budget
                return self.window_seconds
            return max(0.0, admitted[excess - 1] + self.window_seconds - now)

    def check(self, key: str, cost: int = 1):
        """
        Raises:
            RateLimitExceededError: ``retry_after`` is rounded up to whole seconds
        """
        if self.acquire(key, cost):
            return
        retry_after = max(1, math.ceil(self.get_wait_time(key, cost)))
        raise RateLimitExceededError(
            f"Ingestion rate limit of {self.max_requests} events per "
            f"{self.window_seconds:.0f}s exceeded",
            retry_after=retry_after,
        )

    def reset(self, key: Optional[str] = None):
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def prune(self) -> int:
        """Forget keys whose windows have fully expired; returns how many were dropped."""
        with self._lock:
            now = self._clock()
            for admitted in self._windows.values():
                self._expire(admitted, now)
            idle = [key for key, admitted in self._windows.items() if not admitted]
            for key in idle:
                del self._windows[key]
        if idle:
            logger.debug(f"{self.name}: pruned {len(idle)} idle windows")
        return len(idle)
