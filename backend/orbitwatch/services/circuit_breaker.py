"""Per-endpoint circuit breaker and retry policy for webhook delivery."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker with one half-open trial and doubling open time.

    ``allow_request`` must be called before every attempt and exactly one of
    ``record_success`` / ``record_failure`` after every allowed attempt.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        open_seconds: float = 60.0,
        max_open_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_open_seconds = open_seconds
        self.max_open_seconds = max_open_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._open_seconds = open_seconds
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self.short_circuited = 0

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._clock() - self._opened_at >= self._open_seconds:
            return BreakerState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            state = self._current_state()
            if state == BreakerState.CLOSED:
                return True
            if state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                if self._state != BreakerState.HALF_OPEN:
                    logger.info("Circuit breaker half-open: endpoint=%s", self.name)
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = True
                return True
            self.short_circuited += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                logger.info("Circuit breaker closed: endpoint=%s", self.name)
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._open_seconds = self.base_open_seconds
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._open_seconds = min(self._open_seconds * 2.0, self.max_open_seconds)
                self._trip()
                return
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.failure_threshold:
                self._trip()

    def _trip(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit breaker opened: endpoint=%s failures=%d open_s=%.0f",
            self.name, self._consecutive_failures, self._open_seconds,
        )

    def to_dict(self) -> dict:
        with self._lock:
            state = self._current_state()
            retry_in = None
            if state == BreakerState.OPEN:
                retry_in = max(0.0, self._opened_at + self._open_seconds - self._clock())
            return {
                "state": state.value,
                "consecutive_failures": self._consecutive_failures,
                "open_seconds": self._open_seconds,
                "retry_in_seconds": retry_in,
                "short_circuited": self.short_circuited,
            }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_backoff_seconds: float = 1.0

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return self.base_backoff_seconds * (2 ** (attempt - 1))

    def to_dict(self) -> dict:
        return {"max_attempts": self.max_attempts, "base_backoff_seconds": self.base_backoff_seconds}

    @classmethod
    def from_dict(cls, data: dict | None) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            base_backoff_seconds=max(0.0, float(data.get("base_backoff_seconds", 1.0))),
        )
