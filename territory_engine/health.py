"""Per-source health tracking and circuit breaker.

State machine:
    closed    -> open       consecutive failures >= threshold, or reliability < floor
    open      -> half-open  cooldown elapsed; exactly one trial request is let through
    half-open -> closed     trial succeeded
    half-open -> open       trial failed (cooldown restarts)

All mutation happens under the instance lock so concurrent resolutions never
lose an update.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .models import CircuitState, SourceDefinition

logger = logging.getLogger(__name__)

# Recency / latency bonuses applied on top of reliability for ranking
_RECENT_1H_BONUS = 10
_RECENT_24H_BONUS = 5
_FAST_BONUS = 5
_FAST_THRESHOLD_MS = 2000


def _clamp(value, low=0, high=100):
    return max(low, min(high, value))


class DataSourceHealth:
    """Mutable health record for one data source."""

    def __init__(
        self,
        definition: SourceDefinition,
        failure_threshold: int = 10,
        reliability_floor: int = 50,
        cooldown_seconds: float = 300.0,
        reliability_increment: int = 2,
        response_time_weight: float = 0.2,
        clock: Callable[[], float] = time.time,
    ):
        self.source_id = definition.id
        self.source_type = definition.type
        self.priority = definition.priority
        self.failure_threshold = definition.failure_threshold or failure_threshold
        self.cooldown_seconds = definition.cooldown_seconds or cooldown_seconds
        self.reliability_floor = reliability_floor
        self.reliability_increment = reliability_increment
        self.response_time_weight = response_time_weight
        self._clock = clock

        self._lock = threading.Lock()
        self._reliability = int(definition.reliability)
        self._consecutive_failures = 0
        self._avg_response_ms: Optional[float] = None
        self._last_success: Optional[float] = None
        self._last_failure: Optional[float] = None
        self._last_failure_reason = ""
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    def allow_request(self) -> bool:
        """Claim permission for one live call. Grants the single half-open trial."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.cooldown_seconds:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"{self.source_id}: cooldown elapsed, circuit half-open")
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def is_available(self) -> bool:
        """Side-effect free check used for ranking; does not claim the trial."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return self._clock() - self._opened_at >= self.cooldown_seconds
            return not self._trial_in_flight

    def release_trial(self):
        """Give back a claimed half-open trial that was never actually issued."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def record_success(self, response_time_ms: float):
        with self._lock:
            now = self._clock()
            self._consecutive_failures = 0
            self._reliability = _clamp(self._reliability + self.reliability_increment)
            if self._avg_response_ms is None:
                self._avg_response_ms = float(response_time_ms)
            else:
                w = self.response_time_weight
                self._avg_response_ms = w * response_time_ms + (1 - w) * self._avg_response_ms
            self._last_success = now
            if self._state != CircuitState.CLOSED:
                logger.info(f"{self.source_id}: trial succeeded, circuit closed")
            self._state = CircuitState.CLOSED
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self, reason: str = ""):
        with self._lock:
            now = self._clock()
            self._consecutive_failures += 1
            self._reliability = _clamp(self._reliability - min(10, self._consecutive_failures))
            self._last_failure = now
            self._last_failure_reason = reason

            if self._state == CircuitState.HALF_OPEN:
                self._trip(now, "half-open trial failed")
            elif self._state == CircuitState.CLOSED and (
                self._consecutive_failures >= self.failure_threshold
                or self._reliability < self.reliability_floor
            ):
                self._trip(now, f"{self._consecutive_failures} consecutive failures, "
                                f"reliability {self._reliability}")

    def set_reliability(self, value: int):
        with self._lock:
            self._reliability = int(_clamp(value))

    def _trip(self, now: float, why: str):
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        logger.warning(f"{self.source_id}: circuit breaker opened ({why})")

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    def health_score(self) -> int:
        """Reliability plus recency and latency bonuses, clamped to [0, 100]."""
        with self._lock:
            return self._health_score_locked()

    def _health_score_locked(self) -> int:
        score = self._reliability
        if self._last_success is not None:
            age = self._clock() - self._last_success
            if age < 3600:
                score += _RECENT_1H_BONUS
            elif age < 86400:
                score += _RECENT_24H_BONUS
        if self._avg_response_ms is not None and self._avg_response_ms < _FAST_THRESHOLD_MS:
            score += _FAST_BONUS
        return int(_clamp(score))

    def rank(self) -> int:
        return self.priority * self.health_score()

    @property
    def reliability(self) -> int:
        with self._lock:
            return self._reliability

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def circuit_state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def last_success(self) -> Optional[float]:
        with self._lock:
            return self._last_success

    @property
    def average_response_time(self) -> Optional[float]:
        with self._lock:
            return self._avg_response_ms

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "id": self.source_id,
                "type": self.source_type.value,
                "priority": self.priority,
                "reliability": self._reliability,
                "health_score": self._health_score_locked(),
                "circuit_state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "average_response_time_ms": (
                    round(self._avg_response_ms) if self._avg_response_ms is not None else None
                ),
                "last_success": self._last_success,
                "last_failure": self._last_failure,
                "last_failure_reason": self._last_failure_reason,
            }
