"""Data source registry: source definitions, live connectors, health records, rate limits."""

import json
import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from .config import Config
from .health import DataSourceHealth
from .models import LogOutcome, SourceDefinition, SourceType, ValidationLogEntry
from .sources import HttpTerritorySource, Source
from .territories import TerritoryRegistry

logger = logging.getLogger(__name__)

# Weight of each log entry when rebuilding reliability from history
_RECOMPUTE_ALPHA = 0.1
_OUTCOME_SCORE = {
    LogOutcome.SUCCESS: 100.0,
    LogOutcome.CONFLICT: 50.0,
    LogOutcome.FAILURE: 0.0,
}


class RateLimiter:
    """Sliding one-minute window. requests_per_minute <= 0 means unlimited."""

    def __init__(self, requests_per_minute: int, clock: Callable[[], float] = time.time):
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._calls: deque = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        if self.requests_per_minute <= 0:
            return True
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= 60.0:
                self._calls.popleft()
            if len(self._calls) >= self.requests_per_minute:
                return False
            self._calls.append(now)
            return True


def load_definitions(path: Path) -> List[SourceDefinition]:
    with open(path) as f:
        data = json.load(f)
    return [SourceDefinition.from_dict(d) for d in data.get("sources", [])]


class DataSourceRegistry:
    """Owns every source's definition and health record.

    Health records are only mutated through DataSourceHealth methods; the
    resolver receives this registry explicitly and never touches globals.
    """

    def __init__(self, config: Config, territories: TerritoryRegistry,
                 definitions: Optional[Iterable[SourceDefinition]] = None,
                 build_connectors: bool = True,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self._territories = territories
        self._clock = clock
        self._definitions: Dict[str, SourceDefinition] = {}
        self._health: Dict[str, DataSourceHealth] = {}
        self._limiters: Dict[str, RateLimiter] = {}
        self._connectors: Dict[str, Source] = {}
        self._lock = threading.Lock()

        if definitions is None:
            definitions = load_definitions(config.sources_file)
        for d in definitions:
            self._add_definition(d)
            if build_connectors and d.enabled and d.type == SourceType.EXTERNAL_API:
                self._connectors[d.id] = HttpTerritorySource(
                    d, territories,
                    connect_timeout=config.connect_timeout,
                    read_timeout=config.read_timeout,
                    session=session_factory(),
                )

        logger.info(
            f"Source registry: {len(self._definitions)} sources, "
            f"{len(self._connectors)} live connectors"
        )

    def _add_definition(self, definition: SourceDefinition):
        c = self.config
        self._definitions[definition.id] = definition
        self._health[definition.id] = DataSourceHealth(
            definition,
            failure_threshold=c.failure_threshold,
            reliability_floor=c.reliability_floor,
            cooldown_seconds=c.cooldown_seconds,
            reliability_increment=c.reliability_increment,
            response_time_weight=c.response_time_weight,
            clock=self._clock,
        )
        self._limiters[definition.id] = RateLimiter(definition.requests_per_minute, clock=self._clock)

    def track(self, definition: SourceDefinition) -> DataSourceHealth:
        """Health record for a source that is queried outside the live tier."""
        with self._lock:
            if definition.id not in self._health:
                self._add_definition(definition)
            return self._health[definition.id]

    def register(self, source: Source):
        """Add or replace a live connector (its definition comes with it)."""
        with self._lock:
            old = self._connectors.pop(source.source_id, None)
            if old is not None:
                old.close()
            self._add_definition(source.definition)
            self._connectors[source.source_id] = source

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def definition(self, source_id: str) -> Optional[SourceDefinition]:
        return self._definitions.get(source_id)

    def definitions(self, source_type: Optional[SourceType] = None) -> List[SourceDefinition]:
        return [d for d in self._definitions.values() if source_type is None or d.type == source_type]

    def health(self, source_id: str) -> Optional[DataSourceHealth]:
        return self._health.get(source_id)

    def connector(self, source_id: str) -> Optional[Source]:
        return self._connectors.get(source_id)

    def ranked_live_sources(self) -> List[Tuple[Source, DataSourceHealth]]:
        """Live connectors whose circuit admits a call, best priority * health first.

        Equal ranks fall back to the most recent success.
        """
        with self._lock:
            connectors = list(self._connectors.values())
        ranked = []
        for source in connectors:
            if not source.definition.enabled:
                continue
            health = self._health[source.source_id]
            if not health.is_available():
                logger.debug(f"{source.source_id}: skipped, circuit {health.circuit_state.value}")
                continue
            ranked.append((source, health))
        ranked.sort(key=lambda sh: (sh[1].rank(), sh[1].last_success or 0.0), reverse=True)
        return ranked

    def has_live_sources(self) -> bool:
        return bool(self._connectors)

    def acquire(self, source_id: str) -> bool:
        """Claim a call slot: circuit breaker first, then the rate limit.

        A rate-limited source is skipped without counting as a failure.
        """
        health = self._health[source_id]
        if not health.allow_request():
            return False
        if not self._limiters[source_id].try_acquire():
            health.release_trial()
            logger.debug(f"{source_id}: rate limit reached, skipping")
            return False
        return True

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def health_snapshot(self) -> List[dict]:
        snaps = [h.snapshot() for h in self._health.values()]
        snaps.sort(key=lambda s: s["priority"] * s["health_score"], reverse=True)
        return snaps

    def recompute_reliability(self, source_id: str, entries: Iterable[ValidationLogEntry],
                              apply: bool = False) -> int:
        """Exponentially weighted success rate over a source's log history (oldest first)."""
        definition = self._definitions[source_id]
        score = float(definition.reliability)
        count = 0
        for entry in sorted(entries, key=lambda e: e.timestamp):
            if entry.source_id != source_id:
                continue
            score = (1 - _RECOMPUTE_ALPHA) * score + _RECOMPUTE_ALPHA * _OUTCOME_SCORE[entry.outcome]
            count += 1
        value = int(round(max(0.0, min(100.0, score))))
        logger.info(f"{source_id}: reliability recomputed from {count} log entries -> {value}")
        if apply:
            self._health[source_id].set_reliability(value)
        return value

    def close(self):
        with self._lock:
            for source in self._connectors.values():
                source.close()
