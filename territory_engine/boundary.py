"""Boundary ZIP registry: ZIPs split between several utility territories.

Seeded from boundary_zips.json and extended at runtime when live sources keep
disagreeing about the same ZIP (see PromotionPolicy).
"""

import json
import logging
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import PromotionPolicy
from .errors import PersistenceError
from .store import PersistentMappingStore
from .territories import TerritoryRegistry

logger = logging.getLogger(__name__)


class BoundaryZipRegistry:
    def __init__(self, boundary_file: Optional[Path], territories: TerritoryRegistry,
                 policy: Optional[PromotionPolicy] = None,
                 store: Optional[PersistentMappingStore] = None,
                 clock: Callable[[], float] = time.time):
        self.policy = policy or PromotionPolicy()
        self._territories = territories
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, dict] = {}
        self._events: Dict[str, List[dict]] = defaultdict(list)
        if boundary_file:
            self._load_seed(Path(boundary_file))
        self._load_promoted()

    def _load_seed(self, path: Path):
        if not path.exists():
            logger.warning(f"Boundary ZIP seed not found: {path}")
            return
        with open(path) as f:
            data = json.load(f)
        for zip_code, entry in data.get("boundary_zips", {}).items():
            ids = [entry["primary"], *entry.get("alternatives", [])]
            unknown = [t for t in ids if t not in self._territories]
            if unknown:
                logger.warning(f"Boundary seed: {zip_code} references unknown territories {unknown}")
                continue
            self._entries[zip_code] = {
                "primary": entry["primary"],
                "alternatives": list(entry.get("alternatives", [])),
                "city_slug": entry.get("city_slug", ""),
                "city_display_name": entry.get("city_display_name", ""),
                "notes": entry.get("notes", ""),
                "origin": "seed",
            }
        logger.info(f"Boundary ZIPs: {len(self._entries)} seeded")

    def _load_promoted(self):
        if self._store is None:
            return
        try:
            flags = self._store.boundary_flags()
        except PersistenceError as e:
            logger.warning(f"Boundary ZIPs: could not load promoted flags: {e}")
            return
        for zip_code, flag in flags.items():
            if zip_code in self._entries:
                continue
            self._entries[zip_code] = {
                "primary": flag["primary"],
                "alternatives": flag["alternatives"],
                "city_slug": "",
                "city_display_name": "",
                "notes": flag["reason"],
                "origin": "promoted",
            }
        if flags:
            logger.info(f"Boundary ZIPs: {len(flags)} promoted flags restored")

    def is_boundary(self, zip_code: str) -> bool:
        with self._lock:
            return zip_code in self._entries

    __contains__ = is_boundary

    def entry(self, zip_code: str) -> Optional[dict]:
        with self._lock:
            e = self._entries.get(zip_code)
            return dict(e) if e else None

    def candidates(self, zip_code: str) -> List[str]:
        """Primary territory first, then the alternatives."""
        e = self.entry(zip_code)
        if not e:
            return []
        return [e["primary"], *[a for a in e["alternatives"] if a != e["primary"]]]

    def flag(self, zip_code: str, primary: str, alternatives: List[str], reason: str = "") -> bool:
        """Mark a ZIP as multi-territory. Returns False if it already was."""
        with self._lock:
            if zip_code in self._entries:
                return False
            self._entries[zip_code] = {
                "primary": primary,
                "alternatives": [a for a in alternatives if a != primary],
                "city_slug": "",
                "city_display_name": "",
                "notes": reason,
                "origin": "promoted",
            }
        if self._store is not None:
            try:
                self._store.save_boundary_flag(zip_code, primary, alternatives, reason, self._clock())
            except PersistenceError as e:
                logger.warning(f"Boundary ZIPs: promotion of {zip_code} not persisted: {e}")
        return True

    def record_conflict(self, zip_code: str, source_ids: List[str], territory_ids: List[str],
                        winner: str) -> bool:
        """Record a source disagreement; promote the ZIP when the policy threshold is met.

        Returns True when this call promoted the ZIP.
        """
        now = self._clock()
        event = {"source_ids": sorted(set(source_ids)), "territory_ids": sorted(set(territory_ids)),
                 "timestamp": now}
        with self._lock:
            self._events[zip_code].append(event)
        logger.warning(f"Source conflict for {zip_code}: {event['territory_ids']} from {event['source_ids']}")

        events = None
        since = now - self.policy.window_days * 86400
        if self._store is not None:
            try:
                self._store.record_conflict_event(zip_code, source_ids, territory_ids, now)
                events = self._store.conflict_events(zip_code, since)
            except PersistenceError as e:
                logger.warning(f"Boundary ZIPs: conflict for {zip_code} not persisted: {e}")
        if events is None:
            with self._lock:
                events = [e for e in self._events[zip_code] if e["timestamp"] >= since]

        if not self.policy.enabled or self.is_boundary(zip_code):
            return False
        sources = {s for e in events for s in e["source_ids"]}
        if len(events) < self.policy.min_conflicts or len(sources) < self.policy.min_independent_sources:
            return False

        territories = {t for e in events for t in e["territory_ids"]}
        promoted = self.flag(
            zip_code, winner, sorted(territories - {winner}),
            reason=f"auto-promoted after {len(events)} conflicts across {len(sources)} sources",
        )
        if promoted:
            logger.warning(f"Boundary ZIPs: {zip_code} promoted to multi-territory "
                           f"({winner} vs {sorted(territories - {winner})})")
        return promoted

    def promoted(self) -> List[str]:
        with self._lock:
            return sorted(z for z, e in self._entries.items() if e["origin"] == "promoted")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
