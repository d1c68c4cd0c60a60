"""Territory registry: maps DUNS numbers, ESIID prefixes and utility names to territory ids."""

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from rapidfuzz import fuzz, process

from .models import ServiceType, Territory

logger = logging.getLogger(__name__)

# Suffixes stripped before fuzzy name matching
_STRIP_SUFFIXES = re.compile(
    r"\b(company|co|inc|llc|l\.l\.c|corp|corporation|lp|l\.p)\b\.?", re.IGNORECASE
)

_NAME_MATCH_CUTOFF = 85


def _normalize_name(name: str) -> str:
    key = (name or "").lower().replace(",", " ").replace("-", " ")
    key = _STRIP_SUFFIXES.sub(" ", key)
    return re.sub(r"\s+", " ", key).strip()


def _normalize_duns(duns: str) -> str:
    return re.sub(r"\D", "", duns or "").lstrip("0")


class TerritoryRegistry:
    """Known utility territories, loaded from territories.json."""

    def __init__(self, territories_file: Path):
        self._by_id: Dict[str, Territory] = {}
        self._by_duns: Dict[str, str] = {}
        self._prefixes: List[tuple] = []  # (prefix, territory_id), longest first
        self._names: Dict[str, str] = {}  # normalized name -> territory_id
        self._load(territories_file)

    def _load(self, path: Path):
        with open(path) as f:
            data = json.load(f)
        for tid, entry in data.get("territories", {}).items():
            self.add(Territory(
                territory_id=tid,
                name=entry["name"],
                service_type=ServiceType(entry.get("service_type", "deregulated")),
                duns=entry.get("duns"),
                zone=entry.get("zone", ""),
                meter_prefixes=list(entry.get("meter_prefixes", [])),
            ))
        logger.info(f"Territories: {len(self._by_id)} loaded, {len(self._prefixes)} meter prefixes")

    def add(self, territory: Territory):
        self._by_id[territory.territory_id] = territory
        if territory.duns:
            self._by_duns[_normalize_duns(territory.duns)] = territory.territory_id
        for prefix in territory.meter_prefixes:
            self._prefixes.append((prefix, territory.territory_id))
        self._prefixes.sort(key=lambda p: len(p[0]), reverse=True)
        self._names[_normalize_name(territory.name)] = territory.territory_id
        self._names[_normalize_name(territory.territory_id.replace("_", " "))] = territory.territory_id

    def get(self, territory_id: str) -> Optional[Territory]:
        return self._by_id.get(territory_id)

    def __contains__(self, territory_id: str) -> bool:
        return territory_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def by_duns(self, duns: str) -> Optional[Territory]:
        tid = self._by_duns.get(_normalize_duns(duns))
        return self._by_id.get(tid) if tid else None

    def by_meter_id(self, meter_id: str) -> Optional[Territory]:
        """Longest-prefix match of an ESIID against the registered prefixes."""
        meter_id = (meter_id or "").strip()
        for prefix, tid in self._prefixes:
            if meter_id.startswith(prefix):
                return self._by_id[tid]
        return None

    def by_name(self, name: str) -> Optional[Territory]:
        """Fuzzy match a utility display name ('ONCOR ELECTRIC DELIVERY COMPANY LLC')."""
        key = _normalize_name(name)
        if not key:
            return None
        if key in self._names:
            return self._by_id[self._names[key]]
        match = process.extractOne(
            key, list(self._names.keys()), scorer=fuzz.token_sort_ratio,
            score_cutoff=_NAME_MATCH_CUTOFF,
        )
        if not match:
            return None
        return self._by_id[self._names[match[0]]]

    def identify(self, territory_id: str = "", duns: str = "", meter_id: str = "",
                 name: str = "") -> Optional[Territory]:
        """Resolve whichever identifier a source returned, most specific first."""
        if territory_id and territory_id in self._by_id:
            return self._by_id[territory_id]
        if duns:
            t = self.by_duns(duns)
            if t:
                return t
        if meter_id:
            t = self.by_meter_id(meter_id)
            if t:
                return t
        if name:
            return self.by_name(name)
        return None
