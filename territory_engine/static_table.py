"""Static mapping table: hand-curated, highest-trust ZIP to territory bindings."""

import json
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from .models import ZipTerritoryMapping
from .territories import TerritoryRegistry

logger = logging.getLogger(__name__)

SOURCE_ID = "static_table"
STATIC_CONFIDENCE = 100


class StaticMappingTable:
    """In-memory ZIP table loaded once at start-up. O(1) lookups."""

    def __init__(self, static_file: Path, territories: TerritoryRegistry):
        self._territories = territories
        self._entries: Dict[str, dict] = {}
        self._load(static_file)

    def _load(self, path: Path):
        if not Path(path).exists():
            logger.warning(f"Static table not found: {path}")
            return
        with open(path) as f:
            data = json.load(f)
        mappings = data.get("mappings", data)
        skipped = 0
        for zip_code, entry in mappings.items():
            if zip_code.startswith("_"):
                continue
            if entry.get("territory_id") not in self._territories:
                skipped += 1
                logger.warning(f"Static table: {zip_code} references unknown territory {entry.get('territory_id')}")
                continue
            self._entries[zip_code] = entry
        logger.info(f"Static table: {len(self._entries)} ZIPs loaded ({skipped} skipped)")

    def __contains__(self, zip_code: str) -> bool:
        return zip_code in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def city_for(self, zip_code: str) -> Optional[tuple]:
        entry = self._entries.get(zip_code)
        if not entry:
            return None
        return entry.get("city_slug", ""), entry.get("city_display_name", "")

    def lookup(self, zip_code: str) -> Optional[ZipTerritoryMapping]:
        entry = self._entries.get(zip_code)
        if not entry:
            return None
        territory = self._territories.get(entry["territory_id"])
        return ZipTerritoryMapping(
            zip_code=zip_code,
            territory_id=territory.territory_id,
            territory_name=territory.name,
            service_type=territory.service_type,
            confidence=STATIC_CONFIDENCE,
            source_id=SOURCE_ID,
            last_validated=time.time(),
            city_slug=entry.get("city_slug", ""),
            city_display_name=entry.get("city_display_name", ""),
            tier="static",
        )
