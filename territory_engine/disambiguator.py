"""Address-level disambiguation for ZIPs that straddle several territories.

Flow:
    1. Normalise the address (trim, case-fold, abbreviations)
    2. Search the ESIID API (one retry with backoff)
    3. Pick the premise whose address best matches (token-sort ratio)
    4. Map its DUNS / ESIID prefix / TDSP name to a territory
    5. No premise: fall back to the ZIP-level answer, capped and flagged unconfirmed
"""

import logging
import time
from typing import Callable, List, Optional, Tuple

from rapidfuzz import fuzz

from .boundary import BoundaryZipRegistry
from .config import Config
from .errors import AddressLookupUnavailable, InvalidAddress, SourceQueryError
from .esiid import EsiidClient
from .health import DataSourceHealth
from .models import AddressResolution, MeterMatch, Territory, ZipTerritoryMapping
from .normalize import normalize_address
from .retry import call_with_retry
from .territories import TerritoryRegistry

logger = logging.getLogger(__name__)

# Premises from different territories scoring within this many points are ambiguous
_NEAR_TIE_POINTS = 5
_NEAR_TIE_CONFIDENCE = 70


class AddressDisambiguator:
    def __init__(self, client: EsiidClient, territories: TerritoryRegistry,
                 boundary: BoundaryZipRegistry, config: Config,
                 health: Optional[DataSourceHealth] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.territories = territories
        self.boundary = boundary
        self.config = config
        self.health = health
        self._sleep = sleep

    def disambiguate(
        self,
        address: str,
        zip_code: str,
        zip_fallback: Optional[Callable[[], Optional[ZipTerritoryMapping]]] = None,
        deadline: Optional[float] = None,
    ) -> AddressResolution:
        """Resolve one street address to a territory.

        zip_fallback supplies the ZIP-level (live tier) answer and is only
        called when no premise matches the address.
        """
        normalized = normalize_address(address)
        if not normalized:
            raise InvalidAddress("address is empty", zip_code=zip_code)

        matches = self._search(address, zip_code, deadline)
        scored = self._score(normalized, zip_code, matches)
        if not scored:
            return self._fallback(address, zip_code, zip_fallback)

        best_score, best_match, best_territory = scored[0]
        confidence = self.config.address_confidence
        if best_match.match_confidence is not None:
            confidence = min(confidence, best_match.match_confidence)

        alternatives = []
        for score, match, territory in scored[1:]:
            if territory.territory_id == best_territory.territory_id:
                continue
            alternatives.append({
                "territory_id": territory.territory_id,
                "meter_id": match.meter_id,
                "address": match.address,
                "match_score": round(score),
            })
            if best_score - score <= _NEAR_TIE_POINTS:
                confidence = min(confidence, _NEAR_TIE_CONFIDENCE)

        logger.info(
            f"Address {zip_code} '{normalized}' -> {best_territory.territory_id} "
            f"via ESIID {best_match.meter_id} (match={best_score:.0f}, conf={confidence})"
        )
        return AddressResolution(
            address=address,
            zip_code=zip_code,
            meter_id=best_match.meter_id,
            territory_id=best_territory.territory_id,
            confidence=confidence,
            territory_name=best_territory.name,
            service_type=best_territory.service_type,
            source_id=self.client.source_id,
            alternatives=alternatives,
        )

    def _search(self, address: str, zip_code: str, deadline: Optional[float]) -> List[MeterMatch]:
        if self.health is not None and not self.health.allow_request():
            raise AddressLookupUnavailable(
                f"{self.client.source_id}: circuit open", zip_code=zip_code
            )
        t0 = time.time()
        c = self.config
        try:
            matches = call_with_retry(
                lambda: self.client.search(address, zip_code),
                max_retries=c.max_retries,
                base=c.retry_base_delay,
                multiplier=c.retry_multiplier,
                cap=c.retry_max_delay,
                deadline=deadline,
                sleep=self._sleep,
            )
        except SourceQueryError as e:
            if self.health is not None:
                self.health.record_failure(str(e))
            logger.warning(f"Address lookup failed for {zip_code}: {e}")
            raise AddressLookupUnavailable(f"address lookup unavailable: {e}", zip_code=zip_code)
        except Exception as e:
            logger.exception(f"{self.client.source_id}: lookup error for {zip_code}")
            if self.health is not None:
                self.health.record_failure(repr(e))
            raise AddressLookupUnavailable(f"address lookup failed: {e!r}", zip_code=zip_code)
        if self.health is not None:
            self.health.record_success((time.time() - t0) * 1000)
        return matches

    def _territory_for(self, match: MeterMatch) -> Optional[Territory]:
        return self.territories.identify(
            duns=match.tdsp_duns, meter_id=match.meter_id, name=match.tdsp_name
        )

    def _score(self, normalized: str, zip_code: str,
               matches: List[MeterMatch]) -> List[Tuple[float, MeterMatch, Territory]]:
        """Premises in this ZIP with a known territory, best address match first."""
        scored = []
        for m in matches:
            if m.zip_code and m.zip_code != zip_code:
                continue
            territory = self._territory_for(m)
            if territory is None:
                logger.debug(f"ESIID {m.meter_id}: unknown TDSP {m.tdsp_duns} {m.tdsp_name}")
                continue
            score = fuzz.token_sort_ratio(normalized, normalize_address(m.address)) if m.address else 0.0
            scored.append((score, m, territory))
        scored.sort(key=lambda s: s[0], reverse=True)
        return scored

    def _fallback(self, address: str, zip_code: str,
                  zip_fallback: Optional[Callable[[], Optional[ZipTerritoryMapping]]]) -> AddressResolution:
        cap = self.config.zip_only_confidence_cap
        mapping = zip_fallback() if zip_fallback else None
        if mapping is not None:
            territory = self.territories.get(mapping.territory_id)
            logger.info(f"Address {zip_code}: no premise matched, ZIP-level {mapping.territory_id}")
            return AddressResolution(
                address=address,
                zip_code=zip_code,
                meter_id=None,
                territory_id=mapping.territory_id,
                confidence=min(cap, mapping.confidence),
                territory_name=mapping.territory_name,
                service_type=territory.service_type if territory else mapping.service_type,
                source_id=mapping.source_id,
                unconfirmed=True,
            )

        candidates = self.boundary.candidates(zip_code)
        if candidates:
            territory = self.territories.get(candidates[0])
            logger.info(f"Address {zip_code}: no premise matched, boundary primary {territory.territory_id}")
            return AddressResolution(
                address=address,
                zip_code=zip_code,
                meter_id=None,
                territory_id=territory.territory_id,
                confidence=cap,
                territory_name=territory.name,
                service_type=territory.service_type,
                source_id="boundary_seed",
                unconfirmed=True,
                alternatives=[{"territory_id": t} for t in candidates[1:]],
            )

        return AddressResolution(
            address=address, zip_code=zip_code, meter_id=None, territory_id=None,
            confidence=0, unconfirmed=True,
        )
