"""ERCOT ESIID (meter identifier) lookup.

Search endpoint:
  GET {base}/api/esiids?address={address}&zip_code={zip}

Returns a JSON array of premises, each with esiid, address, zip_code,
tdsp_duns and tdsp_name (plus city, county, meter_type, ...). Results are
cached per normalised address + ZIP for a short TTL.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import requests

from .errors import SourceQueryError
from .models import MeterMatch, SourceDefinition, SourceType
from .normalize import normalize_address
from .sources import auth_headers

logger = logging.getLogger(__name__)

SOURCE_ID = "esiid_lookup"
_USER_AGENT = "territory-engine/1.0"


def default_definition(base_url: str, api_key: str = "") -> SourceDefinition:
    auth = {"type": "api_key", "header": "X-API-Key", "value": api_key} if api_key else {"type": "none"}
    return SourceDefinition(
        id=SOURCE_ID, name="ERCOT ESIID Lookup", type=SourceType.ADDRESS_LOOKUP,
        priority=90, reliability=95, base_url=base_url, path="/api/esiids", auth=auth,
        connect_timeout=5, read_timeout=10,
    )


def _match_confidence(value) -> Optional[int]:
    """Reported premise match confidence as 0-100, or None when missing or unreadable.

    Fractions (0.9) are read as percentages.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        conf = float(value)
    except (TypeError, ValueError):
        logger.debug(f"ESIID: ignoring unreadable match_confidence {value!r}")
        return None
    if not 0 <= conf <= 100:
        logger.debug(f"ESIID: ignoring out-of-range match_confidence {value!r}")
        return None
    if 0 < conf < 1:
        conf *= 100
    return int(round(conf))


class EsiidClient:
    """Address -> premise search against the ESIID API."""

    def __init__(self, definition: SourceDefinition, cache_ttl: float = 3600.0,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.definition = definition
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._timeout = (definition.connect_timeout or 5.0, definition.read_timeout or 10.0)
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": _USER_AGENT,
            "Accept": "application/json",
        })
        self._session.headers.update(auth_headers(definition.auth))
        self._cache: Dict[Tuple[str, str], Tuple[float, List[MeterMatch]]] = {}
        self._cache_lock = threading.Lock()

    @property
    def source_id(self) -> str:
        return self.definition.id

    def search(self, address: str, zip_code: str) -> List[MeterMatch]:
        """Premises matching the address. Empty list means the API knows no such premise."""
        key = (normalize_address(address), zip_code)
        now = self._clock()
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit and hit[0] > now:
                logger.debug(f"ESIID cache hit: {key[0]}, {zip_code}")
                return list(hit[1])

        url = self.definition.base_url.rstrip("/") + (self.definition.path or "/api/esiids")
        params = {"address": address.strip(), "zip_code": zip_code}
        t0 = time.time()
        try:
            resp = self._session.get(url, params=params, timeout=self._timeout)
        except requests.Timeout as e:
            raise SourceQueryError(self.source_id, f"timeout: {e}")
        except requests.RequestException as e:
            raise SourceQueryError(self.source_id, f"request failed: {e}")
        elapsed_ms = int((time.time() - t0) * 1000)

        if resp.status_code == 404:
            matches = []
        elif resp.status_code != 200:
            raise SourceQueryError(
                self.source_id, f"ESIID search failed: HTTP {resp.status_code}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )
        else:
            try:
                data = resp.json()
            except ValueError as e:
                raise SourceQueryError(self.source_id, f"invalid JSON: {e}", retryable=False)
            if not isinstance(data, list):
                raise SourceQueryError(self.source_id, "ESIID search response is not an array",
                                       retryable=False)
            matches = [self._to_match(d) for d in data if self._valid(d)]

        with self._cache_lock:
            self._cache[key] = (now + self.cache_ttl, matches)
        logger.debug(f"ESIID: {len(matches)} premises for '{address}', {zip_code} ({elapsed_ms}ms)")
        return list(matches)

    @staticmethod
    def _valid(d) -> bool:
        return isinstance(d, dict) and bool(d.get("esiid")) and bool(
            d.get("tdsp_duns") or d.get("tdsp_name")
        )

    @staticmethod
    def _to_match(d: dict) -> MeterMatch:
        return MeterMatch(
            meter_id=str(d["esiid"]).strip(),
            address=str(d.get("address") or "").strip(),
            zip_code=str(d.get("zip_code") or "").strip()[:5],
            tdsp_duns=str(d.get("tdsp_duns") or "").strip(),
            tdsp_name=str(d.get("tdsp_name") or "").strip(),
            match_confidence=_match_confidence(d.get("match_confidence")),
        )

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()

    def close(self):
        self._session.close()
