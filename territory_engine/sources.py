"""Source capability and the HTTP territory connector.

Every live connector implements `Source.query(zip, address)`. The resolver
only ever talks to this interface.

Contract:
    - returns a SourceResult when the source knows the ZIP
    - returns None when the source answered but has no data for the ZIP
    - raises SourceQueryError on transport/protocol failure (timeouts,
      connection errors, 5xx, malformed payloads)
"""

import logging
import os
import re
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional

import requests

from .errors import SourceQueryError
from .models import SourceDefinition, SourceResult
from .territories import TerritoryRegistry

logger = logging.getLogger(__name__)

_USER_AGENT = "territory-engine/1.0"


def slugify_city(name: str, state: str = "tx") -> str:
    """'Fort Worth' -> 'fort-worth-tx'."""
    if not name:
        return ""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    suffix = f"-{state.lower()}"
    return slug if slug.endswith(suffix) else slug + suffix


def auth_headers(auth: Dict) -> Dict[str, str]:
    """Build request headers from a source's auth block. Secrets come from the environment."""
    kind = (auth or {}).get("type", "none")
    if kind == "api_key":
        value = auth.get("value") or os.environ.get(auth.get("env", ""), "")
        return {auth.get("header", "X-API-Key"): value} if value else {}
    if kind == "bearer":
        token = auth.get("value") or os.environ.get(auth.get("env", ""), "")
        return {"Authorization": f"Bearer {token}"} if token else {}
    return {}


class Source(ABC):
    """A live data source the resolver can query."""

    def __init__(self, definition: SourceDefinition):
        self.definition = definition

    @property
    def source_id(self) -> str:
        return self.definition.id

    @abstractmethod
    def query(self, zip_code: str, address: Optional[str] = None) -> Optional[SourceResult]:
        """Look up the territory serving a ZIP."""

    def close(self):
        pass


class HttpTerritorySource(Source):
    """JSON territory API: GET {base_url}{path} with {zip} substituted."""

    def __init__(self, definition: SourceDefinition, territories: TerritoryRegistry,
                 connect_timeout: float = 5.0, read_timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        super().__init__(definition)
        self._territories = territories
        self._timeout = (
            definition.connect_timeout or connect_timeout,
            definition.read_timeout or read_timeout,
        )
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": _USER_AGENT, "Accept": "application/json"})
        self._session.headers.update(auth_headers(definition.auth))

    def url_for(self, zip_code: str) -> str:
        return self.definition.base_url.rstrip("/") + self.definition.path.format(zip=zip_code)

    def query(self, zip_code: str, address: Optional[str] = None) -> Optional[SourceResult]:
        url = self.url_for(zip_code)
        t0 = time.time()
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.Timeout as e:
            raise SourceQueryError(self.source_id, f"timeout: {e}")
        except requests.RequestException as e:
            raise SourceQueryError(self.source_id, f"request failed: {e}")
        elapsed_ms = int((time.time() - t0) * 1000)

        if resp.status_code == 404:
            logger.debug(f"{self.source_id}: no data for {zip_code} ({elapsed_ms}ms)")
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise SourceQueryError(self.source_id, f"HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise SourceQueryError(self.source_id, f"HTTP {resp.status_code}", retryable=False)

        try:
            payload = resp.json()
        except ValueError as e:
            raise SourceQueryError(self.source_id, f"invalid JSON: {e}", retryable=False)

        result = self._parse(zip_code, payload)
        if result:
            result.query_time_ms = elapsed_ms
        logger.debug(
            f"{self.source_id}: {zip_code} -> {result.territory_id if result else None} ({elapsed_ms}ms)"
        )
        return result

    def _parse(self, zip_code: str, payload) -> Optional[SourceResult]:
        if isinstance(payload, dict) and "data" in payload:
            payload = payload["data"]
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not payload:
            return None
        if not isinstance(payload, dict):
            raise SourceQueryError(self.source_id, "unexpected payload shape", retryable=False)

        territory = self._territories.identify(
            territory_id=payload.get("territory_id") or "",
            duns=str(payload.get("tdsp_duns") or payload.get("duns") or ""),
            meter_id=payload.get("esiid") or "",
            name=payload.get("tdsp_name") or payload.get("territory_name") or payload.get("utility") or "",
        )
        if territory is None:
            logger.debug(f"{self.source_id}: unrecognised territory for {zip_code}: {payload}")
            return None

        city = payload.get("city") or payload.get("city_display_name") or ""
        slug = payload.get("city_slug") or slugify_city(city.split(",")[0])
        if city and "," not in city:
            city = f"{city}, TX"

        reported = payload.get("confidence")
        return SourceResult(
            source_id=self.source_id,
            territory_id=territory.territory_id,
            territory_name=territory.name,
            service_type=territory.service_type,
            city_slug=slug,
            city_display_name=city,
            reported_confidence=int(reported) if reported is not None else None,
        )

    def close(self):
        self._session.close()
