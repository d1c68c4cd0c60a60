"""Data models for the territory engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class ServiceType(str, Enum):
    DEREGULATED = "deregulated"
    MUNICIPAL = "municipal"
    COOPERATIVE = "cooperative"
    REGULATED = "regulated"


class SourceType(str, Enum):
    STATIC = "static"
    PERSISTENT_CACHE = "persistent-cache"
    EXTERNAL_API = "external-api"
    ADDRESS_LOOKUP = "address-lookup"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class LogOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CONFLICT = "conflict"


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Territory:
    """A distribution utility (TDSP/TDU, municipal, co-op or regulated utility)."""
    territory_id: str
    name: str
    service_type: ServiceType = ServiceType.DEREGULATED
    duns: Optional[str] = None
    zone: str = ""
    meter_prefixes: List[str] = field(default_factory=list)


@dataclass
class ZipTerritoryMapping:
    """One resolved ZIP-to-utility binding."""
    zip_code: str
    territory_id: str
    territory_name: str
    service_type: ServiceType
    confidence: int
    source_id: str
    last_validated: float
    city_slug: str = ""
    city_display_name: str = ""
    is_active: bool = True

    # Resolution metadata, not persisted
    tier: str = "live"  # static, persistent, live, address
    durably_cached: bool = True
    unconfirmed: bool = False
    meter_id: Optional[str] = None
    alternatives: List[Dict] = field(default_factory=list)

    @property
    def is_deregulated(self) -> bool:
        return self.service_type == ServiceType.DEREGULATED

    @property
    def outcome(self) -> str:
        """'territory_match' for deregulated ZIPs, 'not_deregulated' otherwise."""
        return "territory_match" if self.is_deregulated else "not_deregulated"

    def to_dict(self) -> dict:
        return {
            "zip": self.zip_code,
            "city_slug": self.city_slug,
            "city_display_name": self.city_display_name,
            "territory_id": self.territory_id,
            "territory_name": self.territory_name,
            "service_type": self.service_type.value,
            "outcome": self.outcome,
            "confidence": self.confidence,
            "source_id": self.source_id,
            "last_validated": _iso(self.last_validated),
            "is_active": self.is_active,
            "tier": self.tier,
            "durably_cached": self.durably_cached,
            "unconfirmed": self.unconfirmed,
            "meter_id": self.meter_id,
            "alternatives": self.alternatives,
        }


@dataclass
class SourceResult:
    """A candidate answer from a single data source."""
    source_id: str
    territory_id: str
    territory_name: str = ""
    service_type: ServiceType = ServiceType.DEREGULATED
    city_slug: str = ""
    city_display_name: str = ""
    reported_confidence: Optional[int] = None
    query_time_ms: int = 0


@dataclass
class MeterMatch:
    """One premise returned by the meter-identifier (ESIID) lookup."""
    meter_id: str
    address: str
    zip_code: str
    tdsp_duns: str = ""
    tdsp_name: str = ""
    match_confidence: Optional[int] = None


@dataclass
class AddressResolution:
    address: str
    zip_code: str
    meter_id: Optional[str]
    territory_id: Optional[str]
    confidence: int
    territory_name: str = ""
    service_type: ServiceType = ServiceType.DEREGULATED
    source_id: str = ""
    # True when no premise matched and the answer is ZIP-level only
    unconfirmed: bool = False
    alternatives: List[Dict] = field(default_factory=list)


@dataclass
class ValidationLogEntry:
    """Append-only audit record of one source outcome during a resolution."""
    zip_code: str
    source_id: str
    outcome: LogOutcome
    resolved_territory_id: Optional[str]
    timestamp: float
    detail: str = ""
    id: Optional[int] = None


@dataclass
class SourceDefinition:
    """Static configuration of a data source connector."""
    id: str
    name: str
    type: SourceType
    priority: int = 50
    reliability: int = 90
    base_url: str = ""
    path: str = ""
    auth: Dict = field(default_factory=dict)
    requests_per_minute: int = 0  # 0 = unlimited
    connect_timeout: Optional[float] = None
    read_timeout: Optional[float] = None
    max_retries: Optional[int] = None
    failure_threshold: Optional[int] = None
    cooldown_seconds: Optional[float] = None
    enabled: bool = True

    def __post_init__(self):
        if not 1 <= self.priority <= 100:
            raise ValueError(f"Source {self.id}: priority {self.priority} outside 1-100")
        if not 0 <= self.reliability <= 100:
            raise ValueError(f"Source {self.id}: reliability {self.reliability} outside 0-100")

    @classmethod
    def from_dict(cls, d: dict) -> "SourceDefinition":
        timeouts = d.get("timeouts", {})
        retry = d.get("retry_policy", {})
        breaker = d.get("circuit_breaker", {})
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            type=SourceType(d["type"]),
            priority=int(d.get("priority", 50)),
            reliability=int(d.get("reliability", 90)),
            base_url=d.get("base_url", ""),
            path=d.get("path", ""),
            auth=d.get("auth", {}),
            requests_per_minute=int(d.get("rate_limits", {}).get("requests_per_minute", 0)),
            connect_timeout=timeouts.get("connect"),
            read_timeout=timeouts.get("read"),
            max_retries=retry.get("max_retries"),
            failure_threshold=breaker.get("failure_threshold"),
            cooldown_seconds=breaker.get("cooldown_seconds"),
            enabled=d.get("enabled", True),
        )
