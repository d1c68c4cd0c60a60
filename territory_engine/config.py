"""Configuration for the territory engine."""

import os
from dataclasses import dataclass, field
from pathlib import Path


_PACKAGE = Path(__file__).parent
_DATA = _PACKAGE / "data"


@dataclass
class PromotionPolicy:
    """When repeated source disagreement turns a ZIP into a boundary ZIP."""

    # Conflicting resolution attempts needed within the window
    min_conflicts: int = 2
    # Distinct sources that must have taken part in those conflicts
    min_independent_sources: int = 2
    window_days: int = 30
    enabled: bool = True


@dataclass
class Config:
    # Seed data
    sources_file: Path = _DATA / "data_sources.json"
    static_file: Path = _DATA / "static_zip_mappings.json"
    boundary_file: Path = _DATA / "boundary_zips.json"
    territories_file: Path = _DATA / "territories.json"

    # Persistent store
    store_db: Path = Path("data") / "territory_store.db"
    staleness_days: int = 30

    # Resolution
    min_confidence: int = 80
    max_fanout: int = 3  # live sources queried concurrently per wave
    max_workers: int = 8

    # USPS allocation for Texas
    valid_zip_ranges: list = field(default_factory=lambda: [
        (73301, 73399),
        (75001, 79999),
        (88510, 88589),
    ])

    # Circuit breaker / health
    failure_threshold: int = 10
    reliability_floor: int = 50
    cooldown_seconds: float = 300.0
    reliability_increment: int = 2
    response_time_weight: float = 0.2

    # Timeouts (seconds): connect/read per HTTP call, total per resolution
    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    total_timeout: float = 35.0

    # Retry: exactly one retry per source per resolution call
    max_retries: int = 1
    retry_base_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 10.0

    # Address disambiguation
    esiid_api_url: str = "https://ercot.api.comparepower.com"
    esiid_api_key: str = ""
    address_cache_ttl: float = 3600.0
    address_confidence: int = 95
    zip_only_confidence_cap: int = 50

    promotion: PromotionPolicy = field(default_factory=PromotionPolicy)

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """Build a Config, overlaying TERRITORY_* / ESIID_* environment variables."""
        config = cls(**overrides)
        env = os.environ
        if env.get("TERRITORY_STORE_DB"):
            config.store_db = Path(env["TERRITORY_STORE_DB"])
        if env.get("TERRITORY_SOURCES_FILE"):
            config.sources_file = Path(env["TERRITORY_SOURCES_FILE"])
        if env.get("TERRITORY_MIN_CONFIDENCE"):
            config.min_confidence = int(env["TERRITORY_MIN_CONFIDENCE"])
        if env.get("TERRITORY_STALENESS_DAYS"):
            config.staleness_days = int(env["TERRITORY_STALENESS_DAYS"])
        if env.get("ESIID_API_URL"):
            config.esiid_api_url = env["ESIID_API_URL"]
        config.esiid_api_key = env.get("ESIID_API_KEY") or env.get("COMPAREPOWER_API_KEY") or config.esiid_api_key
        return config

    @property
    def staleness_seconds(self) -> float:
        return self.staleness_days * 86400
