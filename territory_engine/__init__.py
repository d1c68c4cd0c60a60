"""Utility territory engine: resolves Texas ZIPs and street addresses to the serving TDSP."""

from .config import Config, PromotionPolicy
from .engine import TerritoryEngine
from .errors import (
    AddressLookupUnavailable,
    AddressRequired,
    AmbiguousResult,
    InvalidAddress,
    InvalidInput,
    InvalidZipFormat,
    PersistenceError,
    ResolutionTimeout,
    SourceUnavailable,
    TerritoryError,
    TerritoryNotFound,
)
from .models import ServiceType, ZipTerritoryMapping

__all__ = [
    "Config",
    "PromotionPolicy",
    "TerritoryEngine",
    "ZipTerritoryMapping",
    "ServiceType",
    "TerritoryError",
    "InvalidInput",
    "InvalidZipFormat",
    "InvalidAddress",
    "AddressRequired",
    "SourceUnavailable",
    "AmbiguousResult",
    "PersistenceError",
    "AddressLookupUnavailable",
    "ResolutionTimeout",
    "TerritoryNotFound",
]
