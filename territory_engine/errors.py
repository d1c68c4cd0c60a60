"""Errors raised by the territory engine.

Every error carries the ZIP it concerns and, when one exists, the best-effort
mapping so callers can still show something for an uncertain answer.
"""

from typing import List, Optional

from .models import ZipTerritoryMapping


class TerritoryError(Exception):
    def __init__(self, message: str, zip_code: str = "",
                 mapping: Optional[ZipTerritoryMapping] = None):
        super().__init__(message)
        self.zip_code = zip_code
        self.mapping = mapping


class InvalidInput(TerritoryError):
    """Malformed ZIP or address. Never retried, never touches a source."""


class InvalidZipFormat(InvalidInput):
    pass


class InvalidAddress(InvalidInput):
    pass


class AddressRequired(TerritoryError):
    """The ZIP straddles several territories; re-invoke with a street address."""

    def __init__(self, zip_code: str, candidates: Optional[List[str]] = None):
        super().__init__(
            f"ZIP {zip_code} spans multiple utility territories; a street address is required",
            zip_code=zip_code,
        )
        self.candidates = candidates or []


class SourceUnavailable(TerritoryError):
    """Every eligible live source is circuit-open or failed, and nothing is cached."""


class AmbiguousResult(TerritoryError):
    """Minimum confidence not reached; `mapping` holds the low-confidence answer."""


class TerritoryNotFound(TerritoryError):
    """Live sources answered but none of them knows the ZIP."""


class ResolutionTimeout(TerritoryError):
    """The deadline expired with no cached row to fall back on; `mapping` holds any partial answer."""


class AddressLookupUnavailable(TerritoryError):
    """Meter-identifier lookup failed after its retry."""


class PersistenceError(TerritoryError):
    """Persistent store read/write failed."""


class SourceQueryError(Exception):
    """Transport or protocol failure inside a source connector."""

    def __init__(self, source_id: str, message: str, retryable: bool = True):
        super().__init__(f"{source_id}: {message}")
        self.source_id = source_id
        self.retryable = retryable
