"""Input validation and normalisation for ZIPs and street addresses."""

import re
from typing import Iterable, Optional, Tuple

from .errors import InvalidAddress, InvalidZipFormat

_ZIP_RE = re.compile(r"^\d{5}$")

_ABBREVIATIONS = [
    ("street", "st"), ("avenue", "ave"), ("boulevard", "blvd"),
    ("drive", "dr"), ("road", "rd"), ("lane", "ln"),
    ("court", "ct"), ("place", "pl"), ("parkway", "pkwy"),
    ("highway", "hwy"), ("circle", "cir"), ("trail", "trl"),
    ("apartment", "apt"), ("suite", "ste"), ("north", "n"),
    ("south", "s"), ("east", "e"), ("west", "w"),
]

_MAX_ADDRESS_LEN = 200


def normalize_address(address: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace, standard abbreviations."""
    if not address:
        return ""
    key = address.casefold().strip()
    key = re.sub(r"[.,#]", " ", key)
    key = re.sub(r"\s+", " ", key).strip()
    for full, abbr in _ABBREVIATIONS:
        key = re.sub(rf"\b{full}\b", abbr, key)
    return key


def validate_zip(zip_code, valid_ranges: Iterable[Tuple[int, int]]) -> str:
    """Return the 5-digit ZIP or raise InvalidZipFormat."""
    zip_code = str(zip_code or "").strip()
    if not _ZIP_RE.match(zip_code):
        raise InvalidZipFormat(f"ZIP must be exactly 5 digits, got {zip_code!r}", zip_code=zip_code)
    n = int(zip_code)
    ranges = list(valid_ranges)
    if ranges and not any(lo <= n <= hi for lo, hi in ranges):
        raise InvalidZipFormat(f"ZIP {zip_code} is outside the service area", zip_code=zip_code)
    return zip_code


def validate_address(address: Optional[str], zip_code: str = "") -> Optional[str]:
    """Trimmed address, None for blank input, InvalidAddress for garbage."""
    if address is None:
        return None
    address = address.strip()
    if not address:
        return None
    if len(address) > _MAX_ADDRESS_LEN:
        raise InvalidAddress(f"address longer than {_MAX_ADDRESS_LEN} characters", zip_code=zip_code)
    if not re.search(r"[A-Za-z]", address):
        raise InvalidAddress(f"address {address!r} has no street name", zip_code=zip_code)
    return address
