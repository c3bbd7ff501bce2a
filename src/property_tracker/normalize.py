from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Mapping, Optional, Tuple, Union

from property_tracker.errors import InvalidAddress

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


_WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s#-]", re.UNICODE)
_ZIP_RE = re.compile(r"^(\d{5})(?:-?\d{4})?$")
_UNIT_RE = re.compile(
    r"(?:\s|^)(?:(?:APT|APARTMENT|UNIT|STE|SUITE|BLDG|BUILDING|RM|ROOM|SPC|SPACE|LOT|FL|FLOOR)\.?\s*#?\s*|#\s*)"
    r"([A-Z]?\d[A-Z0-9-]*|[A-Z])\s*$"
)

STREET_SUFFIXES = {
    "ALLEY": "ALY",
    "AVENUE": "AVE",
    "AV": "AVE",
    "BOULEVARD": "BLVD",
    "CIRCLE": "CIR",
    "COURT": "CT",
    "COVE": "CV",
    "CROSSING": "XING",
    "DRIVE": "DR",
    "EXPRESSWAY": "EXPY",
    "FREEWAY": "FWY",
    "HIGHWAY": "HWY",
    "LANE": "LN",
    "PARKWAY": "PKWY",
    "PLACE": "PL",
    "PLAZA": "PLZ",
    "POINT": "PT",
    "ROAD": "RD",
    "SQUARE": "SQ",
    "STREET": "ST",
    "TERRACE": "TER",
    "TRAIL": "TRL",
    "TURNPIKE": "TPKE",
}

DIRECTIONALS = {
    "NORTH": "N",
    "SOUTH": "S",
    "EAST": "E",
    "WEST": "W",
    "NORTHEAST": "NE",
    "NORTHWEST": "NW",
    "SOUTHEAST": "SE",
    "SOUTHWEST": "SW",
}

US_STATES = {
    "ALABAMA": "AL", "ALASKA": "AK", "ARIZONA": "AZ", "ARKANSAS": "AR",
    "CALIFORNIA": "CA", "COLORADO": "CO", "CONNECTICUT": "CT", "DELAWARE": "DE",
    "DISTRICT OF COLUMBIA": "DC", "FLORIDA": "FL", "GEORGIA": "GA", "HAWAII": "HI",
    "IDAHO": "ID", "ILLINOIS": "IL", "INDIANA": "IN", "IOWA": "IA",
    "KANSAS": "KS", "KENTUCKY": "KY", "LOUISIANA": "LA", "MAINE": "ME",
    "MARYLAND": "MD", "MASSACHUSETTS": "MA", "MICHIGAN": "MI", "MINNESOTA": "MN",
    "MISSISSIPPI": "MS", "MISSOURI": "MO", "MONTANA": "MT", "NEBRASKA": "NE",
    "NEVADA": "NV", "NEW HAMPSHIRE": "NH", "NEW JERSEY": "NJ", "NEW MEXICO": "NM",
    "NEW YORK": "NY", "NORTH CAROLINA": "NC", "NORTH DAKOTA": "ND", "OHIO": "OH",
    "OKLAHOMA": "OK", "OREGON": "OR", "PENNSYLVANIA": "PA", "RHODE ISLAND": "RI",
    "SOUTH CAROLINA": "SC", "SOUTH DAKOTA": "SD", "TENNESSEE": "TN", "TEXAS": "TX",
    "UTAH": "UT", "VERMONT": "VT", "VIRGINIA": "VA", "WASHINGTON": "WA",
    "WEST VIRGINIA": "WV", "WISCONSIN": "WI", "WYOMING": "WY",
}
_STATE_ABBRS = set(US_STATES.values())


def normalize_text(value: Optional[str]) -> str:
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def _key_text(value: Optional[str]) -> str:
    cleaned = normalize_text(value).upper()
    cleaned = _PUNCT_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def normalize_state(value: Optional[str]) -> Optional[str]:
    cleaned = _key_text(value)
    if not cleaned:
        return None
    if cleaned in _STATE_ABBRS:
        return cleaned
    abbr = US_STATES.get(cleaned)
    if abbr is None:
        logger.warning("unrecognized state %r kept as given", cleaned)
        return cleaned
    return abbr


def normalize_postal_code(value: Optional[str]) -> str:
    cleaned = normalize_text(value).upper().replace(" ", "")
    m = _ZIP_RE.match(cleaned)
    if m:
        return m.group(1)
    return cleaned


def split_unit(line: str) -> Tuple[str, Optional[str]]:
    """Split a trailing unit/suite qualifier off an upper-cased address line."""

    cleaned = line.rstrip(" ,")
    m = _UNIT_RE.search(cleaned)
    if not m or m.start() == 0:
        return cleaned, None
    return cleaned[: m.start()].rstrip(" ,"), m.group(1)


def normalize_street_line(line: Optional[str]) -> str:
    tokens = _key_text(line).replace("#", " ").split()
    out = []
    for i, token in enumerate(tokens):
        if i == 0:
            out.append(token)
            continue
        out.append(STREET_SUFFIXES.get(token) or DIRECTIONALS.get(token) or token)
    return " ".join(out)


@dataclass(frozen=True)
class NormalizedAddress:
    address_line: str
    city: str
    postal_code: str
    address_line_norm: str
    city_norm: str
    unit: Optional[str] = None
    state_abbr: Optional[str] = None
    county_name: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.address_line_norm, self.city_norm, self.postal_code)


def normalize_address_fields(fields: Mapping[str, object]) -> NormalizedAddress:
    """Canonicalize raw address fields into an identity key plus display values.

    Accepts `line` (or `address_line`), `unit`, `city`, `state` (or
    `state_code` / `state_abbr`), `postal_code` (or `zip`) and `county`
    (or `county_name`). Raises InvalidAddress when the line or postal code is
    empty after normalization.
    """

    raw_line = normalize_text(_first(fields, "line", "address_line"))
    upper_line = normalize_text(_PUNCT_RE.sub("", raw_line.upper()))
    base_line, unit = split_unit(upper_line)
    explicit_unit = _key_text(_first(fields, "unit"))
    if explicit_unit:
        unit = explicit_unit.lstrip("#").strip() or unit

    line_norm = normalize_street_line(base_line)
    postal = normalize_postal_code(_first(fields, "postal_code", "zip"))
    if not line_norm:
        raise InvalidAddress("address line is empty", address_fields=dict(fields))
    if not postal:
        raise InvalidAddress("postal code is empty", address_fields=dict(fields))

    display_line = raw_line
    if unit:
        display_line = _strip_display_unit(raw_line)

    city = normalize_text(_first(fields, "city"))
    county = normalize_text(_first(fields, "county", "county_name")) or None
    return NormalizedAddress(
        address_line=display_line,
        city=city,
        postal_code=postal,
        address_line_norm=line_norm,
        city_norm=_key_text(city),
        unit=unit,
        state_abbr=normalize_state(_first(fields, "state", "state_code", "state_abbr")),
        county_name=county,
    )


normalize = normalize_address_fields


def _first(fields: Mapping[str, object], *names: str) -> Optional[str]:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def _strip_display_unit(raw_line: str) -> str:
    base, found = split_unit(normalize_text(_PUNCT_RE.sub("", raw_line.upper())))
    if found is None:
        return raw_line
    # Keep the caller's casing; only the suffix is cut.
    words = raw_line.split()
    return " ".join(words[: len(base.split())]).rstrip(" ,")


def normalize_timestamp(value: Union[str, datetime, date]) -> str:
    """UTC ISO-8601 with fixed-width microseconds; naive values are taken as UTC.

    The fixed width keeps lexical order equal to time order.
    """

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        raw = (str(value or "")).strip()
        if not raw:
            raise ValueError("timestamp is required")
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)
