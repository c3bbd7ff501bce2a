"""Tracked listing fields: the ordered registry, value coercion and text codec.

Every comparison and every history value goes through this module, so `1`,
`"true"` and `True` are the same flag value and `"$300,000"` is the same price
as `300000`.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional

TEXT = "text"
INTEGER = "integer"
DATE = "date"
BOOLEAN = "boolean"

# Order matters: deltas and history rows are emitted in this order.
FIELD_TYPES: Dict[str, str] = {
    "status": TEXT,
    "list_price": INTEGER,
    "sold_price": INTEGER,
    "sold_date": DATE,
    "is_pending": BOOLEAN,
    "is_contingent": BOOLEAN,
    "is_new_listing": BOOLEAN,
    "is_foreclosure": BOOLEAN,
    "is_price_reduced": BOOLEAN,
    "is_coming_soon": BOOLEAN,
}
TRACKED_FIELDS = tuple(FIELD_TYPES)
FIELD_ORDER = {name: i for i, name in enumerate(TRACKED_FIELDS)}

_TRUE = {"1", "true", "t", "yes", "y", "on"}
_FALSE = {"0", "false", "f", "no", "n", "off"}
_MONEY_STRIP_RE = re.compile(r"[\s$,_]")
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"not a boolean: {value!r}")
    text = str(value).strip().lower()
    if not text:
        return None
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        raise ValueError(f"not an integer amount: {value!r}")
    if isinstance(value, int):
        return _in_range(value)
    if isinstance(value, float):
        if value != value or not value.is_integer():
            raise ValueError(f"not an integer amount: {value!r}")
        return _in_range(int(value))
    text = _MONEY_STRIP_RE.sub("", str(value))
    if not text:
        return None
    try:
        parsed = int(text)
    except ValueError:
        as_float = float(text)
        if not as_float.is_integer():
            raise ValueError(f"not an integer amount: {value!r}")
        parsed = int(as_float)
    return _in_range(parsed)


def _in_range(value: int) -> int:
    # SQLite INTEGER is signed 64-bit.
    if not INT64_MIN <= value <= INT64_MAX:
        raise ValueError(f"integer amount out of range: {value!r}")
    return value


def _coerce_date(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        dt = value if value.tzinfo is None else value.astimezone(timezone.utc)
        return dt.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10:
        return date.fromisoformat(text).isoformat()
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date().isoformat()


def _coerce_text(value: Any) -> Optional[str]:
    text = re.sub(r"\s+", "_", str(value).strip().lower())
    return text or None


_COERCERS = {
    TEXT: _coerce_text,
    INTEGER: _coerce_int,
    DATE: _coerce_date,
    BOOLEAN: _coerce_bool,
}


def coerce_value(field_name: str, value: Any) -> Any:
    """Normalize a raw value for `field_name`; None/empty means unknown.

    Raises KeyError for an unknown field and ValueError for a value that
    cannot be read as the field's type.
    """

    kind = FIELD_TYPES[field_name]
    if value is None:
        return None
    return _COERCERS[kind](value)


def coerce_fields(fields: Mapping[str, Any], *, strict: bool = False) -> Dict[str, Any]:
    """Coerce the known tracked fields of an observation, dropping unknowns.

    With `strict`, unknown names raise KeyError instead of being dropped.
    """

    out: Dict[str, Any] = {}
    for name, raw in fields.items():
        if name not in FIELD_TYPES:
            if strict:
                raise KeyError(name)
            continue
        out[name] = coerce_value(name, raw)
    return out


def encode_value(field_name: str, value: Any) -> Optional[str]:
    value = coerce_value(field_name, value)
    if value is None:
        return None
    if FIELD_TYPES[field_name] == BOOLEAN:
        return "true" if value else "false"
    return str(value)


def decode_value(field_name: str, text: Optional[str]) -> Any:
    if text is None:
        return None
    return coerce_value(field_name, text)


def to_column(field_name: str, value: Any) -> Any:
    """Python value -> SQLite column value (booleans as 0/1)."""

    if value is None:
        return None
    if FIELD_TYPES[field_name] == BOOLEAN:
        return 1 if value else 0
    return value


def from_column(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    return coerce_value(field_name, value)
