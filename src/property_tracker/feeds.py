"""Read side: property lookup, the mailing change feed and change-event export.

Everything here reads the store; nothing writes.
"""

from __future__ import annotations

import csv
from dataclasses import asdict, fields as dc_fields
from typing import Any, Dict, Iterable, List, Optional, Sequence, TextIO

from property_tracker.fields import TRACKED_FIELDS, from_column
from property_tracker.history import KIND_CHANGE, list_history
from property_tracker.identity import SourceBinder
from property_tracker.models import ChangeEvent
from property_tracker.normalize import normalize_state, normalize_timestamp
from property_tracker.storage import SQLiteStore

DEFAULT_FEED_FIELDS = ("status", "list_price")
ACTIVE_STATUSES = {"for_sale", "ready_to_build", "for_rent"}


def neutralize_csv_field(value: Any) -> str:
    """Prefix spreadsheet formula triggers so exported cells stay inert."""

    text = "" if value is None else str(value)
    if text.startswith(("=", "+", "-", "@")):
        return "'" + text
    return text


def derive_canonical_status(
    sold_date: Optional[str],
    is_pending: bool,
    is_contingent: bool,
    is_coming_soon: bool,
    raw_status: Optional[str],
) -> str:
    if sold_date:
        return "Sold"
    if is_pending:
        return "Pending"
    if is_contingent:
        return "Contingent"
    if is_coming_soon:
        return "Coming Soon"
    if raw_status in ACTIVE_STATUSES:
        return "Active"
    return "Other"


def _state_from_row(row: Any) -> Dict[str, Any]:
    return {name: from_column(name, row[name]) for name in TRACKED_FIELDS}


def get_property(store: SQLiteStore, property_id: int) -> Optional[Dict[str, Any]]:
    row = store.conn.execute(
        "SELECT * FROM properties WHERE id=?", (int(property_id),)
    ).fetchone()
    if row is None:
        return None
    state = _state_from_row(row)
    return {
        "id": int(row["id"]),
        "address": {
            "line": row["address_line"],
            "unit": row["address_unit"],
            "city": row["city"],
            "state": row["state_abbr"],
            "postal_code": row["postal_code"],
            "county": row["county_name"],
        },
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "state": state,
        "canonical_status": derive_canonical_status(
            state["sold_date"],
            bool(state["is_pending"]),
            bool(state["is_contingent"]),
            bool(state["is_coming_soon"]),
            state["status"],
        ),
        "first_seen_at": row["first_seen_at"],
        "last_seen_at": row["last_seen_at"],
        "halted_at": row["halted_at"],
        "halt_reason": row["halt_reason"],
        "sources": SourceBinder(store).bindings_for(int(row["id"])),
    }


def property_history(store: SQLiteStore, property_id: int, field_name: Optional[str] = None) -> List[Dict[str, Any]]:
    return list_history(store, property_id, field_name)


def changed_since(
    store: SQLiteStore,
    since: Any,
    fields: Sequence[str] = DEFAULT_FEED_FIELDS,
    *,
    limit: int = 1000,
) -> List[Dict[str, Any]]:
    """Mailing feed: value changes observed at or after `since`.

    Only `change` rows are listed; late/restore pairs never moved current state.
    """

    wanted = [f for f in (fields or DEFAULT_FEED_FIELDS) if f in TRACKED_FIELDS]
    if not wanted:
        return []
    lim = max(1, min(int(limit or 1000), 10000))
    placeholders = ",".join("?" for _ in wanted)
    rows = store.conn.execute(
        f"""
        SELECT
            h.id AS history_id,
            h.property_id,
            h.observed_at,
            h.field_name,
            h.previous_value,
            h.new_value,
            h.source_name,
            p.address_line,
            p.city,
            p.state_abbr,
            p.postal_code,
            p.county_name
        FROM property_history h
        JOIN properties p ON p.id = h.property_id
        WHERE h.kind = ?
          AND h.observed_at >= ?
          AND h.field_name IN ({placeholders})
        ORDER BY h.observed_at, h.id
        LIMIT ?
        """,
        [KIND_CHANGE, normalize_timestamp(since), *wanted, lim],
    ).fetchall()
    return [dict(r) for r in rows]


def change_events(store: SQLiteStore, state_abbr: str, year: int) -> List[ChangeEvent]:
    """Status and price changes in one state and year, newest first."""

    rows = store.conn.execute(
        """
        SELECT
            h.observed_at,
            h.field_name,
            h.previous_value,
            h.new_value,
            p.address_line,
            p.city,
            p.state_abbr,
            p.postal_code,
            p.county_name,
            p.list_price,
            p.sold_date,
            p.status AS raw_status,
            p.is_pending,
            p.is_contingent,
            p.is_coming_soon,
            p.is_new_listing,
            p.is_price_reduced,
            p.is_foreclosure
        FROM property_history h
        JOIN properties p ON h.property_id = p.id
        WHERE p.state_abbr = ?
          AND substr(h.observed_at, 1, 4) = ?
          AND h.kind = ?
          AND h.field_name IN ('status', 'list_price')
        ORDER BY h.observed_at DESC, h.id DESC
        """,
        (normalize_state(state_abbr), f"{int(year):04d}", KIND_CHANGE),
    ).fetchall()

    events = []
    for r in rows:
        current_status = derive_canonical_status(
            r["sold_date"],
            bool(r["is_pending"]),
            bool(r["is_contingent"]),
            bool(r["is_coming_soon"]),
            r["raw_status"],
        )
        price_reduction = None
        if r["field_name"] == "status":
            change_type = "Status Change"
            # Flags are not known as of the previous row, only the raw status.
            previous = derive_canonical_status(None, False, False, False, r["previous_value"])
            current = current_status
        else:
            change_type = "Price Change"
            previous = r["previous_value"] or ""
            current = r["new_value"]
            if r["previous_value"] is not None:
                price_reduction = int(r["previous_value"]) - int(r["new_value"])

        events.append(
            ChangeEvent(
                change_date=r["observed_at"],
                change_type=change_type,
                previous_value=previous,
                current_value=current,
                address_full=f"{r['address_line']}, {r['city']}, {r['state_abbr'] or ''} {r['postal_code']}",
                address_line=r["address_line"],
                city=r["city"],
                postal_code=r["postal_code"],
                county_name=r["county_name"],
                state_abbr=r["state_abbr"],
                price=r["list_price"],
                canonical_status=current_status,
                is_ready_to_build=r["raw_status"] == "ready_to_build",
                is_new_listing=bool(r["is_new_listing"]),
                is_price_reduced=bool(r["is_price_reduced"]),
                is_foreclosure=bool(r["is_foreclosure"]),
                price_reduction=price_reduction,
            )
        )
    return events


def distinct_change_years(store: SQLiteStore) -> List[str]:
    rows = store.conn.execute(
        """
        SELECT DISTINCT substr(observed_at, 1, 4) AS year
        FROM property_history
        ORDER BY year DESC
        """
    ).fetchall()
    return [r["year"] for r in rows if r["year"]]


def price_trend(store: SQLiteStore, property_id: int) -> Optional[str]:
    """'reduced' / 'increased' from the last list_price change, None if never changed."""

    row = store.conn.execute(
        """
        SELECT previous_value, new_value FROM property_history
        WHERE property_id=? AND field_name='list_price' AND kind=?
          AND previous_value IS NOT NULL
        ORDER BY observed_at DESC, id DESC
        LIMIT 1
        """,
        (int(property_id), KIND_CHANGE),
    ).fetchone()
    if row is None:
        return None
    prev, new = int(row["previous_value"]), int(row["new_value"])
    if new < prev:
        return "reduced"
    if new > prev:
        return "increased"
    return None


CSV_COLUMNS = [f.name for f in dc_fields(ChangeEvent)]


def write_change_events_csv(events: Iterable[ChangeEvent], fh: TextIO) -> int:
    writer = csv.writer(fh)
    writer.writerow(CSV_COLUMNS)
    count = 0
    for event in events:
        data = asdict(event)
        row = []
        for col in CSV_COLUMNS:
            value = data[col]
            if isinstance(value, bool):
                row.append("true" if value else "false")
            elif isinstance(value, int):
                # Numbers are written raw; a negative reduction is not a formula.
                row.append(str(value))
            else:
                row.append(neutralize_csv_field(value))
        writer.writerow(row)
        count += 1
    return count
