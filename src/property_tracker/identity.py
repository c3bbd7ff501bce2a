import logging
from typing import Any, Dict, List, Optional, Tuple

from property_tracker.errors import BindingConflict
from property_tracker.fields import TRACKED_FIELDS, from_column
from property_tracker.models import SourceBinding
from property_tracker.normalize import NormalizedAddress, normalize_text
from property_tracker.storage import SQLiteStore

logger = logging.getLogger(__name__)


class PropertyResolver:
    """Finds or creates the canonical property row for a normalized address."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def find(self, address: NormalizedAddress) -> Optional[int]:
        row = self.store.conn.execute(
            """
            SELECT id FROM properties
            WHERE address_line_norm=? AND city_norm=? AND postal_code=?
            """,
            address.key,
        ).fetchone()
        return int(row["id"]) if row else None

    def resolve_or_create(
        self,
        address: NormalizedAddress,
        observed_at: str,
        geocode: Optional[Tuple[float, float]] = None,
    ) -> Tuple[int, bool]:
        lat, lon = (geocode or (None, None))[:2]
        with self.store.transaction() as conn:
            # Insert first and let the unique key arbitrate concurrent creators.
            cur = conn.execute(
                """
                INSERT INTO properties (
                    address_line,
                    address_unit,
                    city,
                    state_abbr,
                    postal_code,
                    county_name,
                    address_line_norm,
                    city_norm,
                    latitude,
                    longitude,
                    first_seen_at,
                    last_seen_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(address_line_norm, city_norm, postal_code) DO NOTHING
                """,
                (
                    address.address_line,
                    address.unit,
                    address.city,
                    address.state_abbr,
                    address.postal_code,
                    address.county_name,
                    address.address_line_norm,
                    address.city_norm,
                    lat,
                    lon,
                    observed_at,
                    observed_at,
                ),
            )
            created = bool(cur.rowcount and int(cur.rowcount) == 1)
            property_id = self.find(address)
            if property_id is None:
                raise LookupError(f"property vanished after insert: {address.key}")
            if not created:
                conn.execute(
                    """
                    UPDATE properties SET
                        last_seen_at = MAX(last_seen_at, ?),
                        first_seen_at = MIN(first_seen_at, ?),
                        latitude = COALESCE(latitude, ?),
                        longitude = COALESCE(longitude, ?),
                        state_abbr = COALESCE(state_abbr, ?),
                        county_name = COALESCE(county_name, ?)
                    WHERE id = ?
                    """,
                    (
                        observed_at,
                        observed_at,
                        lat,
                        lon,
                        address.state_abbr,
                        address.county_name,
                        property_id,
                    ),
                )
        if created:
            logger.info(
                "created property %s for %s",
                property_id,
                "|".join(address.key),
                extra={"property_id": property_id, "created": True},
            )
        return property_id, created

    def get_row(self, property_id: int) -> Optional[Dict[str, Any]]:
        row = self.store.conn.execute(
            "SELECT * FROM properties WHERE id=?", (int(property_id),)
        ).fetchone()
        return dict(row) if row else None

    def current_state(self, property_id: int) -> Dict[str, Any]:
        row = self.get_row(property_id)
        if row is None:
            raise LookupError(f"property {property_id} does not exist")
        return {name: from_column(name, row[name]) for name in TRACKED_FIELDS}


class SourceBinder:
    """Maintains the many-bindings-to-one-property relation.

    A binding is never repointed: a pair already bound elsewhere raises
    BindingConflict and the stored binding is left as it was.
    """

    def __init__(self, store: SQLiteStore):
        self.store = store

    def bind_source(
        self,
        property_id: int,
        source_name: str,
        source_listing_id: str,
        observed_at: str,
        page_url: Optional[str] = None,
    ) -> SourceBinding:
        source = normalize_text(source_name).lower()
        listing_id = normalize_text(source_listing_id)
        if not source or not listing_id:
            raise ValueError("source_name and source_listing_id are required")
        with self.store.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO property_sources (
                    property_id,
                    source_name,
                    source_listing_id,
                    first_seen_at,
                    last_seen_at,
                    last_page_url
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_name, source_listing_id) DO NOTHING
                """,
                (int(property_id), source, listing_id, observed_at, observed_at, page_url),
            )
            created = bool(cur.rowcount and int(cur.rowcount) == 1)
            row = conn.execute(
                """
                SELECT property_id FROM property_sources
                WHERE source_name=? AND source_listing_id=?
                """,
                (source, listing_id),
            ).fetchone()
            bound_to = int(row["property_id"])
            if bound_to != int(property_id):
                raise BindingConflict(source, listing_id, bound_to, int(property_id))
            if not created:
                conn.execute(
                    """
                    UPDATE property_sources SET
                        last_seen_at = MAX(last_seen_at, ?),
                        first_seen_at = MIN(first_seen_at, ?),
                        last_page_url = CASE
                            WHEN ? IS NOT NULL AND ? >= last_seen_at THEN ?
                            ELSE last_page_url
                        END
                    WHERE source_name=? AND source_listing_id=?
                    """,
                    (observed_at, observed_at, page_url, observed_at, page_url, source, listing_id),
                )
            row = conn.execute(
                """
                SELECT * FROM property_sources
                WHERE source_name=? AND source_listing_id=?
                """,
                (source, listing_id),
            ).fetchone()
        return SourceBinding(
            property_id=int(row["property_id"]),
            source_name=row["source_name"],
            source_listing_id=row["source_listing_id"],
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            created=created,
        )

    def bindings_for(self, property_id: int) -> List[Dict[str, Any]]:
        rows = self.store.conn.execute(
            """
            SELECT source_name, source_listing_id, first_seen_at, last_seen_at, last_page_url
            FROM property_sources
            WHERE property_id=?
            ORDER BY first_seen_at, id
            """,
            (int(property_id),),
        ).fetchall()
        return [dict(r) for r in rows]
