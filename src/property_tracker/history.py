"""History Writer: the only path that mutates tracked property state.

Current state is a projection of `property_history`. Each tracked field keeps a
clock (the latest observed_at that asserted a value for it) so that late
observations can be recognized:

* in order (observed_at > clock): a differing value appends a `change` row
  and becomes current;
* tie (observed_at == clock): the value already applied at that instant wins;
  a differing claim takes the late path, so redelivery never reapplies it;
* late (observed_at < clock): current state is kept. If the claim disagrees
  with the value in effect at that time, a `late` row and a compensating
  `restore` row are appended at observed_at, which keeps both the chain law
  and the replay of the log intact. A claim older than the field's first
  history row is recorded against a null in-effect value, so its `restore`
  row carries a null `new_value`.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from property_tracker.errors import SchemaInvariantViolation
from property_tracker.fields import (
    FIELD_ORDER,
    TRACKED_FIELDS,
    coerce_value,
    decode_value,
    encode_value,
    from_column,
    to_column,
)
from property_tracker.models import CommitResult, FieldDelta
from property_tracker.normalize import utc_now_iso
from property_tracker.storage import SQLiteStore

logger = logging.getLogger(__name__)

KIND_CHANGE = "change"
KIND_LATE = "late"
KIND_RESTORE = "restore"


class HistoryWriter:
    def __init__(self, store: SQLiteStore):
        self.store = store

    def apply(
        self,
        property_id: int,
        observed_at: str,
        deltas: Iterable[FieldDelta],
        *,
        observed: Optional[Mapping[str, Any]] = None,
        source_name: Optional[str] = None,
    ) -> CommitResult:
        """Write `deltas` and advance field clocks atomically.

        `observed` carries every value the observation asserted, changed or
        not; unchanged fields still move their clock forward so that a later
        arriving older claim is recognized as late.
        """

        result = CommitResult(property_id=int(property_id), observed_at=observed_at)
        expected_prev: Dict[str, Any] = {}
        claims: Dict[str, Any] = {}
        for delta in deltas:
            expected_prev[delta.field_name] = delta.previous_value
            claims[delta.field_name] = delta.new_value
        for name, value in (observed or {}).items():
            if name in FIELD_ORDER and value is not None:
                claims.setdefault(name, value)
        ordered = sorted(claims, key=FIELD_ORDER.__getitem__)

        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM properties WHERE id=?", (int(property_id),)
            ).fetchone()
            if row is None:
                raise LookupError(f"property {property_id} does not exist")
            if row["halted_at"]:
                raise SchemaInvariantViolation(
                    f"ingestion halted for property {property_id}: {row['halt_reason']}",
                    property_id=int(property_id),
                )

            state = {name: from_column(name, row[name]) for name in TRACKED_FIELDS}
            clock: Dict[str, str] = json.loads(row["field_clock_json"] or "{}")
            recorded_at = utc_now_iso()
            updates: Dict[str, Any] = {}

            for name in ordered:
                incoming = coerce_value(name, claims[name])
                if incoming is None:
                    continue
                current = state[name]
                if name in expected_prev and coerce_value(name, expected_prev[name]) != current:
                    logger.debug(
                        "delta for %s on property %s was computed against stale state; recomputing",
                        name,
                        property_id,
                        extra={"property_id": int(property_id)},
                    )
                field_clock = clock.get(name)

                tie = field_clock is not None and observed_at == field_clock
                if field_clock is None or observed_at > field_clock or (tie and incoming == current):
                    if incoming != current:
                        self._check_chain_tail(int(property_id), name, current)
                        self._insert(
                            int(property_id), observed_at, name,
                            encode_value(name, current), encode_value(name, incoming),
                            KIND_CHANGE, source_name, recorded_at,
                        )
                        state[name] = incoming
                        updates[name] = incoming
                        result.fields_changed.append(name)
                    clock[name] = observed_at
                    continue

                in_effect = self._value_at(int(property_id), name, observed_at)
                claimed = encode_value(name, incoming)
                if in_effect != claimed and not self._late_recorded(int(property_id), name, observed_at, claimed):
                    if in_effect is None:
                        logger.info(
                            "late %s observation for property %s predates its history",
                            name,
                            property_id,
                            extra={"property_id": int(property_id), "observed_at": observed_at},
                        )
                    self._insert(
                        int(property_id), observed_at, name, in_effect, claimed,
                        KIND_LATE, source_name, recorded_at,
                    )
                    self._insert(
                        int(property_id), observed_at, name, claimed, in_effect,
                        KIND_RESTORE, source_name, recorded_at,
                    )
                    result.late_fields.append(name)

            assignments = ["field_clock_json = ?", "last_seen_at = MAX(last_seen_at, ?)"]
            params: List[Any] = [json.dumps(clock, sort_keys=True), observed_at]
            for name, value in updates.items():
                assignments.append(f"{name} = ?")
                params.append(to_column(name, value))
            params.append(int(property_id))
            conn.execute(
                f"UPDATE properties SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
        return result

    def _insert(
        self,
        property_id: int,
        observed_at: str,
        field_name: str,
        previous_value: Optional[str],
        new_value: Optional[str],
        kind: str,
        source_name: Optional[str],
        recorded_at: str,
    ) -> None:
        self.store.conn.execute(
            """
            INSERT INTO property_history (
                property_id,
                observed_at,
                field_name,
                previous_value,
                new_value,
                kind,
                source_name,
                recorded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (property_id, observed_at, field_name, previous_value, new_value, kind, source_name, recorded_at),
        )

    def _chain_tail(self, property_id: int, field_name: str) -> Optional[str]:
        row = self.store.conn.execute(
            """
            SELECT new_value FROM property_history
            WHERE property_id=? AND field_name=?
            ORDER BY observed_at DESC, id DESC
            LIMIT 1
            """,
            (property_id, field_name),
        ).fetchone()
        return row["new_value"] if row else None

    def _check_chain_tail(self, property_id: int, field_name: str, current: Any) -> None:
        tail = self._chain_tail(property_id, field_name)
        expected = encode_value(field_name, current)
        if tail != expected:
            raise SchemaInvariantViolation(
                f"history gap on property {property_id} field {field_name}: "
                f"log ends at {tail!r}, current state is {expected!r}",
                property_id=property_id,
                field_name=field_name,
            )

    def _late_recorded(self, property_id: int, field_name: str, observed_at: str, claimed: str) -> bool:
        row = self.store.conn.execute(
            """
            SELECT 1 FROM property_history
            WHERE property_id=? AND field_name=? AND observed_at=? AND kind=? AND new_value=?
            LIMIT 1
            """,
            (property_id, field_name, observed_at, KIND_LATE, claimed),
        ).fetchone()
        return row is not None

    def _value_at(self, property_id: int, field_name: str, observed_at: str) -> Optional[str]:
        row = self.store.conn.execute(
            """
            SELECT new_value FROM property_history
            WHERE property_id=? AND field_name=? AND observed_at <= ?
            ORDER BY observed_at DESC, id DESC
            LIMIT 1
            """,
            (property_id, field_name, observed_at),
        ).fetchone()
        return row["new_value"] if row else None


def list_history(store: SQLiteStore, property_id: int, field_name: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = """
        SELECT id, property_id, observed_at, field_name, previous_value, new_value,
               kind, source_name, recorded_at
        FROM property_history
        WHERE property_id=?
    """
    params: List[Any] = [int(property_id)]
    if field_name:
        sql += " AND field_name=?"
        params.append(field_name)
    sql += " ORDER BY observed_at, id"
    return [dict(r) for r in store.conn.execute(sql, params).fetchall()]


def replay_history(store: SQLiteStore, property_id: int) -> Dict[str, Any]:
    """Rebuild tracked values by replaying the log in timestamp order."""

    state: Dict[str, Any] = {name: None for name in TRACKED_FIELDS}
    for entry in list_history(store, property_id):
        name = entry["field_name"]
        if name in state:
            state[name] = decode_value(name, entry["new_value"])
    return state


def verify_history(store: SQLiteStore, property_id: int) -> bool:
    """Check the chain law and that the log replays to current state.

    Raises SchemaInvariantViolation on the first inconsistency found.
    """

    row = store.conn.execute(
        "SELECT * FROM properties WHERE id=?", (int(property_id),)
    ).fetchone()
    if row is None:
        raise LookupError(f"property {property_id} does not exist")

    tails: Dict[str, Optional[str]] = {}
    for entry in list_history(store, property_id):
        name = entry["field_name"]
        if name not in tails:
            if entry["previous_value"] is not None:
                raise SchemaInvariantViolation(
                    f"first {name} entry {entry['id']} has a previous value",
                    property_id=int(property_id),
                    field_name=name,
                )
        elif entry["previous_value"] != tails[name]:
            raise SchemaInvariantViolation(
                f"{name} entry {entry['id']} does not continue the chain "
                f"({entry['previous_value']!r} != {tails[name]!r})",
                property_id=int(property_id),
                field_name=name,
            )
        tails[name] = entry["new_value"]

    for name in TRACKED_FIELDS:
        expected = encode_value(name, from_column(name, row[name]))
        if tails.get(name) != expected:
            raise SchemaInvariantViolation(
                f"replay of {name} gives {tails.get(name)!r}, current state is {expected!r}",
                property_id=int(property_id),
                field_name=name,
            )
    return True
