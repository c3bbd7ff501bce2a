import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from property_tracker.config import get_settings
from property_tracker.errors import TransientStoreConflict
from property_tracker.normalize import utc_now_iso


_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def is_transient_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


class SQLiteStore:
    """SQLite persistence for properties, bindings, history and the run ledger.

    One store wraps one connection; concurrent workers each open their own.
    The connection runs in autocommit mode and `transaction()` issues
    BEGIN IMMEDIATE so the write lock is held from the first read.
    """

    def __init__(self, path: str, *, timeout: Optional[float] = None, init_schema: bool = True):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if timeout is None:
            timeout = get_settings().busy_timeout_seconds
        self.conn = sqlite3.connect(str(self.path), timeout=timeout, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._depth = 0
        self.conn.execute("PRAGMA foreign_keys = ON")
        # Readers skip the write lock unless the database has no schema yet.
        if init_schema or not self._has_schema():
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
            except sqlite3.OperationalError as exc:
                if not is_transient_error(exc):
                    raise
            self._init_schema()

    def _has_schema(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='binding_conflicts'"
        ).fetchone()
        return row is not None

    def _init_schema(self) -> None:
        with self.transaction():
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS properties (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    address_line TEXT NOT NULL,
                    address_unit TEXT,
                    city TEXT NOT NULL,
                    state_abbr TEXT,
                    postal_code TEXT NOT NULL,
                    county_name TEXT,
                    address_line_norm TEXT NOT NULL,
                    city_norm TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    status TEXT,
                    list_price INTEGER,
                    sold_price INTEGER,
                    sold_date TEXT,
                    is_pending INTEGER,
                    is_contingent INTEGER,
                    is_new_listing INTEGER,
                    is_foreclosure INTEGER,
                    is_price_reduced INTEGER,
                    is_coming_soon INTEGER,
                    field_clock_json TEXT NOT NULL DEFAULT '{}',
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    halted_at TEXT,
                    halt_reason TEXT,
                    UNIQUE(address_line_norm, city_norm, postal_code)
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_properties_status ON properties(status)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_properties_last_seen ON properties(last_seen_at)"
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS property_sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    property_id INTEGER NOT NULL,
                    source_name TEXT NOT NULL,
                    source_listing_id TEXT NOT NULL,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    last_page_url TEXT,
                    FOREIGN KEY(property_id) REFERENCES properties(id),
                    UNIQUE(source_name, source_listing_id)
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_property_sources_property ON property_sources(property_id)"
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS property_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    property_id INTEGER NOT NULL,
                    observed_at TEXT NOT NULL,
                    field_name TEXT NOT NULL,
                    previous_value TEXT,
                    new_value TEXT,
                    kind TEXT NOT NULL DEFAULT 'change',
                    source_name TEXT,
                    recorded_at TEXT NOT NULL,
                    CHECK (new_value IS NOT NULL OR kind = 'restore'),
                    FOREIGN KEY(property_id) REFERENCES properties(id)
                )
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_property_history_chain
                ON property_history(property_id, field_name, observed_at, id)
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_property_history_observed ON property_history(observed_at)"
            )
            # The history log is append-only.
            self.conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS trg_property_history_no_update
                BEFORE UPDATE ON property_history
                BEGIN
                    SELECT RAISE(ABORT, 'property_history is append-only');
                END
                """
            )
            self.conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS trg_property_history_no_delete
                BEFORE DELETE ON property_history
                BEGIN
                    SELECT RAISE(ABORT, 'property_history is append-only');
                END
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scrape_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    state TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    pages_fetched INTEGER,
                    properties_seen INTEGER,
                    success INTEGER,
                    error_message TEXT
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scrape_run_pages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scrape_run_id INTEGER NOT NULL,
                    page_number INTEGER NOT NULL,
                    page_url TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    properties_found INTEGER NOT NULL DEFAULT 0,
                    recorded_at TEXT NOT NULL,
                    FOREIGN KEY(scrape_run_id) REFERENCES scrape_runs(id),
                    UNIQUE(scrape_run_id, page_number)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS binding_conflicts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_name TEXT NOT NULL,
                    source_listing_id TEXT NOT NULL,
                    bound_property_id INTEGER NOT NULL,
                    incoming_property_id INTEGER NOT NULL,
                    observed_at TEXT NOT NULL,
                    page_url TEXT,
                    raw_json TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    created_at TEXT NOT NULL,
                    resolved_at TEXT,
                    note TEXT,
                    UNIQUE(source_name, source_listing_id, incoming_property_id, observed_at)
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_binding_conflicts_status ON binding_conflicts(status)"
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; nested calls join the outermost one."""

        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return

        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if is_transient_error(exc):
                raise TransientStoreConflict(str(exc)) from exc
            raise
        self._depth = 1
        try:
            yield self.conn
        except sqlite3.OperationalError as exc:
            self._rollback()
            if is_transient_error(exc):
                raise TransientStoreConflict(str(exc)) from exc
            raise
        except BaseException:
            self._rollback()
            raise
        else:
            self._depth = 0
            try:
                self.conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._rollback()
                if is_transient_error(exc):
                    raise TransientStoreConflict(str(exc)) from exc
                raise

    def _rollback(self) -> None:
        self._depth = 0
        if self.conn is not None and self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    def hold_binding_conflict(
        self,
        *,
        source_name: str,
        source_listing_id: str,
        bound_property_id: int,
        incoming_property_id: int,
        observed_at: str,
        page_url: Optional[str],
        raw_payload: Optional[Dict[str, Any]],
    ) -> int:
        with self.transaction():
            cur = self.conn.execute(
                """
                INSERT INTO binding_conflicts (
                    source_name,
                    source_listing_id,
                    bound_property_id,
                    incoming_property_id,
                    observed_at,
                    page_url,
                    raw_json,
                    status,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 'open', ?)
                ON CONFLICT(source_name, source_listing_id, incoming_property_id, observed_at) DO NOTHING
                """,
                (
                    source_name,
                    source_listing_id,
                    int(bound_property_id),
                    int(incoming_property_id),
                    observed_at,
                    page_url,
                    json.dumps(raw_payload or {}, ensure_ascii=True, default=str),
                    utc_now_iso(),
                ),
            )
            if cur.rowcount:
                return int(cur.lastrowid)
            row = self.conn.execute(
                """
                SELECT id FROM binding_conflicts
                WHERE source_name=? AND source_listing_id=? AND incoming_property_id=? AND observed_at=?
                """,
                (source_name, source_listing_id, int(incoming_property_id), observed_at),
            ).fetchone()
            return int(row["id"])

    def list_binding_conflicts(self, *, status: Optional[str] = "open", limit: int = 100) -> List[Dict[str, Any]]:
        lim = max(1, min(int(limit or 100), 1000))
        if status:
            rows = self.conn.execute(
                "SELECT * FROM binding_conflicts WHERE status=? ORDER BY id LIMIT ?",
                (status, lim),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM binding_conflicts ORDER BY id LIMIT ?", (lim,)
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["raw_payload"] = json.loads(d.pop("raw_json") or "{}")
            out.append(d)
        return out

    def mark_conflict_reconciled(self, *, conflict_id: int, note: Optional[str] = None) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                UPDATE binding_conflicts
                SET status='reconciled', resolved_at=?, note=?
                WHERE id=? AND status='open'
                """,
                (utc_now_iso(), note, int(conflict_id)),
            )
            return bool(cur.rowcount and int(cur.rowcount) > 0)

    def halt_property(self, *, property_id: int, reason: str) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                "UPDATE properties SET halted_at=?, halt_reason=? WHERE id=? AND halted_at IS NULL",
                (utc_now_iso(), reason, int(property_id)),
            )
            return bool(cur.rowcount and int(cur.rowcount) > 0)

    def clear_halt(self, *, property_id: int) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                "UPDATE properties SET halted_at=NULL, halt_reason=NULL WHERE id=? AND halted_at IS NOT NULL",
                (int(property_id),),
            )
            return bool(cur.rowcount and int(cur.rowcount) > 0)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
