from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from property_tracker.models import ScrapeRun, ScrapeRunPage
from property_tracker.normalize import normalize_timestamp, utc_now_iso
from property_tracker.storage import SQLiteStore

logger = logging.getLogger(__name__)


def _opt_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


class ScrapeRunLedger:
    """Run/page bookkeeping for scrape batches, used to resume interrupted runs."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def start_run(self, state: Optional[str], started_at: Optional[str] = None) -> int:
        started = normalize_timestamp(started_at) if started_at else utc_now_iso()
        with self.store.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO scrape_runs (state, started_at, success) VALUES (?, ?, 0)",
                ((state or "").strip().upper() or None, started),
            )
            run_id = int(cur.lastrowid)
        logger.info("scrape run %s started", run_id, extra={"run_id": run_id})
        return run_id

    def record_page(
        self,
        run_id: int,
        page_number: int,
        url: str,
        success: bool,
        properties_found: int = 0,
    ) -> None:
        """Upsert a page outcome; re-recording the same outcome changes nothing."""

        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO scrape_run_pages (
                    scrape_run_id,
                    page_number,
                    page_url,
                    success,
                    properties_found,
                    recorded_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(scrape_run_id, page_number) DO UPDATE SET
                    page_url=excluded.page_url,
                    success=excluded.success,
                    properties_found=excluded.properties_found,
                    recorded_at=excluded.recorded_at
                WHERE page_url IS NOT excluded.page_url
                   OR success IS NOT excluded.success
                   OR properties_found IS NOT excluded.properties_found
                """,
                (
                    int(run_id),
                    int(page_number),
                    url or "",
                    1 if success else 0,
                    max(0, int(properties_found or 0)),
                    utc_now_iso(),
                ),
            )

    def finish_run(
        self,
        run_id: int,
        success: bool,
        error_message: Optional[str] = None,
        finished_at: Optional[str] = None,
    ) -> ScrapeRun:
        finished = normalize_timestamp(finished_at) if finished_at else utc_now_iso()
        with self.store.transaction() as conn:
            agg = conn.execute(
                """
                SELECT
                    COUNT(*) AS pages,
                    COALESCE(SUM(properties_found), 0) AS props,
                    COALESCE(MIN(success), 1) AS all_ok
                FROM scrape_run_pages
                WHERE scrape_run_id=?
                """,
                (int(run_id),),
            ).fetchone()
            run_ok = bool(success) and bool(agg["all_ok"])
            cur = conn.execute(
                """
                UPDATE scrape_runs
                SET finished_at = ?,
                    pages_fetched = ?,
                    properties_seen = ?,
                    success = ?,
                    error_message = ?
                WHERE id = ?
                """,
                (finished, int(agg["pages"]), int(agg["props"]), 1 if run_ok else 0, error_message, int(run_id)),
            )
            if not cur.rowcount:
                raise LookupError(f"scrape run {run_id} does not exist")
        run = self.get_run(run_id)
        logger.info(
            "scrape run %s finished success=%s pages=%s properties=%s",
            run_id,
            run.success,
            run.pages_fetched,
            run.properties_seen,
            extra={"run_id": int(run_id)},
        )
        return run

    def get_run(self, run_id: int) -> Optional[ScrapeRun]:
        row = self.store.conn.execute(
            "SELECT * FROM scrape_runs WHERE id=?", (int(run_id),)
        ).fetchone()
        return self._run_from_row(row) if row else None

    def recent_runs(self, limit: int = 50) -> List[ScrapeRun]:
        lim = max(1, min(int(limit or 50), 500))
        rows = self.store.conn.execute(
            "SELECT * FROM scrape_runs ORDER BY started_at DESC, id DESC LIMIT ?",
            (lim,),
        ).fetchall()
        return [self._run_from_row(r) for r in rows]

    def run_pages(self, run_id: int) -> List[ScrapeRunPage]:
        rows = self.store.conn.execute(
            """
            SELECT scrape_run_id, page_number, page_url, success, properties_found
            FROM scrape_run_pages
            WHERE scrape_run_id=?
            ORDER BY page_number
            """,
            (int(run_id),),
        ).fetchall()
        return [
            ScrapeRunPage(
                scrape_run_id=int(r["scrape_run_id"]),
                page_number=int(r["page_number"]),
                page_url=r["page_url"],
                success=bool(r["success"]),
                properties_found=int(r["properties_found"] or 0),
            )
            for r in rows
        ]

    def failed_pages(self, run_id: int) -> List[int]:
        return [p.page_number for p in self.run_pages(run_id) if not p.success]

    def resume_point(self, run_id: int) -> int:
        """First page to fetch when resuming: after the contiguous successes from page 1."""

        next_page = 1
        for page in self.run_pages(run_id):
            if page.page_number != next_page or not page.success:
                break
            next_page += 1
        return next_page

    @staticmethod
    def _run_from_row(row) -> ScrapeRun:
        return ScrapeRun(
            id=int(row["id"]),
            state=row["state"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            pages_fetched=row["pages_fetched"],
            properties_seen=row["properties_seen"],
            success=_opt_bool(row["success"]) if row["finished_at"] else None,
            error_message=row["error_message"],
        )

    def summary(self, run_id: int) -> Dict[str, Any]:
        run = self.get_run(run_id)
        if run is None:
            raise LookupError(f"scrape run {run_id} does not exist")
        out = run.to_dict()
        out["resume_page"] = self.resume_point(run_id)
        out["failed_pages"] = self.failed_pages(run_id)
        return out
