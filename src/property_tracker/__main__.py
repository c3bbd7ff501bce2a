from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from property_tracker.config import get_settings
from property_tracker.engine import IngestEngine
from property_tracker.errors import SchemaInvariantViolation, TrackerError
from property_tracker.feeds import changed_since, change_events, write_change_events_csv
from property_tracker.history import verify_history
from property_tracker.ledger import ScrapeRunLedger
from property_tracker.log import configure_logging
from property_tracker.models import BatchReport, Observation
from property_tracker.payload import observation_from_payload
from property_tracker.storage import SQLiteStore


def dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, default=str) + "\n"


def _read_lines(path: str) -> Iterator[Dict[str, Any]]:
    fh = sys.stdin if path == "-" else open(path, "r", encoding="utf-8")
    try:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                raise SystemExit(f"{path}:{lineno}: invalid JSON: {exc}")
    finally:
        if fh is not sys.stdin:
            fh.close()


def _observation_from_line(
    item: Dict[str, Any], raw: bool, observed_at: Optional[str], page_url: Optional[str]
) -> Observation:
    if raw:
        when = observed_at or item.get("observed_at")
        return observation_from_payload(item, when, page_url=page_url)
    return Observation(
        source_name=item.get("source_name") or "",
        source_listing_id=str(item.get("source_listing_id") or ""),
        address_fields=dict(item.get("address") or {}),
        tracked_fields=dict(item.get("fields") or {}),
        observed_at=item.get("observed_at") or observed_at,
        page_url=item.get("page_url") or page_url,
        raw_payload=item,
    )


def _cmd_ingest(args: argparse.Namespace, store: SQLiteStore) -> int:
    engine = IngestEngine(store)
    observations: List[Observation] = []
    report = BatchReport()
    for index, item in enumerate(_read_lines(args.file)):
        try:
            observations.append(_observation_from_line(item, args.raw, args.observed_at, args.page_url))
        except TrackerError as exc:
            report.failures.append(
                {"index": index, "error": type(exc).__name__, "message": str(exc), "retryable": False}
            )

    run_id = args.run_id
    ledger = ScrapeRunLedger(store)
    if run_id is None and args.run_state:
        run_id = ledger.start_run(args.run_state)

    if run_id is None:
        batch = engine.ingest_batch(observations)
    else:
        page = args.page or ledger.resume_point(run_id)
        batch = engine.ingest_page(ledger, run_id, page, args.page_url or args.file, observations)
    report.results.extend(batch.results)
    report.failures.extend(batch.failures)

    out = report.to_dict()
    if run_id is not None:
        out["run_id"] = run_id
        if args.finish:
            out["run"] = ledger.finish_run(run_id, success=not report.failures).to_dict()
    print(dumps(out), end="")
    return 0 if not report.failures else 1


def _cmd_changes(args: argparse.Namespace, store: SQLiteStore) -> int:
    fields = [f.strip() for f in (args.fields or "status,list_price").split(",") if f.strip()]
    try:
        rows = changed_since(store, args.since, fields, limit=args.limit)
    except ValueError as exc:
        print(f"bad --since {args.since!r}: {exc}", file=sys.stderr)
        return 2
    for row in rows:
        print(dumps(row), end="")
    return 0


def _cmd_export_changes(args: argparse.Namespace, store: SQLiteStore) -> int:
    events = change_events(store, args.state, args.year)
    if args.out:
        out_path = Path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with out_path.open("w", newline="", encoding="utf-8") as fh:
            count = write_change_events_csv(events, fh)
    else:
        count = write_change_events_csv(events, sys.stdout)
    print(f"exported {count} change events", file=sys.stderr)
    return 0


def _cmd_runs(args: argparse.Namespace, store: SQLiteStore) -> int:
    runs = ScrapeRunLedger(store).recent_runs(args.limit)
    print(dumps({"runs": [r.to_dict() for r in runs]}), end="")
    return 0


def _cmd_resume(args: argparse.Namespace, store: SQLiteStore) -> int:
    try:
        summary = ScrapeRunLedger(store).summary(args.run_id)
    except LookupError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(dumps(summary), end="")
    return 0


def _cmd_verify(args: argparse.Namespace, store: SQLiteStore) -> int:
    if args.property_id is not None:
        ids = [args.property_id]
    else:
        ids = [int(r["id"]) for r in store.conn.execute("SELECT id FROM properties ORDER BY id")]
    problems = []
    for property_id in ids:
        try:
            verify_history(store, property_id)
        except SchemaInvariantViolation as exc:
            problems.append({"property_id": property_id, "field_name": exc.field_name, "error": str(exc)})
        except LookupError as exc:
            problems.append({"property_id": property_id, "field_name": None, "error": str(exc)})
    print(dumps({"checked": len(ids), "problems": problems}), end="")
    return 0 if not problems else 3


def _cmd_conflicts(args: argparse.Namespace, store: SQLiteStore) -> int:
    if args.reconcile is not None:
        ok = store.mark_conflict_reconciled(conflict_id=args.reconcile, note=args.note)
        print(dumps({"reconciled": ok, "conflict_id": args.reconcile}), end="")
        return 0 if ok else 2
    status = None if args.status == "all" else args.status
    print(dumps({"conflicts": store.list_binding_conflicts(status=status, limit=args.limit)}), end="")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="property_tracker")
    parser.add_argument("--db", default=None, help="SQLite DB path (default: PT_SQLITE_PATH)")
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, etc.)")
    parser.add_argument("--log-json", action="store_true", default=None, help="Emit JSON-lines logs")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="Create the schema and exit")

    p_ingest = sub.add_parser("ingest", help="Ingest observations from a JSON-lines file")
    p_ingest.add_argument("file", help="JSON-lines file, or - for stdin")
    p_ingest.add_argument("--raw", action="store_true", help="Lines are raw scraper listing payloads")
    p_ingest.add_argument("--observed-at", default=None, help="Observation time for lines that carry none")
    p_ingest.add_argument("--page-url", default=None)
    p_ingest.add_argument("--run-state", default=None, help="Start a scrape run for this state")
    p_ingest.add_argument("--run-id", type=int, default=None, help="Record into an existing scrape run")
    p_ingest.add_argument("--page", type=int, default=None, help="Page number (default: run resume point)")
    p_ingest.add_argument("--finish", action="store_true", help="Finish the run after this page")

    p_changes = sub.add_parser("changes", help="Print the change feed as JSON lines")
    p_changes.add_argument("--since", required=True)
    p_changes.add_argument("--fields", default=None, help="Comma-separated tracked fields")
    p_changes.add_argument("--limit", type=int, default=1000)

    p_export = sub.add_parser("export-changes", help="Export status/price change events as CSV")
    p_export.add_argument("--state", required=True)
    p_export.add_argument("--year", type=int, required=True)
    p_export.add_argument("--out", default=None)

    p_runs = sub.add_parser("runs", help="List recent scrape runs")
    p_runs.add_argument("--limit", type=int, default=50)

    p_resume = sub.add_parser("resume", help="Show where an interrupted run should resume")
    p_resume.add_argument("run_id", type=int)

    p_verify = sub.add_parser("verify", help="Check history chains against current state")
    p_verify.add_argument("--property-id", type=int, default=None)

    p_conflicts = sub.add_parser("conflicts", help="List or reconcile held binding conflicts")
    p_conflicts.add_argument("--status", default="open", help="open, reconciled or all")
    p_conflicts.add_argument("--limit", type=int, default=100)
    p_conflicts.add_argument("--reconcile", type=int, default=None, help="Conflict id to mark reconciled")
    p_conflicts.add_argument("--note", default=None)

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(
        args.log_level or settings.log_level,
        json_lines=settings.log_json if args.log_json is None else bool(args.log_json),
    )

    store = SQLiteStore(args.db or settings.sqlite_path)
    try:
        if args.cmd == "init-db":
            print(dumps({"ok": True, "db": str(store.path)}), end="")
            return 0
        handlers = {
            "ingest": _cmd_ingest,
            "changes": _cmd_changes,
            "export-changes": _cmd_export_changes,
            "runs": _cmd_runs,
            "resume": _cmd_resume,
            "verify": _cmd_verify,
            "conflicts": _cmd_conflicts,
        }
        return handlers[args.cmd](args, store)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
