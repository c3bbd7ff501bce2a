import csv
import io
import json
import logging
import os
import subprocess
import sys
from pathlib import Path

import pytest

from property_tracker.__main__ import main

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def reset_cli_logging():
    yield
    logger = logging.getLogger("property_tracker")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def _write_jsonl(path, items):
    path.write_text("\n".join(json.dumps(i) for i in items) + "\n", encoding="utf-8")
    return str(path)


def _obs(listing_id, status, price, observed_at, line="12 Oak St", postal_code="84601"):
    return {
        "source_name": "realtor",
        "source_listing_id": listing_id,
        "address": {"line": line, "city": "Provo", "state": "UT", "postal_code": postal_code},
        "fields": {"status": status, "list_price": price},
        "observed_at": observed_at,
    }


def _run(capsys, argv):
    code = main(argv)
    out = capsys.readouterr().out
    return code, out


def test_ingest_and_changes(tmp_path, db_path, capsys):
    feed = _write_jsonl(
        tmp_path / "obs.jsonl",
        [
            _obs("R1", "for_sale", 300000, "2024-03-01T10:00:00Z"),
            _obs("R1", "pending", 300000, "2024-03-02T10:00:00Z"),
        ],
    )
    code, out = _run(capsys, ["--db", db_path, "ingest", feed])
    assert code == 0
    summary = json.loads(out)
    assert summary["ingested"] == 2
    assert summary["created"] == 1
    assert summary["failures"] == []

    code, out = _run(capsys, ["--db", db_path, "changes", "--since", "2024-03-02T00:00:00Z"])
    assert code == 0
    rows = [json.loads(line) for line in out.splitlines()]
    assert [(r["field_name"], r["previous_value"], r["new_value"]) for r in rows] == [
        ("status", "for_sale", "pending")
    ]


def test_ingest_reports_failures(tmp_path, db_path, capsys):
    feed = _write_jsonl(
        tmp_path / "obs.jsonl",
        [_obs("R1", "for_sale", 300000, "2024-03-01T10:00:00Z", line="")],
    )
    code, out = _run(capsys, ["--db", db_path, "ingest", feed])
    assert code == 1
    assert json.loads(out)["failures"][0]["error"] == "InvalidAddress"


def test_ingest_raw_payloads_into_a_run(tmp_path, db_path, capsys):
    payload = {
        "source": {"name": "realtor", "listing_id": "R1"},
        "location": {"address": {"line": "12 Oak St", "city": "Provo", "state_code": "UT", "postal_code": "84601"}},
        "status": "for_sale",
        "list_price": 300000,
    }
    feed = _write_jsonl(tmp_path / "raw.jsonl", [payload])
    code, out = _run(
        capsys,
        [
            "--db", db_path,
            "ingest", feed,
            "--raw",
            "--observed-at", "2024-03-01T10:00:00Z",
            "--run-state", "UT",
            "--page-url", "https://example.test/p1",
            "--finish",
        ],
    )
    assert code == 0
    summary = json.loads(out)
    assert summary["run"]["success"] is True
    assert summary["run"]["pages_fetched"] == 1

    code, out = _run(capsys, ["--db", db_path, "resume", str(summary["run_id"])])
    assert code == 0
    assert json.loads(out)["resume_page"] == 2

    code, out = _run(capsys, ["--db", db_path, "runs"])
    assert [r["id"] for r in json.loads(out)["runs"]] == [summary["run_id"]]


def test_changes_rejects_bad_since(db_path, capsys):
    code = main(["--db", db_path, "changes", "--since", "yesterday"])
    captured = capsys.readouterr()
    assert code == 2
    assert captured.out == ""
    assert "bad --since" in captured.err


def test_verify_and_export(tmp_path, db_path, capsys):
    feed = _write_jsonl(
        tmp_path / "obs.jsonl",
        [
            _obs("R1", "for_sale", 300000, "2024-03-01T10:00:00Z"),
            _obs("R1", "for_sale", 280000, "2024-04-01T10:00:00Z"),
        ],
    )
    _run(capsys, ["--db", db_path, "ingest", feed])

    code, out = _run(capsys, ["--db", db_path, "verify"])
    assert code == 0
    assert json.loads(out) == {"checked": 1, "problems": []}

    out_path = tmp_path / "exports" / "changes.csv"
    code, _ = _run(capsys, ["--db", db_path, "export-changes", "--state", "UT", "--year", "2024", "--out", str(out_path)])
    assert code == 0
    rows = list(csv.DictReader(io.StringIO(out_path.read_text(encoding="utf-8"))))
    assert rows[0]["change_type"] == "Price Change"
    assert rows[0]["price_reduction"] == "20000"


def test_conflicts_listing_and_reconcile(tmp_path, db_path, capsys):
    feed = _write_jsonl(
        tmp_path / "obs.jsonl",
        [
            _obs("R1", "for_sale", 300000, "2024-03-01T10:00:00Z"),
            _obs("R1", "for_sale", 300000, "2024-03-02T10:00:00Z", line="99 Elm Ave", postal_code="84604"),
        ],
    )
    code, out = _run(capsys, ["--db", db_path, "ingest", feed])
    assert code == 1
    assert json.loads(out)["failures"][0]["error"] == "BindingConflict"

    code, out = _run(capsys, ["--db", db_path, "conflicts"])
    conflicts = json.loads(out)["conflicts"]
    assert len(conflicts) == 1

    code, out = _run(capsys, ["--db", db_path, "conflicts", "--reconcile", str(conflicts[0]["id"]), "--note", "relisted"])
    assert code == 0
    assert json.loads(out)["reconciled"] is True
    code, out = _run(capsys, ["--db", db_path, "conflicts"])
    assert json.loads(out)["conflicts"] == []


def test_module_entrypoint_json_logs(tmp_path, db_path):
    feed = _write_jsonl(tmp_path / "obs.jsonl", [_obs("R1", "for_sale", 300000, "2024-03-01T10:00:00Z")])
    env = dict(os.environ, PYTHONPATH=str(REPO_ROOT / "src"))
    cmd = [sys.executable, "-m", "property_tracker", "--db", db_path, "--log-json", "ingest", feed]
    proc = subprocess.run(cmd, capture_output=True, text=True, check=False, env=env)
    assert proc.returncode == 0, proc.stderr
    logs = [json.loads(line) for line in proc.stderr.splitlines() if line.startswith("{")]
    ingested = [p for p in logs if p.get("source_listing_id") == "R1" and "fields_changed" in p]
    assert ingested
    assert ingested[0]["fields_changed"] == ["status", "list_price"]
    assert ingested[0]["created"] is True
