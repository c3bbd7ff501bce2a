import pytest

from property_tracker.ledger import ScrapeRunLedger


def test_run_lifecycle_aggregates_pages(store):
    ledger = ScrapeRunLedger(store)
    run_id = ledger.start_run("ut", started_at="2024-03-01T10:00:00Z")
    ledger.record_page(run_id, 1, "https://example.test/p1", True, 20)
    ledger.record_page(run_id, 2, "https://example.test/p2", True, 18)
    run = ledger.finish_run(run_id, success=True, finished_at="2024-03-01T10:05:00Z")

    assert run.state == "UT"
    assert run.success is True
    assert run.pages_fetched == 2
    assert run.properties_seen == 38
    assert run.finished_at == "2024-03-01T10:05:00.000000Z"


def test_failed_page_fails_the_run(store):
    ledger = ScrapeRunLedger(store)
    run_id = ledger.start_run("UT")
    ledger.record_page(run_id, 1, "https://example.test/p1", True, 20)
    ledger.record_page(run_id, 2, "https://example.test/p2", False, 0)
    run = ledger.finish_run(run_id, success=True)
    assert run.success is False
    assert ledger.failed_pages(run_id) == [2]


def test_record_page_is_idempotent(store):
    ledger = ScrapeRunLedger(store)
    run_id = ledger.start_run("UT")
    ledger.record_page(run_id, 1, "https://example.test/p1", True, 20)
    ledger.record_page(run_id, 1, "https://example.test/p1", True, 20)
    pages = ledger.run_pages(run_id)
    assert len(pages) == 1
    assert pages[0].properties_found == 20


def test_retried_page_overwrites_failure(store):
    ledger = ScrapeRunLedger(store)
    run_id = ledger.start_run("UT")
    ledger.record_page(run_id, 1, "https://example.test/p1", False, 0)
    ledger.record_page(run_id, 1, "https://example.test/p1", True, 12)
    assert ledger.failed_pages(run_id) == []
    assert ledger.finish_run(run_id, success=True).success is True


def test_resume_point_after_contiguous_successes(store):
    ledger = ScrapeRunLedger(store)
    run_id = ledger.start_run("UT")
    assert ledger.resume_point(run_id) == 1
    for page in (1, 2, 3):
        ledger.record_page(run_id, page, f"https://example.test/p{page}", True, 10)
    ledger.record_page(run_id, 4, "https://example.test/p4", False, 0)
    ledger.record_page(run_id, 5, "https://example.test/p5", True, 10)
    assert ledger.resume_point(run_id) == 4

    summary = ledger.summary(run_id)
    assert summary["resume_page"] == 4
    assert summary["failed_pages"] == [4]
    assert summary["finished_at"] is None


def test_unfinished_run_has_unknown_success(store):
    ledger = ScrapeRunLedger(store)
    run_id = ledger.start_run("UT")
    assert ledger.get_run(run_id).success is None


def test_recent_runs_newest_first(store):
    ledger = ScrapeRunLedger(store)
    first = ledger.start_run("UT", started_at="2024-03-01T10:00:00Z")
    second = ledger.start_run("FL", started_at="2024-03-02T10:00:00Z")
    assert [r.id for r in ledger.recent_runs()] == [second, first]
    assert [r.id for r in ledger.recent_runs(limit=1)] == [second]


def test_finishing_unknown_run_raises(store):
    with pytest.raises(LookupError):
        ScrapeRunLedger(store).finish_run(999, success=True)
