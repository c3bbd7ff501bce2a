from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from property_tracker.api.deps import open_store
from property_tracker.api.schemas import ScrapeRunOut
from property_tracker.ledger import ScrapeRunLedger

router = APIRouter(tags=["runs"])


@router.get("/runs")
def list_runs(limit: int = 50) -> Dict[str, Any]:
    store = open_store()
    try:
        runs = ScrapeRunLedger(store).recent_runs(limit)
        return {"runs": [ScrapeRunOut(**r.to_dict()).model_dump() for r in runs]}
    finally:
        store.close()


@router.get("/runs/{run_id}")
def read_run(run_id: int) -> Dict[str, Any]:
    store = open_store()
    try:
        ledger = ScrapeRunLedger(store)
        if ledger.get_run(run_id) is None:
            raise HTTPException(status_code=404, detail="run not found")
        out = ledger.summary(run_id)
        out["pages"] = [
            {
                "page_number": p.page_number,
                "page_url": p.page_url,
                "success": p.success,
                "properties_found": p.properties_found,
            }
            for p in ledger.run_pages(run_id)
        ]
        return out
    finally:
        store.close()
