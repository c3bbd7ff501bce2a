from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException

from property_tracker.api.deps import open_store
from property_tracker.api.schemas import ChangeOut
from property_tracker.feeds import DEFAULT_FEED_FIELDS, changed_since, distinct_change_years
from property_tracker.fields import TRACKED_FIELDS

router = APIRouter(tags=["changes"])


@router.get("/changes")
def list_changes(since: str, fields: Optional[str] = None, limit: int = 1000) -> Dict[str, Any]:
    wanted = [f.strip() for f in (fields or "").split(",") if f.strip()] or list(DEFAULT_FEED_FIELDS)
    unknown = [f for f in wanted if f not in TRACKED_FIELDS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown fields: {', '.join(unknown)}")
    store = open_store()
    try:
        try:
            rows = changed_since(store, since, wanted, limit=limit)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"bad since: {exc}")
        return {
            "since": since,
            "fields": wanted,
            "changes": [ChangeOut(**r).model_dump() for r in rows],
        }
    finally:
        store.close()


@router.get("/changes/years")
def list_change_years() -> Dict[str, Any]:
    store = open_store()
    try:
        return {"years": distinct_change_years(store)}
    finally:
        store.close()
