from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException

from property_tracker.api.deps import open_store
from property_tracker.api.schemas import HistoryEntryOut, PropertyOut
from property_tracker.feeds import get_property, price_trend, property_history

router = APIRouter(tags=["properties"])


@router.get("/properties/{property_id}", response_model=PropertyOut)
def read_property(property_id: int) -> Dict[str, Any]:
    store = open_store()
    try:
        prop = get_property(store, property_id)
        if prop is None:
            raise HTTPException(status_code=404, detail="property not found")
        prop["price_trend"] = price_trend(store, property_id)
        return prop
    finally:
        store.close()


@router.get("/properties/{property_id}/history")
def read_history(property_id: int, field: Optional[str] = None) -> Dict[str, Any]:
    store = open_store()
    try:
        if get_property(store, property_id) is None:
            raise HTTPException(status_code=404, detail="property not found")
        entries = property_history(store, property_id, field)
        return {
            "property_id": property_id,
            "history": [HistoryEntryOut(**e).model_dump() for e in entries],
        }
    finally:
        store.close()
