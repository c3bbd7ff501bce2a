from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from property_tracker.api.deps import open_store

router = APIRouter(tags=["conflicts"])


@router.get("/conflicts")
def list_conflicts(status: str = "open", limit: int = 100) -> Dict[str, Any]:
    store = open_store()
    try:
        wanted = None if status == "all" else status
        return {"conflicts": store.list_binding_conflicts(status=wanted, limit=limit)}
    finally:
        store.close()
