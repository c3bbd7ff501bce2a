import logging
import sqlite3

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from property_tracker.api.routes.changes import router as changes_router
from property_tracker.api.routes.conflicts import router as conflicts_router
from property_tracker.api.routes.properties import router as properties_router
from property_tracker.api.routes.runs import router as runs_router
from property_tracker.errors import TransientStoreConflict
from property_tracker.storage import is_transient_error

logger = logging.getLogger(__name__)


def health():
    return {"status": "ok"}


app = FastAPI(title="property_tracker")

app.include_router(properties_router, prefix="/api")
app.include_router(changes_router, prefix="/api")
app.include_router(runs_router, prefix="/api")
app.include_router(conflicts_router, prefix="/api")


@app.exception_handler(TransientStoreConflict)
def store_busy(request: Request, exc: TransientStoreConflict):
    logger.warning("store busy while serving %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "store is busy, retry shortly"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(sqlite3.OperationalError)
def store_error(request: Request, exc: sqlite3.OperationalError):
    if is_transient_error(exc):
        return store_busy(request, TransientStoreConflict(str(exc)))
    logger.error("store error while serving %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "store error"})


@app.get("/health")
def health_route():
    return health()
