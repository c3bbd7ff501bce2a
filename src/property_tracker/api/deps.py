from property_tracker.config import get_settings
from property_tracker.storage import SQLiteStore


def open_store() -> SQLiteStore:
    """One read store per request; callers close it.

    Schema setup is left to writers, so a request never waits on the
    write lock held by a running ingest.
    """

    return SQLiteStore(get_settings().sqlite_path, init_schema=False)
