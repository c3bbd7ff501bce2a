"""Package initializer for `property_tracker`."""

from .engine import IngestEngine
from .ledger import ScrapeRunLedger
from .models import IngestResult, Observation
from .storage import SQLiteStore

__all__ = ["IngestEngine", "IngestResult", "Observation", "ScrapeRunLedger", "SQLiteStore"]
