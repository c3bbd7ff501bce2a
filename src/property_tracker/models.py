from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class FieldDelta:
    field_name: str
    previous_value: Any
    new_value: Any
    property_id: Optional[int] = None


@dataclass(frozen=True)
class SourceBinding:
    property_id: int
    source_name: str
    source_listing_id: str
    first_seen_at: str
    last_seen_at: str
    created: bool = False


@dataclass
class CommitResult:
    property_id: int
    observed_at: str
    fields_changed: List[str] = field(default_factory=list)
    late_fields: List[str] = field(default_factory=list)


@dataclass
class IngestResult:
    property_id: int
    created: bool
    fields_changed: List[str] = field(default_factory=list)
    late_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "created": self.created,
            "fields_changed": list(self.fields_changed),
            "late_fields": list(self.late_fields),
        }


@dataclass
class Observation:
    """One scrape-time snapshot of a listing from one source."""

    source_name: str
    source_listing_id: str
    address_fields: Dict[str, Any]
    tracked_fields: Dict[str, Any]
    observed_at: Any
    page_url: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None
    geocode: Optional[tuple] = None


@dataclass
class BatchReport:
    results: List[IngestResult] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ingested(self) -> int:
        return len(self.results)

    @property
    def retryable_failures(self) -> int:
        return sum(1 for f in self.failures if f.get("retryable"))

    def to_dict(self) -> dict:
        return {
            "ingested": self.ingested,
            "created": sum(1 for r in self.results if r.created),
            "changed": sum(1 for r in self.results if r.fields_changed),
            "failures": list(self.failures),
        }


@dataclass
class ScrapeRun:
    id: int
    state: Optional[str]
    started_at: str
    finished_at: Optional[str] = None
    pages_fetched: Optional[int] = None
    properties_seen: Optional[int] = None
    success: Optional[bool] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "pages_fetched": self.pages_fetched,
            "properties_seen": self.properties_seen,
            "success": self.success,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class ScrapeRunPage:
    scrape_run_id: int
    page_number: int
    page_url: str
    success: bool
    properties_found: int


@dataclass
class ChangeEvent:
    """A status or price change with the property context needed for export."""

    change_date: str
    change_type: str
    previous_value: str
    current_value: str
    address_full: str
    address_line: str
    city: str
    postal_code: str
    county_name: Optional[str]
    state_abbr: Optional[str]
    price: Optional[int]
    canonical_status: str
    is_ready_to_build: bool
    is_new_listing: bool
    is_price_reduced: bool
    is_foreclosure: bool
    price_reduction: Optional[int] = None
