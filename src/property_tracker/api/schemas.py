from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AddressOut(BaseModel):
    line: str
    unit: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    county: Optional[str] = None


class SourceBindingOut(BaseModel):
    source_name: str
    source_listing_id: str
    first_seen_at: str
    last_seen_at: str
    last_page_url: Optional[str] = None


class PropertyOut(BaseModel):
    id: int
    address: AddressOut
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    state: Dict[str, Any] = Field(default_factory=dict)
    canonical_status: str
    price_trend: Optional[str] = None
    first_seen_at: str
    last_seen_at: str
    halted_at: Optional[str] = None
    halt_reason: Optional[str] = None
    sources: List[SourceBindingOut] = Field(default_factory=list)


class HistoryEntryOut(BaseModel):
    id: int
    observed_at: str
    field_name: str
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    kind: str
    source_name: Optional[str] = None


class ChangeOut(BaseModel):
    history_id: int
    property_id: int
    observed_at: str
    field_name: str
    previous_value: Optional[str] = None
    new_value: str
    source_name: Optional[str] = None
    address_line: str
    city: str
    state_abbr: Optional[str] = None
    postal_code: str
    county_name: Optional[str] = None


class ScrapeRunOut(BaseModel):
    id: int
    state: Optional[str] = None
    started_at: str
    finished_at: Optional[str] = None
    pages_fetched: Optional[int] = None
    properties_seen: Optional[int] = None
    success: Optional[bool] = None
    error_message: Optional[str] = None
