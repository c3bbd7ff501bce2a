"""Adapter from the nested scraper listing payload to a flat Observation.

The payload shape is the listing JSON collectors hand over:

    source.{name, listing_id}
    location.address.{line, city, state_code, postal_code}
    location.county.name
    location.coordinate.{lat, lon}
    status, list_price, sold_price, description.sold_date
    flags.{is_pending, is_contingent, is_new_listing, ...}
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from property_tracker.errors import InvalidObservation
from property_tracker.models import Observation


class Source(BaseModel):
    name: Optional[str] = None
    id: Optional[str] = None
    listing_id: Optional[str] = None


class Address(BaseModel):
    line: Optional[str] = None
    unit: Optional[str] = None
    city: Optional[str] = None
    state_code: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class County(BaseModel):
    name: Optional[str] = None
    fips_code: Optional[int] = None


class Coordinate(BaseModel):
    lat: Optional[float] = None
    lon: Optional[float] = None


class Location(BaseModel):
    address: Optional[Address] = None
    county: Optional[County] = None
    coordinate: Optional[Coordinate] = None


class Description(BaseModel):
    sold_date: Optional[str] = None
    beds: Optional[int] = None
    baths: Optional[float] = None
    lot_sqft: Optional[int] = None


class Flags(BaseModel):
    is_pending: Optional[bool] = None
    is_contingent: Optional[bool] = None
    is_new_listing: Optional[bool] = None
    is_foreclosure: Optional[bool] = None
    is_price_reduced: Optional[bool] = None
    is_coming_soon: Optional[bool] = None
    is_new_construction: Optional[bool] = None


class ListingPayload(BaseModel):
    source: Source = Field(default_factory=Source)
    location: Location = Field(default_factory=Location)
    description: Description = Field(default_factory=Description)
    status: Optional[str] = None
    list_price: Optional[int] = None
    sold_price: Optional[int] = None
    flags: Flags = Field(default_factory=Flags)


def observation_from_payload(
    payload: Dict[str, Any],
    observed_at: Any,
    page_url: Optional[str] = None,
) -> Observation:
    try:
        listing = ListingPayload.model_validate(payload)
    except ValidationError as exc:
        raise InvalidObservation(f"malformed listing payload: {exc.error_count()} error(s)") from exc

    listing_id = (listing.source.listing_id or "").strip()
    if not listing_id:
        raise InvalidObservation("listing payload has no source.listing_id")

    address = listing.location.address or Address()
    county = listing.location.county or County()
    address_fields = {
        "line": address.line,
        "unit": address.unit,
        "city": address.city,
        "state_code": address.state_code,
        "postal_code": address.postal_code,
        "county": county.name,
    }

    flags = listing.flags
    tracked = {
        "status": listing.status,
        "list_price": listing.list_price,
        "sold_price": listing.sold_price,
        "sold_date": listing.description.sold_date,
        "is_pending": flags.is_pending,
        "is_contingent": flags.is_contingent,
        "is_new_listing": flags.is_new_listing,
        "is_foreclosure": flags.is_foreclosure,
        "is_price_reduced": flags.is_price_reduced,
        "is_coming_soon": flags.is_coming_soon,
    }

    coord = listing.location.coordinate
    geocode = None
    if coord is not None and coord.lat is not None and coord.lon is not None:
        geocode = (coord.lat, coord.lon)

    return Observation(
        source_name=(listing.source.name or "unknown").strip().lower() or "unknown",
        source_listing_id=listing_id,
        address_fields={k: v for k, v in address_fields.items() if v is not None},
        tracked_fields={k: v for k, v in tracked.items() if v is not None},
        observed_at=observed_at,
        page_url=page_url,
        raw_payload=dict(payload),
        geocode=geocode,
    )
