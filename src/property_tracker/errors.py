from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for every error raised by the ingestion engine."""

    retryable = False


class InvalidAddress(TrackerError, ValueError):
    def __init__(self, message: str, *, address_fields: Optional[dict] = None):
        super().__init__(message)
        self.address_fields = dict(address_fields or {})


class InvalidObservation(TrackerError, ValueError):
    pass


class BindingConflict(TrackerError):
    """A (source, listing id) pair is already bound to another property.

    Never resolved automatically: it means a source reused a listing id or two
    different addresses collided after normalization.
    """

    def __init__(
        self,
        source_name: str,
        source_listing_id: str,
        bound_property_id: int,
        incoming_property_id: int,
    ):
        super().__init__(
            f"{source_name}:{source_listing_id} is bound to property "
            f"{bound_property_id}, refusing to rebind to {incoming_property_id}"
        )
        self.source_name = source_name
        self.source_listing_id = source_listing_id
        self.bound_property_id = bound_property_id
        self.incoming_property_id = incoming_property_id


class TransientStoreConflict(TrackerError):
    retryable = True

    def __init__(self, message: str, *, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class SchemaInvariantViolation(TrackerError):
    def __init__(self, message: str, *, property_id: Optional[int] = None, field_name: Optional[str] = None):
        super().__init__(message)
        self.property_id = property_id
        self.field_name = field_name
