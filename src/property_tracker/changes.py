from typing import Any, List, Mapping, Optional

from property_tracker.fields import TRACKED_FIELDS, coerce_value
from property_tracker.models import FieldDelta


def detect(
    property_id: Optional[int],
    current_state: Optional[Mapping[str, Any]],
    incoming_fields: Mapping[str, Any],
) -> List[FieldDelta]:
    """Field deltas between current state and an incoming observation.

    Fields missing from the observation (or carried as None) are unknowns and
    never produce a delta. Output follows TRACKED_FIELDS order.
    """

    current = current_state or {}
    deltas: List[FieldDelta] = []
    for name in TRACKED_FIELDS:
        if name not in incoming_fields:
            continue
        new_value = coerce_value(name, incoming_fields[name])
        if new_value is None:
            continue
        old_value = coerce_value(name, current.get(name))
        if old_value == new_value:
            continue
        deltas.append(
            FieldDelta(
                field_name=name,
                previous_value=old_value,
                new_value=new_value,
                property_id=property_id,
            )
        )
    return deltas
