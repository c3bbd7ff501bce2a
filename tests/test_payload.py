import pytest

from property_tracker.errors import InvalidObservation
from property_tracker.payload import observation_from_payload

T1 = "2024-03-01T10:00:00.000000Z"


def _payload(**overrides):
    payload = {
        "source": {"name": "Realtor", "listing_id": "R1"},
        "location": {
            "address": {"line": "12 Oak St", "city": "Provo", "state_code": "UT", "postal_code": "84601"},
            "county": {"name": "Utah", "fips_code": 49049},
            "coordinate": {"lat": 40.23, "lon": -111.66},
        },
        "description": {"beds": 3, "sold_date": None},
        "status": "for_sale",
        "list_price": 300000,
        "flags": {"is_pending": False, "is_new_listing": True},
    }
    payload.update(overrides)
    return payload


def test_payload_is_flattened():
    obs = observation_from_payload(_payload(), T1, page_url="https://example.test/p1")
    assert obs.source_name == "realtor"
    assert obs.source_listing_id == "R1"
    assert obs.address_fields == {
        "line": "12 Oak St",
        "city": "Provo",
        "state_code": "UT",
        "postal_code": "84601",
        "county": "Utah",
    }
    assert obs.tracked_fields == {
        "status": "for_sale",
        "list_price": 300000,
        "is_pending": False,
        "is_new_listing": True,
    }
    assert obs.geocode == (40.23, -111.66)
    assert obs.page_url == "https://example.test/p1"
    assert obs.raw_payload["source"]["listing_id"] == "R1"


def test_missing_source_name_defaults_to_unknown():
    obs = observation_from_payload(_payload(source={"listing_id": "X1"}), T1)
    assert obs.source_name == "unknown"


def test_missing_listing_id_is_rejected():
    with pytest.raises(InvalidObservation):
        observation_from_payload(_payload(source={"name": "realtor"}), T1)


def test_malformed_payload_is_rejected():
    with pytest.raises(InvalidObservation):
        observation_from_payload(_payload(list_price="lots"), T1)


def test_payload_ingests_end_to_end(engine):
    obs = observation_from_payload(_payload(), T1)
    result = engine.ingest(obs)
    assert result.created is True
    assert result.fields_changed == ["status", "list_price", "is_pending", "is_new_listing"]
    row = engine.resolver.get_row(result.property_id)
    assert row["latitude"] == pytest.approx(40.23)
    assert row["county_name"] == "Utah"
