import pytest

from property_tracker.errors import InvalidAddress
from property_tracker.normalize import (
    normalize_address_fields,
    normalize_postal_code,
    normalize_state,
    normalize_timestamp,
    split_unit,
)


def test_case_and_whitespace_variants_share_a_key():
    a = normalize_address_fields({"line": "12 Oak St", "city": "Provo", "postal_code": "84601"})
    b = normalize_address_fields({"line": "  12   oak street ", "city": "PROVO ", "postal_code": "84601"})
    c = normalize_address_fields({"line": "12 Oak St.", "city": "provo", "postal_code": "84601-1234"})
    assert a.key == b.key == c.key == ("12 OAK ST", "PROVO", "84601")


def test_display_values_keep_caller_spelling():
    addr = normalize_address_fields(
        {"line": "12  Oak St", "city": "Provo", "state_code": "ut", "postal_code": "84601", "county": "Utah"}
    )
    assert addr.address_line == "12 Oak St"
    assert addr.city == "Provo"
    assert addr.state_abbr == "UT"
    assert addr.county_name == "Utah"


def test_directionals_and_suffixes_after_house_number():
    addr = normalize_address_fields(
        {"line": "400 North Main Street", "city": "Logan", "postal_code": "84321"}
    )
    assert addr.address_line_norm == "400 N MAIN ST"


def test_unit_is_split_off_the_identity_key():
    addr = normalize_address_fields(
        {"line": "12 Oak St, Apt 4", "city": "Provo", "postal_code": "84601"}
    )
    assert addr.address_line_norm == "12 OAK ST"
    assert addr.unit == "4"
    assert addr.address_line == "12 Oak St"


def test_explicit_unit_field_wins():
    addr = normalize_address_fields(
        {"line": "12 Oak St", "unit": "#7B", "city": "Provo", "postal_code": "84601"}
    )
    assert addr.unit == "7B"
    assert addr.address_line_norm == "12 OAK ST"


def test_lot_road_is_not_mistaken_for_a_unit():
    line, unit = split_unit("5 LOT RD")
    assert unit is None
    assert line == "5 LOT RD"


@pytest.mark.parametrize(
    "fields",
    [
        {"line": "", "city": "Provo", "postal_code": "84601"},
        {"line": "   ", "city": "Provo", "postal_code": "84601"},
        {"line": "12 Oak St", "city": "Provo", "postal_code": ""},
        {"city": "Provo"},
    ],
)
def test_missing_line_or_postal_code_is_rejected(fields):
    with pytest.raises(InvalidAddress):
        normalize_address_fields(fields)


def test_state_names_and_postal_codes():
    assert normalize_state("Utah") == "UT"
    assert normalize_state(" fl ") == "FL"
    assert normalize_state("Atlantis") == "ATLANTIS"
    assert normalize_postal_code("84601 1234") == "84601"
    assert normalize_postal_code("K1A 0B1") == "K1A0B1"


def test_timestamps_are_utc_with_fixed_width_microseconds():
    assert normalize_timestamp("2024-03-01T10:00:00Z") == "2024-03-01T10:00:00.000000Z"
    assert normalize_timestamp("2024-03-01T12:00:00.123+02:00") == "2024-03-01T10:00:00.123000Z"
    assert normalize_timestamp("2024-03-01T10:00:00") == "2024-03-01T10:00:00.000000Z"
    with pytest.raises(ValueError):
        normalize_timestamp("")
    with pytest.raises(ValueError):
        normalize_timestamp("not a time")
    assert normalize_timestamp("2024-03-01T10:00:00.100Z") < normalize_timestamp("2024-03-01T10:00:00.900Z")
    assert normalize_timestamp("2024-03-01T10:00:00.900Z") < normalize_timestamp("2024-03-01T10:00:01Z")


def test_unknown_state_is_kept_and_logged(caplog):
    with caplog.at_level("WARNING", logger="property_tracker.normalize"):
        assert normalize_state("Ontario") == "ONTARIO"
    assert "ONTARIO" in caplog.text
