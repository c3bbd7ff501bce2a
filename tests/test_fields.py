import pytest

from property_tracker.fields import (
    TRACKED_FIELDS,
    coerce_fields,
    coerce_value,
    decode_value,
    encode_value,
)


def test_registry_order_is_stable():
    assert TRACKED_FIELDS[:4] == ("status", "list_price", "sold_price", "sold_date")
    assert TRACKED_FIELDS[-1] == "is_coming_soon"


def test_equivalent_raw_values_coerce_equal():
    assert coerce_value("list_price", "$300,000") == coerce_value("list_price", 300000) == 300000
    assert coerce_value("list_price", 300000.0) == 300000
    assert coerce_value("is_pending", "true") is coerce_value("is_pending", 1) is True
    assert coerce_value("is_pending", "No") is False
    assert coerce_value("status", " For Sale ") == "for_sale"
    assert coerce_value("sold_date", "2024-05-02T18:30:00Z") == "2024-05-02"


def test_empty_values_are_unknown():
    assert coerce_value("status", None) is None
    assert coerce_value("status", "  ") is None
    assert coerce_value("list_price", "") is None


@pytest.mark.parametrize(
    "name,value",
    [
        ("list_price", True),
        ("list_price", 1999.5),
        ("is_pending", 2),
        ("is_pending", "maybe"),
        ("sold_date", "yesterday"),
        ("list_price", "99999999999999999999"),
        ("sold_price", 2 ** 63),
        ("list_price", 1e30),
    ],
)
def test_bad_values_raise(name, value):
    with pytest.raises(ValueError):
        coerce_value(name, value)


def test_unknown_field_names():
    assert coerce_fields({"status": "active", "beds": 3}) == {"status": "active"}
    with pytest.raises(KeyError):
        coerce_fields({"beds": 3}, strict=True)


def test_history_text_encoding():
    assert encode_value("is_pending", True) == "true"
    assert encode_value("list_price", "310000") == "310000"
    assert encode_value("status", None) is None
    assert decode_value("is_pending", "false") is False
    assert decode_value("list_price", "310000") == 310000


def test_int64_bounds_are_accepted():
    assert coerce_value("list_price", 2 ** 63 - 1) == 2 ** 63 - 1
    assert coerce_value("list_price", str(-(2 ** 63))) == -(2 ** 63)
