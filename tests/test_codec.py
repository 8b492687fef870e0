from datetime import datetime
from decimal import Decimal

import pytest
import pytz

from ordersync.core.errors import DecodeFailure, INVALID_FIELD, MISSING_FIELD
from ordersync.domain.codec import (
    REQUIRED_ORDER_FIELDS, decode_embedded_order, decode_order, decode_user, encode_order, encode_user,
)
from ordersync.domain.models import OrderStatus, add_order, create_user

from tests.conftest import BASE_TIME, make_order


def _minimal_document():
    return {
        "userId": "test_user",
        "drinkType": "Iced Coffee",
        "location": "Main Library",
        "paymentMethod": "Apple Pay",
        "status": "Placed",
        "timestamp": BASE_TIME,
    }


def test_round_trip_with_all_fields(full_order):
    assert decode_order(encode_order(full_order), full_order.id) == full_order


def test_encode_field_names(full_order):
    document = encode_order(full_order)
    assert document["userId"] == "user_1"
    assert document["drinkType"] == "Iced Coffee"
    assert document["isIced"] is False
    assert document["price"] == 5.75
    assert document["additionalRequests"] == "Extra ice please"
    assert document["status"] == "Placed"
    assert document["timestamp"] == full_order.timestamp
    assert "id" not in document


def test_encode_omits_absent_note():
    document = encode_order(make_order())
    assert "additionalRequests" not in document


def test_decode_applies_defaults():
    order = decode_order(_minimal_document(), "abc")
    assert order.id == "abc"
    assert order.size == "Medium"
    assert order.milk == ""
    assert order.flavor == ""
    assert order.is_iced is True
    assert order.price == Decimal("4.99")
    assert order.additional_requests is None
    assert order.status == OrderStatus.PLACED


@pytest.mark.parametrize("field", REQUIRED_ORDER_FIELDS)
def test_decode_missing_required_field(field):
    document = _minimal_document()
    del document[field]
    with pytest.raises(DecodeFailure) as exc:
        decode_order(document, "abc")
    assert exc.value.reason == MISSING_FIELD
    assert exc.value.field == field


def test_decode_null_required_field_counts_as_missing():
    document = _minimal_document()
    document["location"] = None
    with pytest.raises(DecodeFailure) as exc:
        decode_order(document, "abc")
    assert exc.value.reason == MISSING_FIELD


@pytest.mark.parametrize("field,value", [
    ("status", "Shipped"),
    ("timestamp", "yesterday"),
    ("timestamp", 12),
    ("price", -1),
    ("price", "cheap"),
])
def test_decode_invalid_values(field, value):
    document = _minimal_document()
    document[field] = value
    with pytest.raises(DecodeFailure) as exc:
        decode_order(document, "abc")
    assert exc.value.reason == INVALID_FIELD
    assert exc.value.field == field


def test_naive_and_iso_timestamps_are_utc():
    document = _minimal_document()
    document["timestamp"] = datetime(2025, 4, 12, 9, 30)
    assert decode_order(document, "a").timestamp == BASE_TIME
    document["timestamp"] = "2025-04-12T09:30:00+00:00"
    assert decode_order(document, "a").timestamp == BASE_TIME
    document["timestamp"] = pytz.timezone("America/Guayaquil").localize(datetime(2025, 4, 12, 4, 30))
    assert decode_order(document, "a").timestamp == BASE_TIME


def test_legacy_status_string():
    document = _minimal_document()
    document["status"] = "In Progress"
    assert decode_order(document, "a").status == OrderStatus.IN_PROGRESS


def test_embedded_order_requires_id(full_order):
    embedded = encode_order(full_order, include_id=True)
    assert decode_embedded_order(embedded) == full_order
    del embedded["id"]
    with pytest.raises(DecodeFailure):
        decode_embedded_order(embedded)


def test_user_round_trip():
    user = create_user("user_123", "Test User", "test@example.com")
    user = add_order(user, make_order("a", user_id="user_123", minutes=1))
    user = add_order(user, make_order("b", user_id="user_123", minutes=2, additional_requests="No straw"))
    document = encode_user(user)
    assert document["name"] == "Test User"
    assert [entry["id"] for entry in document["orderHistory"]] == ["b", "a"]
    assert decode_user(document, "user_123") == user


def test_empty_user_document():
    document = encode_user(create_user("user_123", "Test User", "test@example.com"))
    assert document["orderHistory"] == []
    assert decode_user({"name": "Test User", "email": "test@example.com"}, "user_123").order_history == ()


def test_user_skips_malformed_history_entries():
    good = encode_order(make_order("good"), include_id=True)
    bad = {"id": "bad", "userId": "user_1"}
    user = decode_user({"name": "n", "email": "e", "orderHistory": [bad, good]}, "user_1")
    assert user.order_ids() == ["good"]


def test_user_missing_name():
    with pytest.raises(DecodeFailure) as exc:
        decode_user({"email": "e"}, "u")
    assert exc.value.field == "name"
