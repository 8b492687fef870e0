"""
Conversion between domain objects and store documents.

A document is a plain dict keyed by the store's camelCase field names.
Timestamps are carried in the store's native form (datetime); ISO-8601
strings are accepted as well so embedded copies survive a JSON hop.
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping

from pydantic import ValidationError

from ordersync.core.errors import DecodeFailure, MISSING_FIELD, INVALID_FIELD
from ordersync.domain.models import (
    Order, OrderStatus, User, as_utc, create_user, merge,
    DEFAULT_SIZE, DEFAULT_MILK, DEFAULT_FLAVOR, DEFAULT_IS_ICED, DEFAULT_PRICE,
)

logger = logging.getLogger(__name__)

REQUIRED_ORDER_FIELDS = ("userId", "drinkType", "location", "paymentMethod", "status", "timestamp")

# document key -> (Order attribute, default when absent)
OPTIONAL_ORDER_FIELDS = {
    "size": ("size", DEFAULT_SIZE),
    "milk": ("milk", DEFAULT_MILK),
    "flavor": ("flavor", DEFAULT_FLAVOR),
    "isIced": ("is_iced", DEFAULT_IS_ICED),
    "price": ("price", DEFAULT_PRICE),
    "additionalRequests": ("additional_requests", None),
}

_REQUIRED_ATTRS = {
    "userId": "user_id",
    "drinkType": "drink_type",
    "location": "location",
    "paymentMethod": "payment_method",
}

# pydantic field name -> document key, for error reporting
_DOC_KEYS = {attr: key for key, attr in _REQUIRED_ATTRS.items()}
_DOC_KEYS.update({attr: key for key, (attr, _) in OPTIONAL_ORDER_FIELDS.items()})


def to_timestamp(value: Any, field: str = "timestamp") -> datetime:
    """Store timestamp -> aware UTC datetime. Naive values are taken as UTC."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as e:
            raise DecodeFailure(INVALID_FIELD, field, str(e)) from e
    if not isinstance(value, datetime):
        raise DecodeFailure(INVALID_FIELD, field, f"expected timestamp, got {type(value).__name__}")
    return as_utc(value)


def _to_price(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise DecodeFailure(INVALID_FIELD, "price", "expected number")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise DecodeFailure(INVALID_FIELD, "price", str(e)) from e


def decode_order(document: Mapping[str, Any], order_id: str) -> Order:
    for key in REQUIRED_ORDER_FIELDS:
        if document.get(key) is None:
            raise DecodeFailure(MISSING_FIELD, key)

    try:
        status = OrderStatus.parse(document["status"])
    except ValueError as e:
        raise DecodeFailure(INVALID_FIELD, "status", str(e)) from e

    values: Dict[str, Any] = {
        "id": order_id,
        "status": status,
        "timestamp": to_timestamp(document["timestamp"]),
    }
    for key, attr in _REQUIRED_ATTRS.items():
        values[attr] = document[key]
    for key, (attr, default) in OPTIONAL_ORDER_FIELDS.items():
        raw = document.get(key)
        values[attr] = default if raw is None else raw
    if document.get("price") is not None:
        values["price"] = _to_price(document["price"])
    if values["additional_requests"] == "":
        values["additional_requests"] = None

    try:
        return Order(**values)
    except ValidationError as e:
        first = e.errors()[0]
        attr = str(first["loc"][0]) if first.get("loc") else "?"
        raise DecodeFailure(INVALID_FIELD, _DOC_KEYS.get(attr, attr), first.get("msg", "")) from e


def encode_order(order: Order, include_id: bool = False) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "userId": order.user_id,
        "drinkType": order.drink_type,
        "size": order.size,
        "milk": order.milk,
        "flavor": order.flavor,
        "isIced": order.is_iced,
        "price": float(order.price),
        "location": order.location,
        "paymentMethod": order.payment_method,
        "status": order.status.value,
        "timestamp": order.timestamp,
    }
    # Absent rather than null
    if order.additional_requests:
        document["additionalRequests"] = order.additional_requests
    if include_id:
        document["id"] = order.id
    return document


def decode_embedded_order(document: Mapping[str, Any]) -> Order:
    order_id = document.get("id")
    if not order_id:
        raise DecodeFailure(MISSING_FIELD, "id")
    return decode_order(document, order_id)


def decode_user(document: Mapping[str, Any], user_id: str) -> User:
    for key in ("name", "email"):
        if document.get(key) is None:
            raise DecodeFailure(MISSING_FIELD, key)

    history = []
    for entry in document.get("orderHistory") or []:
        try:
            history.append(decode_embedded_order(entry))
        except DecodeFailure as e:
            logger.warning(f"⚠️ Skipping malformed history entry for user {user_id}: {e}")

    return merge(create_user(user_id, document["name"], document["email"]), history)


def encode_user(user: User) -> Dict[str, Any]:
    return {
        "name": user.name,
        "email": user.email,
        "orderHistory": [encode_order(o, include_id=True) for o in user.order_history],
    }
