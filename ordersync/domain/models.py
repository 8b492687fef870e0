import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ordersync.core.errors import InvalidTransition

DEFAULT_SIZE = "Medium"
DEFAULT_MILK = ""
DEFAULT_FLAVOR = ""
DEFAULT_IS_ICED = True
DEFAULT_PRICE = Decimal("4.99")


class OrderStatus(str, Enum):
    PLACED = "Placed"
    IN_PROGRESS = "InProgress"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, raw) -> "OrderStatus":
        """Accepts the raw form, the legacy "In Progress" form, or a member."""
        if isinstance(raw, OrderStatus):
            return raw
        if not isinstance(raw, str):
            raise ValueError(f"Unknown order status: {raw!r}")
        normalized = raw.replace(" ", "").replace("_", "").lower()
        for status in cls:
            if status.value.lower() == normalized:
                return status
        raise ValueError(f"Unknown order status: {raw!r}")

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_transition_to(self, new_status: "OrderStatus") -> bool:
        if new_status == self:
            return True
        return new_status in _ALLOWED_TRANSITIONS[self]

    def transition_to(self, new_status: "OrderStatus") -> "OrderStatus":
        if not self.can_transition_to(new_status):
            raise InvalidTransition(self, new_status)
        return new_status


_ALLOWED_TRANSITIONS = {
    OrderStatus.PLACED: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
    OrderStatus.IN_PROGRESS: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

_STATUS_RANK = {
    OrderStatus.PLACED: 0,
    OrderStatus.IN_PROGRESS: 1,
    OrderStatus.DELIVERED: 2,
    OrderStatus.CANCELLED: 2,
}


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    drink_type: str
    size: str = DEFAULT_SIZE
    milk: str = DEFAULT_MILK
    flavor: str = DEFAULT_FLAVOR
    is_iced: bool = DEFAULT_IS_ICED
    price: Decimal = Field(default=DEFAULT_PRICE, ge=0)
    location: str
    payment_method: str
    additional_requests: Optional[str] = None
    status: OrderStatus = OrderStatus.PLACED
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _timestamp_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def new(cls, user_id: str, drink_type: str, location: str, payment_method: str, **extra) -> "Order":
        """A freshly placed order: new id, status Placed, stamped now."""
        return cls(
            id=uuid.uuid4().hex,
            user_id=user_id,
            drink_type=drink_type,
            location=location,
            payment_method=payment_method,
            status=OrderStatus.PLACED,
            timestamp=utcnow(),
            **extra
        )

    def with_status(self, new_status: OrderStatus) -> "Order":
        return self.model_copy(update={"status": self.status.transition_to(new_status)})


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    order_history: Tuple[Order, ...] = ()

    def order_ids(self):
        return [o.id for o in self.order_history]


# ---------------------------------------------------------
# MERGE ENGINE
# ---------------------------------------------------------

def _sorted_history(orders: Iterable[Order]) -> Tuple[Order, ...]:
    # Newest first; id breaks timestamp ties so the order is total
    ordered = sorted(orders, key=lambda o: o.id)
    return tuple(sorted(ordered, key=lambda o: o.timestamp, reverse=True))


def _version_key(order: Order):
    """Total order over two versions of the same order: later timestamp,
    then further along the status machine, then the canonical JSON form."""
    return (order.timestamp, order.status.rank, order.model_dump_json())


def newest(a: Order, b: Order) -> Order:
    return b if _version_key(b) >= _version_key(a) else a


def create_user(user_id: str, name: str, email: str) -> User:
    return User(id=user_id, name=name, email=email)


def add_order(user: User, order: Order) -> User:
    """Insert (or replace by id) and resort newest-first."""
    history = [o for o in user.order_history if o.id != order.id]
    history.append(order)
    return user.model_copy(update={"order_history": _sorted_history(history)})


def merge(user: User, incoming: Iterable[Order]) -> User:
    """
    Fold a batch of orders into the user's history.

    Per id, the newest version wins (see _version_key). Local-only orders
    are kept and incoming-only orders are added. Merging the same batch
    again is a no-op, and the final content does not depend on the order
    batches arrive in.
    """
    by_id: Dict[str, Order] = {o.id: o for o in user.order_history}
    for order in incoming:
        current = by_id.get(order.id)
        by_id[order.id] = order if current is None else newest(current, order)
    return user.model_copy(update={"order_history": _sorted_history(by_id.values())})
