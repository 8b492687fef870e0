from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz

from ordersync.domain.models import Order, OrderStatus
from ordersync.infrastructure.database import build_engine, build_session_factory, init_db
from ordersync.infrastructure.repositories.order_repository import SqlAlchemyOrderRepository
from ordersync.infrastructure.status_store import MemoryStatusStore
from ordersync.application.status_channel import LiveStatusChannel

BASE_TIME = datetime(2025, 4, 12, 9, 30, tzinfo=pytz.utc)


def make_order(order_id="order_1", user_id="user_1", minutes=0, status=OrderStatus.PLACED, **extra):
    values = dict(
        id=order_id,
        user_id=user_id,
        drink_type="Iced Coffee",
        location="Main Library",
        payment_method="Apple Pay",
        status=status,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
    )
    values.update(extra)
    return Order(**values)


@pytest.fixture
def order_factory():
    return make_order


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repo(engine):
    return SqlAlchemyOrderRepository(build_session_factory(engine), poll_seconds=0.01)


@pytest.fixture
def store():
    return MemoryStatusStore()


@pytest.fixture
def channel(store, repo):
    channel = LiveStatusChannel(store, repo)
    yield channel
    channel.close()


@pytest.fixture
def full_order():
    return make_order(
        size="Large",
        milk="Oat",
        flavor="Vanilla",
        is_iced=False,
        price=Decimal("5.75"),
        additional_requests="Extra ice please",
    )
