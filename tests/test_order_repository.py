import asyncio
from datetime import datetime

import pytest
import pytz

from ordersync.core.errors import InvalidTransition, NotFoundError, TransportError
from ordersync.domain.models import OrderStatus, create_user
from ordersync.infrastructure.database import OWNER_TIMESTAMP_INDEX, OrderRecord

from tests.conftest import BASE_TIME, make_order


@pytest.fixture
async def owner(repo):
    return await repo.create_user("user_1", "Test User", "test@example.com")


async def test_create_and_get_user(repo):
    created = await repo.create_user("user_123", "Test User", "test@example.com")
    assert created == create_user("user_123", "Test User", "test@example.com")
    assert await repo.get_user("user_123") == created


async def test_get_missing_user(repo):
    with pytest.raises(NotFoundError):
        await repo.get_user("nobody")


async def test_create_user_overwrites(repo, owner):
    await repo.create_order(make_order())
    await repo.create_user("user_1", "Renamed", "new@example.com")
    user = await repo.get_user("user_1")
    assert user.name == "Renamed"
    assert user.order_history == ()


async def test_update_user_is_merge_style(repo):
    await repo.update_user(create_user("fresh", "Fresh", "fresh@example.com"))
    stored = await repo.get_user("fresh")
    assert stored.name == "Fresh"

    await repo.update_user(stored.model_copy(update={"email": "changed@example.com"}))
    assert (await repo.get_user("fresh")).email == "changed@example.com"


async def test_create_order_writes_order_and_history(repo, owner, full_order):
    saved = await repo.create_order(full_order)
    assert saved == full_order
    assert await repo.get_order(full_order.id) == full_order
    user = await repo.get_user("user_1")
    assert user.order_history == (full_order,)


async def test_non_utc_order_is_stored_in_utc(repo, owner):
    local = pytz.timezone("America/Guayaquil").localize(datetime(2025, 4, 12, 4, 30))
    await repo.create_order(make_order("local", timestamp=local))
    assert (await repo.get_order("local")).timestamp == BASE_TIME
    assert (await repo.get_user("user_1")).order_history[0].timestamp == BASE_TIME


async def test_create_order_without_owner_writes_nothing(repo):
    order = make_order(user_id="ghost")
    with pytest.raises(NotFoundError):
        await repo.create_order(order)
    with pytest.raises(NotFoundError):
        await repo.get_order(order.id)


async def test_create_order_is_all_or_nothing(repo, owner, monkeypatch):
    def failing_append(owner_record, order):
        raise TransportError("connection dropped between writes")

    monkeypatch.setattr(repo, "_append_to_history", failing_append)
    order = make_order("orphan")
    with pytest.raises(TransportError):
        await repo.create_order(order)

    with pytest.raises(NotFoundError):
        await repo.get_order("orphan")
    assert (await repo.get_user("user_1")).order_history == ()
    assert await repo.get_user_orders("user_1") == []


async def test_get_missing_order(repo):
    with pytest.raises(NotFoundError):
        await repo.get_order("missing")


@pytest.mark.parametrize("path", [
    [OrderStatus.CANCELLED],
    [OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED],
    [OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED],
])
async def test_allowed_status_paths(repo, owner, path):
    await repo.create_order(make_order())
    for status in path:
        await repo.update_order_status("order_1", status)
    assert (await repo.get_order("order_1")).status == path[-1]
    # Embedded copy follows
    assert (await repo.get_user("user_1")).order_history[0].status == path[-1]


@pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
async def test_terminal_status_is_final(repo, owner, terminal):
    await repo.create_order(make_order(status=OrderStatus.IN_PROGRESS))
    await repo.update_order_status("order_1", terminal)
    for target in (OrderStatus.PLACED, OrderStatus.IN_PROGRESS):
        with pytest.raises(InvalidTransition):
            await repo.update_order_status("order_1", target)
    assert (await repo.get_order("order_1")).status == terminal


async def test_update_status_of_missing_order(repo):
    with pytest.raises(NotFoundError):
        await repo.update_order_status("missing", OrderStatus.CANCELLED)


async def test_user_orders_sorted_and_filtered(repo, owner):
    await repo.create_user("user_2", "Other", "other@example.com")
    for order_id, minutes in [("a", 5), ("b", 1), ("c", 9)]:
        await repo.create_order(make_order(order_id, minutes=minutes))
    await repo.create_order(make_order("theirs", user_id="user_2", minutes=3))

    orders = await repo.get_user_orders("user_1")
    assert [o.id for o in orders] == ["c", "a", "b"]


async def test_user_orders_fallback_without_index(repo, engine, owner):
    for order_id, minutes in [("a", 5), ("b", 1), ("c", 9)]:
        await repo.create_order(make_order(order_id, minutes=minutes))
    OWNER_TIMESTAMP_INDEX.drop(engine)

    orders = await repo.get_user_orders("user_1")
    assert [o.id for o in orders] == ["c", "a", "b"]


async def test_user_orders_skip_malformed_rows(repo, engine, owner):
    await repo.create_order(make_order("good"))
    session = repo.SessionLocal()
    session.add(OrderRecord(id="broken", user_id="user_1", status="Placed"))
    session.commit()
    session.close()

    assert [o.id for o in await repo.get_user_orders("user_1")] == ["good"]


async def test_watch_user_orders_yields_changes(repo, owner):
    await repo.create_order(make_order("a"))
    stream = repo.watch_user_orders("user_1")
    first = await asyncio.wait_for(stream.__anext__(), 2)
    assert [o.id for o in first] == ["a"]

    await repo.create_order(make_order("b", minutes=1))
    second = await asyncio.wait_for(stream.__anext__(), 2)
    assert [o.id for o in second] == ["b", "a"]
    await stream.aclose()


async def test_backend_failure_is_transport_error(repo, engine):
    OrderRecord.__table__.drop(engine)
    with pytest.raises(TransportError):
        await repo.get_order("anything")
