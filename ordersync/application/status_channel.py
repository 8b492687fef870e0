import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ordersync.core.errors import FormatError, InvalidTransition, OrderSyncError
from ordersync.core.streams import Stream
from ordersync.domain.models import Order, OrderStatus, utcnow
from ordersync.interfaces.IOrderRepository import IOrderRepository
from ordersync.interfaces.IStatusStore import IStatusStore, ListenerHandle, status_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    """One delivery on an order's status stream: a status or a failure."""

    order_id: str
    status: Optional[str] = None
    error: Optional[Exception] = None
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class _Subscription:
    handle: ListenerHandle
    stream: Stream
    seeding: Optional[asyncio.Task] = None
    seeded: bool = False


class LiveStatusChannel:
    """
    Near-real-time order status on top of an ephemeral keyed store.

    One listener per order id is kept in the subscription registry;
    unsubscribe() is the single teardown path and is idempotent.
    """

    def __init__(self, store: IStatusStore, order_repo: IOrderRepository):
        self.store = store
        self.order_repo = order_repo
        self._registry: Dict[str, _Subscription] = {}
        self._last_updated: Dict[str, datetime] = {}
        self._last_error: Dict[str, Exception] = {}

    # --- Observation ---

    def observe_connectivity(self) -> Stream[bool]:
        return self.store.connected.subscribe()

    @property
    def is_connected(self) -> bool:
        return bool(self.store.connected.value)

    def last_updated(self, order_id: str) -> Optional[datetime]:
        return self._last_updated.get(order_id)

    def last_error(self, order_id: str) -> Optional[Exception]:
        return self._last_error.get(order_id)

    def is_subscribed(self, order_id: str) -> bool:
        return order_id in self._registry

    # --- Subscriptions ---

    def subscribe(self, order_id: str) -> Stream[StatusEvent]:
        # Replace, never stack
        self.unsubscribe(order_id)

        stream: Stream[StatusEvent] = Stream()
        subscription = _Subscription(handle=None, stream=stream)
        self._registry[order_id] = subscription
        subscription.handle = self.store.listen(
            status_path(order_id),
            lambda value: self._on_value(order_id, subscription, value),
        )
        logger.info(f"👂 Listening for status of order {order_id}")
        return stream

    def unsubscribe(self, order_id: str) -> None:
        subscription = self._registry.pop(order_id, None)
        if subscription is None:
            return
        subscription.handle.cancel()
        if subscription.seeding is not None and not subscription.seeding.done():
            subscription.seeding.cancel()
        subscription.stream.close()
        logger.info(f"🔕 Stopped listening for status of order {order_id}")

    def close(self) -> None:
        for order_id in list(self._registry):
            self.unsubscribe(order_id)

    def _on_value(self, order_id: str, subscription: _Subscription, value) -> None:
        if self._registry.get(order_id) is not subscription:
            return

        if value is None:
            if not subscription.seeded:
                subscription.seeded = True
                subscription.seeding = asyncio.create_task(self._seed_from_store(order_id, subscription))
            return

        try:
            if not isinstance(value, str):
                raise ValueError(value)
            status = OrderStatus.parse(value)
        except ValueError:
            error = FormatError(status_path(order_id), value)
            logger.warning(f"⚠️ {error}")
            self._last_error[order_id] = error
            subscription.stream.push(StatusEvent(order_id, error=error))
            return

        event = StatusEvent(order_id, status=status.value)
        self._last_updated[order_id] = event.received_at
        self._last_error.pop(order_id, None)
        subscription.stream.push(event)

    async def _seed_from_store(self, order_id: str, subscription: _Subscription) -> None:
        """No live node yet: copy the durable status in. The listener then
        delivers the seeded value like any other write."""
        try:
            order = await self.order_repo.get_order(order_id)
            await self.store.set(status_path(order_id), order.status.value)
            logger.info(f"🌱 Seeded live status of {order_id} with {order.status.value}")
        except OrderSyncError as e:
            logger.error(f"❌ Failed to fetch initial status for {order_id}: {e}")
            self._last_error[order_id] = e
            if self._registry.get(order_id) is subscription:
                subscription.stream.push(StatusEvent(order_id, error=e))

    # --- Writes ---

    async def seed(self, order: Order) -> None:
        await self.store.set(status_path(order.id), order.status.value)

    async def current_status(self, order_id: str) -> OrderStatus:
        """Live value when it is readable, the durable one otherwise."""
        value = await self.store.get(status_path(order_id))
        if isinstance(value, str):
            try:
                return OrderStatus.parse(value)
            except ValueError:
                logger.warning(f"⚠️ Ignoring malformed live status for {order_id}: {value!r}")
        order = await self.order_repo.get_order(order_id)
        return order.status

    async def publish(self, order_id: str, status) -> None:
        """
        Live write first so subscribers see the change at once, then the
        durable write for permanence. A failed durable write is raised to
        the caller. If the durable store rejects the transition, the live
        node is put back to the durable status first.
        """
        new_status = OrderStatus.parse(status)
        current = await self.current_status(order_id)
        current.transition_to(new_status)  # raises InvalidTransition

        await self.store.set(status_path(order_id), new_status.value)
        try:
            await self.order_repo.update_order_status(order_id, new_status)
        except InvalidTransition:
            await self._restore_live_status(order_id)
            raise

    async def _restore_live_status(self, order_id: str) -> None:
        try:
            order = await self.order_repo.get_order(order_id)
            await self.store.set(status_path(order_id), order.status.value)
            logger.warning(f"⚠️ Live status for {order_id} put back to {order.status.value}")
        except OrderSyncError as e:
            logger.error(f"❌ Could not restore live status for {order_id}: {e}")
