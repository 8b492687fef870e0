import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from ordersync.application.status_channel import LiveStatusChannel, StatusEvent
from ordersync.core.errors import NotAuthenticated, NotFoundError, OrderSyncError
from ordersync.core.streams import Observable, Stream
from ordersync.domain.models import Order, User, add_order, create_user, merge, utcnow
from ordersync.interfaces.IAuthProvider import IAuthProvider
from ordersync.interfaces.IOrderRepository import IOrderRepository

logger = logging.getLogger(__name__)

# Per-order tracking states
STATE_IDLE = "IDLE"
STATE_LISTENING = "LISTENING"
STATE_RECONCILING = "RECONCILING"


@dataclass(frozen=True)
class SyncSnapshot:
    """
    What observers of an owner see.

    user None, error None  -> no data yet
    error set              -> last fetch failed; user is the last known good value
    user set, error None   -> fresh as of last_synced_at
    """

    owner_id: str
    user: Optional[User] = None
    last_synced_at: Optional[datetime] = None
    error: Optional[Exception] = None
    published_at: datetime = field(default_factory=utcnow)


class ReconciliationOrchestrator:
    def __init__(self, order_repo: IOrderRepository, channel: LiveStatusChannel, auth: Optional[IAuthProvider] = None):
        self.order_repo = order_repo
        self.channel = channel
        self.auth = auth

        self._states: Dict[str, str] = {}
        self._owners: Dict[str, str] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._statuses: Dict[str, Observable] = {}
        self._snapshots: Dict[str, Observable] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._rerun: Set[str] = set()

    # --- Observation ---

    def state_of(self, order_id: str) -> str:
        return self._states.get(order_id, STATE_IDLE)

    def snapshot(self, owner_id: str) -> SyncSnapshot:
        return self._snapshot_obs(owner_id).value

    def observe_user(self, owner_id: str) -> Stream[SyncSnapshot]:
        return self._snapshot_obs(owner_id).subscribe()

    def observe_status(self, order_id: str) -> Stream[StatusEvent]:
        return self._status_obs(order_id).subscribe()

    def observe_connectivity(self) -> Stream[bool]:
        return self.channel.observe_connectivity()

    def _snapshot_obs(self, owner_id: str) -> Observable:
        if owner_id not in self._snapshots:
            self._snapshots[owner_id] = Observable(SyncSnapshot(owner_id))
        return self._snapshots[owner_id]

    def _status_obs(self, order_id: str) -> Observable:
        if order_id not in self._statuses:
            self._statuses[order_id] = Observable()
        return self._statuses[order_id]

    def _publish_user(self, owner_id: str, user: User) -> None:
        self._snapshot_obs(owner_id).set(SyncSnapshot(owner_id, user=user, last_synced_at=utcnow()))

    def _publish_failure(self, owner_id: str, error: Exception) -> None:
        previous = self.snapshot(owner_id)
        self._snapshot_obs(owner_id).set(
            SyncSnapshot(owner_id, user=previous.user, last_synced_at=previous.last_synced_at, error=error)
        )

    # --- Session lifecycle ---

    async def start(self, name: str = "", email: str = "") -> User:
        """
        Cold start for the signed-in principal: load (or create) the user,
        reconcile once, then listen to every order that can still change.
        Listening seeds the live channel from durable state where needed.
        """
        principal = self.auth.current_principal() if self.auth else None
        if principal is None:
            raise NotAuthenticated("No signed-in principal")

        try:
            user = await self.order_repo.get_user(principal.id)
        except NotFoundError:
            logger.info(f"🆕 First sign-in for {principal.id}. Creating user.")
            user = await self.order_repo.create_user(
                principal.id, name or principal.name, email or principal.email
            )
        self._publish_user(principal.id, user)

        await self.reconcile(principal.id)
        current = self.snapshot(principal.id).user or user
        for order in current.order_history:
            if not order.status.is_terminal:
                self.track(order.id, principal.id)
        return current

    async def place_order(self, order: Order) -> Order:
        saved = await self.order_repo.create_order(order)
        try:
            await self.channel.seed(saved)
        except OrderSyncError as e:
            # Subscribing seeds it later from the durable copy
            logger.warning(f"⚠️ Live status seed failed for {saved.id}: {e}")

        previous = self.snapshot(saved.user_id).user
        if previous is not None:
            self._publish_user(saved.user_id, add_order(previous, saved))
        self.track(saved.id, saved.user_id)
        return saved

    async def close(self) -> None:
        pending = list(self._consumers.values())
        for order_id in list(self._states):
            self.untrack(order_id)
        pending.extend(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for observable in list(self._snapshots.values()) + list(self._statuses.values()):
            observable.close()

    # --- Tracking ---

    def track(self, order_id: str, owner_id: str) -> None:
        if order_id in self._states:
            self.untrack(order_id)
        stream = self.channel.subscribe(order_id)
        self._owners[order_id] = owner_id
        self._states[order_id] = STATE_LISTENING
        self._consumers[order_id] = asyncio.create_task(self._consume(order_id, owner_id, stream))

    def untrack(self, order_id: str) -> None:
        """Back to IDLE. The channel listener is gone when this returns; a
        reconciliation already running finishes but does not re-arm."""
        self._states.pop(order_id, None)
        self._owners.pop(order_id, None)
        self.channel.unsubscribe(order_id)
        consumer = self._consumers.pop(order_id, None)
        if consumer is not None and consumer is not asyncio.current_task():
            consumer.cancel()

    async def _consume(self, order_id: str, owner_id: str, stream: Stream[StatusEvent]) -> None:
        async for event in stream:
            if self._states.get(order_id) is None:
                break
            self._status_obs(order_id).set(event)
            if event.error is not None:
                logger.warning(f"⚠️ Status error for {order_id}: {event.error}")
                continue
            self.request_reconcile(owner_id, order_id)

    # --- Reconciliation ---

    def request_reconcile(self, owner_id: str, order_id: Optional[str] = None) -> asyncio.Task:
        """At most one pass in flight per owner; requests arriving during a
        pass collapse into a single follow-up pass."""
        if order_id is not None and order_id in self._states:
            self._states[order_id] = STATE_RECONCILING

        running = self._in_flight.get(owner_id)
        if running is not None and not running.done():
            self._rerun.add(owner_id)
            return running

        task = asyncio.create_task(self._reconcile_loop(owner_id))
        self._in_flight[owner_id] = task
        return task

    async def reconcile(self, owner_id: str) -> None:
        await self.request_reconcile(owner_id)

    async def _reconcile_loop(self, owner_id: str) -> None:
        try:
            while True:
                self._rerun.discard(owner_id)
                await self._reconcile_once(owner_id)
                if owner_id not in self._rerun:
                    break
        finally:
            self._in_flight.pop(owner_id, None)
            for order_id, state in list(self._states.items()):
                if state == STATE_RECONCILING and self._owners.get(order_id) == owner_id:
                    self._states[order_id] = STATE_LISTENING

    async def _reconcile_once(self, owner_id: str) -> None:
        try:
            orders = await self.order_repo.get_user_orders(owner_id)
        except OrderSyncError as e:
            logger.error(f"❌ Reconcile failed for {owner_id}: {e}. Keeping last known state.")
            self._publish_failure(owner_id, e)
            return

        base = self.snapshot(owner_id).user or create_user(owner_id, "", "")
        merged = merge(base, orders)
        self._publish_user(owner_id, merged)
        logger.info(f"🔄 Reconciled {owner_id}: {len(merged.order_history)} orders")
