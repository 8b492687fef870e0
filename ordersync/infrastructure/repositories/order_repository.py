import asyncio
import logging
from typing import AsyncIterator, List, Optional

from sqlalchemy import desc, inspect
from sqlalchemy.exc import SQLAlchemyError

from ordersync.core.errors import DecodeFailure, IndexUnavailable, NotFoundError, TransportError
from ordersync.domain.codec import decode_order, decode_user, encode_order, encode_user
from ordersync.domain.models import Order, OrderStatus, User, create_user
from ordersync.infrastructure.database import (
    ORDER_COLUMNS, OWNER_TIMESTAMP_INDEX, USER_COLUMNS, OrderRecord, UserRecord,
    apply_document, record_to_document,
)
from ordersync.interfaces.IOrderRepository import IOrderRepository

logger = logging.getLogger(__name__)


class SqlAlchemyOrderRepository(IOrderRepository):
    """
    Durable store client over SQLAlchemy.

    Blocking session work runs in a worker thread (asyncio.to_thread) so
    every public call is a suspension point for the caller's event loop.
    Each call uses its own session; SQLAlchemy failures are re-raised as
    TransportError after rollback.
    """

    def __init__(self, session_factory, poll_seconds: float = 2.0):
        self.SessionLocal = session_factory
        self.poll_seconds = poll_seconds
        self._index_ready = False

    # --- Users ---

    async def create_user(self, user_id: str, name: str, email: str) -> User:
        return await asyncio.to_thread(self._create_user, user_id, name, email)

    def _create_user(self, user_id: str, name: str, email: str) -> User:
        user = create_user(user_id, name, email)
        session = self.SessionLocal()
        try:
            record = session.get(UserRecord, user_id)
            if record is None:
                record = UserRecord(id=user_id)
                session.add(record)
            # Full overwrite
            apply_document(record, encode_user(user), USER_COLUMNS)
            session.commit()
            logger.info(f"✅ User created: {user_id}")
            return user
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ DB Error creating user {user_id}: {e}")
            raise TransportError(str(e)) from e
        finally:
            session.close()

    async def get_user(self, user_id: str) -> User:
        return await asyncio.to_thread(self._get_user, user_id)

    def _get_user(self, user_id: str) -> User:
        session = self.SessionLocal()
        try:
            record = session.get(UserRecord, user_id)
            if record is None:
                raise NotFoundError("User", user_id)
            return decode_user(record_to_document(record, USER_COLUMNS), user_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ DB Read Error (user {user_id}): {e}")
            raise TransportError(str(e)) from e
        finally:
            session.close()

    async def update_user(self, user: User) -> None:
        await asyncio.to_thread(self._update_user, user)

    def _update_user(self, user: User) -> None:
        session = self.SessionLocal()
        try:
            record = session.get(UserRecord, user.id)
            if record is None:
                record = UserRecord(id=user.id)
                session.add(record)
            apply_document(record, encode_user(user), USER_COLUMNS)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ DB Error updating user {user.id}: {e}")
            raise TransportError(str(e)) from e
        finally:
            session.close()

    # --- Orders ---

    async def create_order(self, order: Order) -> Order:
        return await asyncio.to_thread(self._create_order, order)

    def _create_order(self, order: Order) -> Order:
        """Order row and owner history append commit together or not at all."""
        session = self.SessionLocal()
        try:
            owner = session.get(UserRecord, order.user_id)
            if owner is None:
                raise NotFoundError("User", order.user_id)

            record = OrderRecord(id=order.id)
            apply_document(record, encode_order(order), ORDER_COLUMNS)
            session.add(record)
            session.flush()

            self._append_to_history(owner, order)
            session.commit()
            logger.info(f"✅ Order {order.id} saved for user {order.user_id}")
            return order
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ DB Error creating order {order.id}: {e}")
            raise TransportError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _append_to_history(self, owner: UserRecord, order: Order) -> None:
        history = [entry for entry in (owner.order_history or []) if entry.get("id") != order.id]
        history.append(encode_order(order, include_id=True))
        # Reassign so the JSON column is flagged dirty
        owner.order_history = history

    async def get_order(self, order_id: str) -> Order:
        return await asyncio.to_thread(self._get_order, order_id)

    def _get_order(self, order_id: str) -> Order:
        session = self.SessionLocal()
        try:
            record = session.get(OrderRecord, order_id)
            if record is None:
                raise NotFoundError("Order", order_id)
            return decode_order(record_to_document(record, ORDER_COLUMNS), order_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ DB Read Error (order {order_id}): {e}")
            raise TransportError(str(e)) from e
        finally:
            session.close()

    async def update_order_status(self, order_id: str, status: OrderStatus) -> None:
        await asyncio.to_thread(self._update_order_status, order_id, OrderStatus.parse(status))

    def _update_order_status(self, order_id: str, status: OrderStatus) -> None:
        session = self.SessionLocal()
        try:
            record = session.get(OrderRecord, order_id)
            if record is None:
                raise NotFoundError("Order", order_id)
            current = decode_order(record_to_document(record, ORDER_COLUMNS), order_id)
            updated = current.with_status(status)  # raises InvalidTransition
            record.status = updated.status.value

            # Keep the owner's embedded copy in step
            owner = session.get(UserRecord, current.user_id)
            if owner is not None and any(e.get("id") == order_id for e in owner.order_history or []):
                self._append_to_history(owner, updated)

            session.commit()
            logger.info(f"✅ Order {order_id}: {current.status.value} -> {updated.status.value}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ DB Error updating order {order_id}: {e}")
            raise TransportError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def get_user_orders(self, user_id: str) -> List[Order]:
        return await asyncio.to_thread(self._get_user_orders, user_id)

    def _get_user_orders(self, user_id: str) -> List[Order]:
        """
        Orders owned by user_id, newest first.
        Falls back to a filter-only query sorted here when the composite
        index is not available yet.
        """
        session = self.SessionLocal()
        try:
            try:
                records = self._query_sorted(session, user_id)
            except IndexUnavailable:
                logger.warning(f"⚠️ Index {OWNER_TIMESTAMP_INDEX.name} unavailable. Sorting orders client-side.")
                records = session.query(OrderRecord).filter(OrderRecord.user_id == user_id).all()
            orders = self._decode_all(records)
            # Same ordering guarantee on both paths
            orders.sort(key=lambda o: o.id)
            orders.sort(key=lambda o: o.timestamp, reverse=True)
            return orders
        except SQLAlchemyError as e:
            logger.error(f"❌ DB Read Error (orders of {user_id}): {e}")
            raise TransportError(str(e)) from e
        finally:
            session.close()

    def _query_sorted(self, session, user_id: str):
        if not self._index_ready:
            names = {ix["name"] for ix in inspect(session.get_bind()).get_indexes(OrderRecord.__tablename__)}
            if OWNER_TIMESTAMP_INDEX.name not in names:
                raise IndexUnavailable(OWNER_TIMESTAMP_INDEX.name)
            self._index_ready = True
        return (
            session.query(OrderRecord)
            .filter(OrderRecord.user_id == user_id)
            .order_by(desc(OrderRecord.timestamp))
            .all()
        )

    def _decode_all(self, records) -> List[Order]:
        orders = []
        for record in records:
            try:
                orders.append(decode_order(record_to_document(record, ORDER_COLUMNS), record.id))
            except DecodeFailure as e:
                logger.warning(f"⚠️ Skipping malformed order {record.id}: {e}")
        return orders

    async def watch_user_orders(self, user_id: str) -> AsyncIterator[List[Order]]:
        """Live query: yields the current result, then each changed result."""
        last: Optional[List[Order]] = None
        while True:
            orders = await self.get_user_orders(user_id)
            if orders != last:
                last = orders
                yield orders
            await asyncio.sleep(self.poll_seconds)
