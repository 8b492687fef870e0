import logging
import time
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import JSON, TypeDecorator

logger = logging.getLogger(__name__)

Base = declarative_base()

_TIMESTAMP_TAG = "__timestamp__"


class DocumentJSON(TypeDecorator):
    """JSON column that keeps datetimes as native store timestamps
    (tagged ISO strings on disk, datetime objects in Python)."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return _tag_timestamps(value)

    def process_result_value(self, value, dialect):
        return _untag_timestamps(value)


def _tag_timestamps(value):
    if isinstance(value, datetime):
        return {_TIMESTAMP_TAG: value.isoformat()}
    if isinstance(value, dict):
        return {k: _tag_timestamps(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_tag_timestamps(v) for v in value]
    return value


def _untag_timestamps(value):
    if isinstance(value, dict):
        if set(value) == {_TIMESTAMP_TAG}:
            return datetime.fromisoformat(value[_TIMESTAMP_TAG])
        return {k: _untag_timestamps(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_untag_timestamps(v) for v in value]
    return value


class OrderRecord(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    drink_type = Column(String, nullable=True)
    size = Column(String, nullable=True)
    milk = Column(String, nullable=True)
    flavor = Column(String, nullable=True)
    is_iced = Column(Boolean, nullable=True)
    price = Column(Float, nullable=True)
    location = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    additional_requests = Column(String, nullable=True)
    status = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=True)


# Composite index backing the owner + newest-first query
OWNER_TIMESTAMP_INDEX = Index("ix_orders_user_id_timestamp", OrderRecord.user_id, OrderRecord.timestamp)

# document key -> OrderRecord column
ORDER_COLUMNS = {
    "userId": "user_id",
    "drinkType": "drink_type",
    "size": "size",
    "milk": "milk",
    "flavor": "flavor",
    "isIced": "is_iced",
    "price": "price",
    "location": "location",
    "paymentMethod": "payment_method",
    "additionalRequests": "additional_requests",
    "status": "status",
    "timestamp": "timestamp",
}


class UserRecord(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    order_history = Column(DocumentJSON, nullable=True)


USER_COLUMNS = {
    "name": "name",
    "email": "email",
    "orderHistory": "order_history",
}


def record_to_document(record, columns) -> dict:
    """Null columns are absent fields."""
    document = {}
    for key, column in columns.items():
        value = getattr(record, column)
        if value is not None:
            document[key] = value
    return document


def apply_document(record, document, columns) -> None:
    """Merge-style write: only keys present in the document are touched."""
    for key, column in columns.items():
        if key in document:
            setattr(record, column, document[key])


def build_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory databases live as long as their single connection
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(engine, retries: int = 1, wait_seconds: float = 0.0) -> None:
    """Create tables, retrying while the database is still coming up."""
    for attempt in range(retries):
        try:
            logger.info(f"🔄 Attempting DB connection ({attempt + 1}/{retries})...")
            Base.metadata.create_all(bind=engine)
            logger.info("✅ DB Connected and Tables Created.")
            return
        except OperationalError:
            if attempt + 1 == retries:
                logger.error("❌ Could not connect to DB after retries.")
                raise
            logger.warning(f"⚠️ DB not ready yet. Waiting {wait_seconds}s...")
            time.sleep(wait_seconds)
