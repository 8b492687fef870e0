import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ordersync.core.errors import DecodeFailure, InvalidTransition, NotFoundError, OrderSyncError, TransportError
from ordersync.domain.codec import encode_order, encode_user
from ordersync.domain.models import Order, OrderStatus

router = APIRouter()
logger = logging.getLogger(__name__)


class UserPayload(BaseModel):
    id: str
    name: str
    email: str


class OrderPayload(BaseModel):
    userId: str
    drinkType: str
    location: str
    paymentMethod: str
    size: str = "Medium"
    milk: str = ""
    flavor: str = ""
    isIced: bool = True
    price: Decimal = Field(default=Decimal("4.99"), ge=0)
    additionalRequests: Optional[str] = None


class StatusPayload(BaseModel):
    status: str


def _order_json(order: Order) -> dict:
    document = encode_order(order, include_id=True)
    document["timestamp"] = order.timestamp.isoformat()
    return document


def _raise_http(e: Exception):
    """Translate the error taxonomy into HTTP status codes."""
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e
    if isinstance(e, InvalidTransition):
        raise HTTPException(status_code=409, detail=str(e)) from e
    if isinstance(e, (DecodeFailure, ValueError)):
        raise HTTPException(status_code=422, detail=str(e)) from e
    if isinstance(e, TransportError):
        logger.error(f"❌ Backend unavailable: {e}")
        raise HTTPException(status_code=503, detail="Backend unavailable") from e
    raise e


@router.post("/users")
async def create_user(request: Request, payload: UserPayload):
    repo = request.app.state.order_repo
    try:
        user = await repo.create_user(payload.id, payload.name, payload.email)
    except OrderSyncError as e:
        _raise_http(e)
    return {"id": user.id, **encode_user(user)}


@router.get("/users/{user_id}")
async def get_user(request: Request, user_id: str):
    try:
        user = await request.app.state.order_repo.get_user(user_id)
    except OrderSyncError as e:
        _raise_http(e)
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "orderHistory": [_order_json(o) for o in user.order_history],
    }


@router.get("/users/{user_id}/orders")
async def get_user_orders(request: Request, user_id: str):
    try:
        orders = await request.app.state.order_repo.get_user_orders(user_id)
    except OrderSyncError as e:
        _raise_http(e)
    return {"orders": [_order_json(o) for o in orders]}


@router.post("/orders", status_code=201)
async def create_order(request: Request, payload: OrderPayload):
    order = Order.new(
        payload.userId,
        payload.drinkType,
        payload.location,
        payload.paymentMethod,
        size=payload.size,
        milk=payload.milk,
        flavor=payload.flavor,
        is_iced=payload.isIced,
        price=payload.price,
        additional_requests=payload.additionalRequests or None,
    )
    try:
        # Persists, seeds the live node and starts tracking the order
        saved = await request.app.state.orchestrator.place_order(order)
    except OrderSyncError as e:
        _raise_http(e)
    return _order_json(saved)


@router.get("/orders/{order_id}")
async def get_order(request: Request, order_id: str):
    try:
        order = await request.app.state.order_repo.get_order(order_id)
    except OrderSyncError as e:
        _raise_http(e)
    return _order_json(order)


@router.post("/orders/{order_id}/status")
async def update_status(request: Request, order_id: str, payload: StatusPayload):
    """Operator-side status change: live channel first, then the durable store."""
    try:
        await request.app.state.channel.publish(order_id, payload.status)
    except (OrderSyncError, ValueError) as e:
        _raise_http(e)
    status = OrderStatus.parse(payload.status).value
    logger.info(f"📣 Order {order_id} -> {status}")
    return {"id": order_id, "status": status}
