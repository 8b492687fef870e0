from abc import ABC, abstractmethod
from typing import AsyncIterator, List

from ordersync.domain.models import Order, OrderStatus, User

class IOrderRepository(ABC):
    @abstractmethod
    async def create_user(self, user_id: str, name: str, email: str) -> User:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> User:
        pass

    @abstractmethod
    async def update_user(self, user: User) -> None:
        pass

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Order:
        pass

    @abstractmethod
    async def update_order_status(self, order_id: str, status: OrderStatus) -> None:
        pass

    @abstractmethod
    async def get_user_orders(self, user_id: str) -> List[Order]:
        pass

    @abstractmethod
    def watch_user_orders(self, user_id: str) -> AsyncIterator[List[Order]]:
        pass
