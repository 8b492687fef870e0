from abc import ABC, abstractmethod
from typing import Any, Callable

from ordersync.core.streams import Observable

def status_path(order_id: str) -> str:
    return f"orders/{order_id}/status"


class ListenerHandle:
    """Owned registration of a store listener. cancel() is idempotent and
    takes effect immediately: no callback fires after it returns."""

    def __init__(self, path: str, callback: Callable[[Any], None]):
        self.path = path
        self._callback = callback
        self.active = True

    def dispatch(self, value: Any) -> None:
        if self.active:
            self._callback(value)

    def cancel(self) -> None:
        self.active = False


class IStatusStore(ABC):
    """Ephemeral keyed store with point listeners.

    `connected` reports reachability of the backing service.
    """

    connected: Observable[bool]

    @abstractmethod
    async def get(self, path: str) -> Any:
        pass

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        pass

    @abstractmethod
    def listen(self, path: str, callback: Callable[[Any], None]) -> ListenerHandle:
        """Register a callback receiving the current value (None if the node
        does not exist) and then every later value written to `path`."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
