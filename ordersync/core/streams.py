import asyncio
from typing import Callable, Generic, Optional, Set, TypeVar

T = TypeVar("T")

_CLOSED = object()
_UNSET = object()


class Stream(Generic[T]):
    """
    Cancellable async stream backed by an asyncio.Queue.

    Producers call push() from the event loop; consumers iterate with
    `async for`. close() ends iteration for the consumer once the already
    queued items are drained.
    """

    def __init__(self, on_close: Optional[Callable[["Stream[T]"], None]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, item: T) -> None:
        if self.closed:
            return
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close:
            self._on_close(self)

    def pending(self) -> int:
        return self._queue.qsize()

    async def next(self, timeout: Optional[float] = None) -> T:
        """Wait for the next item. Raises StopAsyncIteration once closed."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the sentinel so later readers also stop
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        return await self.next()


class Observable(Generic[T]):
    """
    Latest-value holder that fans out every change to its streams.

    A new subscriber immediately receives the current value (if any).
    With distinct=True, setting the same value again is not re-emitted.
    """

    def __init__(self, initial=_UNSET, distinct: bool = False):
        self._value = initial
        self._distinct = distinct
        self._streams: Set[Stream[T]] = set()

    @property
    def value(self) -> Optional[T]:
        return None if self._value is _UNSET else self._value

    def set(self, value: T) -> None:
        if self._distinct and self._value is not _UNSET and self._value == value:
            return
        self._value = value
        for stream in list(self._streams):
            stream.push(value)

    def subscribe(self) -> Stream[T]:
        stream: Stream[T] = Stream(on_close=self._streams.discard)
        if self._value is not _UNSET:
            stream.push(self._value)
        self._streams.add(stream)
        return stream

    def close(self) -> None:
        for stream in list(self._streams):
            stream.close()
