import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ordersync.core.errors import TransportError
from ordersync.core.streams import Observable
from ordersync.interfaces.IStatusStore import IStatusStore, ListenerHandle

logger = logging.getLogger(__name__)


class MemoryStatusStore(IStatusStore):
    """In-process store. Used when Redis is unreachable and in tests."""

    def __init__(self):
        self._memory_store: Dict[str, Any] = {}
        self._listeners: Dict[str, List[ListenerHandle]] = defaultdict(list)
        self.connected = Observable(True, distinct=True)

    async def get(self, path: str) -> Any:
        return self._memory_store.get(path)

    async def set(self, path: str, value: Any) -> None:
        self._memory_store[path] = value
        loop = asyncio.get_running_loop()
        for handle in list(self._listeners.get(path, [])):
            loop.call_soon(handle.dispatch, value)

    def listen(self, path: str, callback: Callable[[Any], None]) -> ListenerHandle:
        handle = _MemoryListener(path, callback, self)
        self._listeners[path].append(handle)
        # Initial snapshot is read at delivery time, like a fresh value event
        asyncio.get_running_loop().call_soon(lambda: handle.dispatch(self._memory_store.get(path)))
        return handle

    def _remove(self, handle: ListenerHandle) -> None:
        listeners = self._listeners.get(handle.path, [])
        if handle in listeners:
            listeners.remove(handle)

    async def close(self) -> None:
        for listeners in self._listeners.values():
            for handle in list(listeners):
                handle.cancel()
        self._listeners.clear()


class _MemoryListener(ListenerHandle):
    def __init__(self, path, callback, store: MemoryStatusStore):
        super().__init__(path, callback)
        self._store = store

    def cancel(self) -> None:
        super().cancel()
        self._store._remove(self)


class RedisStatusStore(IStatusStore):
    """
    Redis-backed status store.

    Each node is a plain string key; writes are also PUBLISHed on a channel
    named after the key so listeners get pushed updates. Last known values
    are mirrored in RAM and served when Redis stops answering.
    """

    def __init__(self, redis_url: str, heartbeat_seconds: float = 5.0, client=None):
        self.redis = client or redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=1  # Fail fast if Redis is down
        )
        self.heartbeat_seconds = heartbeat_seconds
        self.resubscribe_seconds = min(heartbeat_seconds, 1.0)
        self.connected = Observable(False, distinct=True)
        self._memory_store: Dict[str, Any] = {}
        self._tasks: Dict[ListenerHandle, asyncio.Task] = {}
        self._heartbeat: Optional[asyncio.Task] = None

    async def connect(self) -> bool:
        """Ping once and start the heartbeat. Returns reachability."""
        reachable = await self._ping()
        if reachable:
            logger.info("✅ StatusStore: Connected to Redis.")
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())
        return reachable

    async def _ping(self) -> bool:
        try:
            await self.redis.ping()
            self.connected.set(True)
            return True
        except (RedisError, OSError) as e:
            self._handle_redis_error(e)
            return False

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            await self._ping()

    async def get(self, path: str) -> Any:
        try:
            value = await self.redis.get(path)
            self._memory_store[path] = value
            return value
        except RedisError as e:
            self._handle_redis_error(e)
            # Last known value
            return self._memory_store.get(path)

    async def set(self, path: str, value: Any) -> None:
        try:
            await self.redis.set(path, value)
            await self.redis.publish(path, value)
        except RedisError as e:
            self._handle_redis_error(e)
            raise TransportError(f"Status write failed for {path}: {e}") from e
        self._memory_store[path] = value

    def listen(self, path: str, callback: Callable[[Any], None]) -> ListenerHandle:
        handle = _RedisListener(path, callback, self)
        self._tasks[handle] = asyncio.create_task(self._listen_loop(handle))
        return handle

    async def _listen_loop(self, handle: ListenerHandle):
        # Each pass subscribes afresh; an outage ends the pass, not the listener
        while handle.active:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(handle.path)
                self.connected.set(True)
                # Subscribed before reading, so no write can slip in between
                handle.dispatch(await self.get(handle.path))
                while handle.active:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message and message.get("type") == "message":
                        handle.dispatch(message["data"])
            except RedisError as e:
                self._handle_redis_error(e)
            finally:
                try:
                    await pubsub.unsubscribe(handle.path)
                    await pubsub.aclose()
                except RedisError as e:
                    logger.warning(f"⚠️ Redis pubsub cleanup failed for {handle.path}: {e}")
            if handle.active:
                logger.info(f"🔄 Resubscribing to {handle.path} in {self.resubscribe_seconds}s")
                await asyncio.sleep(self.resubscribe_seconds)

    def _forget(self, handle: ListenerHandle) -> None:
        task = self._tasks.pop(handle, None)
        if task is not None and not task.done():
            task.cancel()

    async def close(self) -> None:
        for handle in list(self._tasks):
            handle.cancel()
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        await self.redis.aclose()

    def _handle_redis_error(self, e):
        """Log and flip the connectivity flag; the heartbeat flips it back."""
        logger.error(f"❌ Redis Error: {e}. Serving last known status values.")
        self.connected.set(False)


class _RedisListener(ListenerHandle):
    def __init__(self, path, callback, store: RedisStatusStore):
        super().__init__(path, callback)
        self._store = store

    def cancel(self) -> None:
        super().cancel()
        self._store._forget(self)


async def build_status_store(redis_url: str, heartbeat_seconds: float) -> IStatusStore:
    """Redis if reachable at startup, otherwise the in-process fallback."""
    store = RedisStatusStore(redis_url, heartbeat_seconds)
    if await store.connect():
        return store
    logger.warning("⚠️ StatusStore: Redis unreachable. Using RAM fallback.")
    await store.close()
    return MemoryStatusStore()
