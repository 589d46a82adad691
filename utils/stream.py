import asyncio
import logging
from typing import AsyncIterator, Generic, Optional, TypeVar

from utils.store import Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class SnapshotStream(Generic[T]):
    """
    Bridges store watch callbacks (which may fire on a foreign thread) onto an
    asyncio loop as an async iterator.

        stream = SnapshotStream()
        stream.attach(store.watch_document(path, stream.push))
        async for item in stream:
            ...
        stream.close()   # unsubscribes and ends iteration
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscription: Optional[Subscription] = None
        self._closed = False

    def attach(self, subscription: Subscription) -> "SnapshotStream[T]":
        self._subscription = subscription
        if self._closed:
            subscription.unsubscribe()
        return self

    def push(self, item: T) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # цикл уже закрыт
            logger.debug("Dropping snapshot: event loop closed")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)
        except RuntimeError:
            pass

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "SnapshotStream[T]":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()
