"""
Bounded, closable queue connecting the pipeline stages.

A consumer iterates the channel with ``async for`` and the loop ends once
the producer has closed it and every queued item has been read.
"""

import asyncio
from typing import Any, AsyncIterator, Generic, TypeVar

from .exceptions import PipelineStateError

T = TypeVar("T")

_CLOSED: Any = object()


class Channel(Generic[T]):
    """
    FIFO queue with close semantics.

    In the default mode ``put`` suspends while the channel is full, which
    gives backpressure to the producer. With ``drop_oldest=True`` ``put``
    never suspends: when full, the oldest queued item is discarded and
    counted in ``dropped``.
    """

    def __init__(self, maxsize: int, name: str = "channel", drop_oldest: bool = False) -> None:
        if maxsize < 1:
            raise ValueError("channel capacity must be at least 1")
        self.name = name
        self.maxsize = maxsize
        self.drop_oldest = drop_oldest
        self.dropped = 0
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._drained = False
        self._close_pending = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: T) -> None:
        if self._closed:
            raise PipelineStateError(f"put on closed channel {self.name}")
        if self.drop_oldest:
            self._put_dropping(item)
        else:
            await self._queue.put(item)

    def put_nowait(self, item: T) -> None:
        """Non-suspending put. Only valid on drop-oldest channels."""
        if not self.drop_oldest:
            raise PipelineStateError(f"put_nowait requires a drop-oldest channel ({self.name})")
        if self._closed:
            raise PipelineStateError(f"put on closed channel {self.name}")
        self._put_dropping(item)

    def _put_dropping(self, item: Any) -> None:
        while self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def close(self) -> None:
        """Signal end-of-stream. Items already queued are still delivered."""
        self.close_nowait()

    def close_nowait(self) -> None:
        """
        Close without suspending.

        On a full backpressure channel the end marker is held back and
        enqueued by the consumer as soon as it has taken an item.
        """
        if self._closed:
            return
        self._closed = True
        if self.drop_oldest:
            self._put_dropping(_CLOSED)
        elif self._queue.full():
            self._close_pending = True
        else:
            self._queue.put_nowait(_CLOSED)

    def abort(self) -> int:
        """
        Close and discard everything queued. Used once the consumer is gone.

        A producer suspended in ``put`` is released; its next ``put`` raises.
        Returns the number of discarded items.
        """
        self._closed = True
        self._close_pending = False
        discarded = 0
        while not self._queue.empty():
            if self._queue.get_nowait() is not _CLOSED:
                discarded += 1
        return discarded

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if self._drained:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            raise StopAsyncIteration
        if self._close_pending:
            self._close_pending = False
            self._queue.put_nowait(_CLOSED)
        return item
