"""Thin wrapper around :class:`asyncio.Queue` used as the command FIFO.

The standard queue signals an empty queue with :class:`asyncio.QueueEmpty`;
this wrapper keeps callers on the small surface they actually need: enqueue
without waiting, await the next item, and drain whatever is left on shutdown.
"""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

__all__ = ["IPCQueue"]

_T = TypeVar("_T")


class IPCQueue(Generic[_T]):
    """A *very* small ergonomic FIFO layer on top of :class:`asyncio.Queue`.

    Items come out strictly in the order they were put in.  The queue must be
    used from the event loop that owns it.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[_T] = asyncio.Queue()

    def put_nowait(self, item: _T) -> None:
        self._queue.put_nowait(item)

    async def get(self) -> _T:
        """Wait for and return the oldest item."""
        return await self._queue.get()

    def drain(self) -> list[_T]:
        """Remove and return every queued item without waiting."""
        items: list[_T] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return items

    def __len__(self) -> int:
        return self._queue.qsize()
