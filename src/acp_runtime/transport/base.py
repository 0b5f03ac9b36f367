"""Transport abstraction base classes.

A Channel is an ordered, bidirectional message stream between exactly one
client endpoint and one server endpoint. Implementations differ only in how
bytes move; framing and decoding live here so every transport behaves the
same way:

- ``send`` may suspend until buffer space is available
- ``receive`` yields decoded messages until the channel closes, then ends
- ``close`` is idempotent and wakes every pending ``send``/``receive``
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable
from typing import Protocol, TypeVar, runtime_checkable

from ..errors import SessionClosed
from ..protocol.codec import decode
from ..protocol.messages import Message

logger = logging.getLogger(__name__)

T = TypeVar("T")

Frame = str | bytes


@runtime_checkable
class Channel(Protocol):
    """Protocol for a bidirectional message channel.

    Implementations:
    - MemoryChannel: in-process pair (embedded mode, tests)
    - SSEServerChannel / SSEClientChannel: HTTP event stream + POST
    - WebSocketServerChannel / WebSocketClientChannel: full-duplex WebSocket
    """

    @property
    def closed(self) -> bool:
        """True once the channel has been closed from either end."""
        ...

    async def send(self, message: Message) -> None:
        """Send a message.

        Raises:
            SessionClosed: If the channel is closed (or closes while waiting)
        """
        ...

    def receive(self) -> AsyncIterator[Message]:
        """Iterate over inbound messages until the channel closes.

        Raises:
            DecodeError: If the peer sent a malformed frame
        """
        ...

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        ...


class BaseChannel(ABC):
    """Base class for channels with common functionality.

    Provides:
    - Bounded inbound frame buffer, decoded lazily on receive
    - Close propagation to waiters
    - Send serialization
    """

    def __init__(self, max_buffer: int = 256) -> None:
        self._inbound: asyncio.Queue[Frame] = asyncio.Queue(maxsize=max_buffer)
        self._closed_event = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed_event.is_set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def send(self, message: Message) -> None:
        if self.closed:
            raise SessionClosed("Channel closed")
        async with self._send_lock:
            await self._until_closed(self._do_send(message))

    async def receive(self) -> AsyncIterator[Message]:
        while True:
            if self.closed and self._inbound.empty():
                return
            try:
                frame = await self._until_closed(self._inbound.get())
            except SessionClosed:
                # Frames that arrived before close are still delivered, in order
                while not self._inbound.empty():
                    yield decode(self._inbound.get_nowait())
                return
            yield decode(frame)

    async def close(self) -> None:
        async with self._close_lock:
            if self.closed:
                return
            self._closed_event.set()
            try:
                await self._do_close()
            except Exception as e:
                logger.debug(f"{self.__class__.__name__} close error: {e}")
            logger.debug(f"{self.__class__.__name__} closed")

    async def _feed(self, frame: Frame) -> None:
        """Queue an inbound frame, suspending while the buffer is full."""
        if self.closed:
            raise SessionClosed("Channel closed")
        await self._until_closed(self._inbound.put(frame))

    def _mark_closed(self) -> None:
        """Flag the channel closed without running transport teardown."""
        self._closed_event.set()

    async def _until_closed(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the channel closes first."""
        task = asyncio.ensure_future(awaitable)
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            done, _ = await asyncio.wait({task, closer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            closer.cancel()
            raise
        closer.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise SessionClosed("Channel closed")

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_send(self, message: Message) -> None:
        """Implementation-specific send logic."""
        ...

    @abstractmethod
    async def _do_close(self) -> None:
        """Implementation-specific teardown logic."""
        ...

    async def __aenter__(self) -> BaseChannel:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
