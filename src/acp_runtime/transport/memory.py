"""In-process channel pair.

Both ends live in the same event loop. Messages are still encoded on send
and decoded on receive, so embedded mode exercises the same codec path as
the network transports.
"""

from __future__ import annotations

from ..protocol.codec import encode
from ..protocol.messages import Message
from .base import BaseChannel, Frame


class MemoryChannel(BaseChannel):
    """One end of an in-memory channel pair.

    Usage:
        client_end, server_end = MemoryChannel.pair()
        asyncio.create_task(server.serve(server_end))
        session = await connect(client_end)
    """

    def __init__(self, max_buffer: int = 256) -> None:
        super().__init__(max_buffer=max_buffer)
        self._peer: MemoryChannel | None = None

    @classmethod
    def pair(cls, max_buffer: int = 256) -> tuple[MemoryChannel, MemoryChannel]:
        """Create two connected ends. Closing either closes both."""
        first = cls(max_buffer=max_buffer)
        second = cls(max_buffer=max_buffer)
        first._peer = second
        second._peer = first
        return first, second

    async def send_raw(self, frame: Frame) -> None:
        """Push an undecoded frame to the peer (for tests and proxies)."""
        if self._peer is None:
            raise RuntimeError("Channel has no peer")
        async with self._send_lock:
            await self._until_closed(self._peer._feed(frame))

    async def _do_send(self, message: Message) -> None:
        if self._peer is None:
            raise RuntimeError("Channel has no peer")
        await self._peer._feed(encode(message))

    async def _do_close(self) -> None:
        peer = self._peer
        if peer is not None and not peer.closed:
            await peer.close()
