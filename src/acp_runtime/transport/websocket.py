"""WebSocket transport implementation.

Full-duplex transport: each text frame carries exactly one encoded message.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import websockets
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..config import TransportConfig
from ..errors import SessionClosed
from ..protocol.codec import encode_text
from ..protocol.messages import Message
from .base import BaseChannel

if TYPE_CHECKING:
    from ..server import Server

logger = logging.getLogger(__name__)


class WebSocketServerChannel(BaseChannel):
    """Server end of a WebSocket connection.

    Wraps an accepted Starlette WebSocket. A background reader pumps text
    frames into the inbound buffer.
    """

    def __init__(self, websocket: WebSocket, max_buffer: int = 256) -> None:
        super().__init__(max_buffer=max_buffer)
        self._websocket = websocket
        self._reader_task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Start pumping inbound frames."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            while True:
                data = await self._websocket.receive_text()
                await self._feed(data)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        except SessionClosed:
            pass
        except Exception as e:
            logger.exception(f"WebSocket receive error: {e}")
        finally:
            if not self.closed:
                await self.close()

    async def _do_send(self, message: Message) -> None:
        if self._websocket.client_state != WebSocketState.CONNECTED:
            raise SessionClosed("WebSocket not connected")
        await self._websocket.send_text(encode_text(message))

    async def _do_close(self) -> None:
        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        ):
            with contextlib.suppress(Exception):
                await self._websocket.close()


def websocket_routes(server: Server, path: str = "/acp/ws", max_buffer: int = 256) -> list[WebSocketRoute]:
    """Build the WebSocket route serving sessions of ``server``."""

    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        channel = WebSocketServerChannel(websocket, max_buffer=max_buffer)
        channel.start()
        try:
            await server.serve(channel)
        finally:
            await channel.close()

    return [WebSocketRoute(path, websocket_endpoint)]


class WebSocketClientChannel(BaseChannel):
    """Client end of a WebSocket connection."""

    def __init__(self, config: TransportConfig | None = None) -> None:
        self.config = config or TransportConfig(mode="websocket")
        super().__init__(max_buffer=self.config.max_buffer)
        self._ws: Any = None  # websockets ClientConnection
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        # Convert HTTP URL to WebSocket URL
        base = self.config.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{base.rstrip('/')}{self.config.websocket_path}"

    async def open(self) -> WebSocketClientChannel:
        """Connect to the server.

        Raises:
            ConnectionError: If the connection cannot be established
        """
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.url, ping_interval=30, ping_timeout=10),
                timeout=self.config.timeout,
            )
        except Exception as e:
            self._mark_closed()
            raise ConnectionError(f"Failed to connect to {self.url}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"WebSocket channel connected to {self.url}")
        return self

    async def _read_loop(self) -> None:
        try:
            async for data in self._ws:
                await self._feed(data)
        except websockets.ConnectionClosed as e:
            logger.info(f"WebSocket connection closed: {e}")
        except SessionClosed:
            pass
        except Exception as e:
            logger.exception(f"WebSocket receive loop error: {e}")
        finally:
            if not self.closed:
                await self.close()

    async def _do_send(self, message: Message) -> None:
        if self._ws is None:
            raise SessionClosed("WebSocket not connected")
        try:
            await self._ws.send(encode_text(message))
        except websockets.ConnectionClosed as e:
            raise SessionClosed(f"WebSocket closed: {e}") from e

    async def _do_close(self) -> None:
        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._ws is not None:
            await self._ws.close()
