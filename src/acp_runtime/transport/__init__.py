"""Transport abstraction layer.

Provides protocol-agnostic channels for client-server communication:
- memory - In-process pair, for embedded mode and tests
- SSE (Server-Sent Events) - Event stream + POST, wide compatibility
- WebSocket - Bidirectional, widely supported

Sessions only depend on the Channel protocol, so clients and servers can
switch between transports without code changes.
"""

from ..config import TransportConfig
from .base import BaseChannel, Channel
from .memory import MemoryChannel
from .sse import SSEClientChannel, SSEConnectionManager, SSEServerChannel
from .websocket import WebSocketClientChannel, WebSocketServerChannel, websocket_routes


async def open_channel(config: TransportConfig) -> Channel:
    """Open a client channel for the configured transport mode.

    Raises:
        ConnectionError: If the connection cannot be established
        ValueError: If the mode is unknown
    """
    if config.mode == "sse":
        return await SSEClientChannel(config).open()
    if config.mode == "websocket":
        return await WebSocketClientChannel(config).open()
    raise ValueError(f"Unknown transport mode: {config.mode}")


__all__ = [
    "BaseChannel",
    "Channel",
    "MemoryChannel",
    "SSEClientChannel",
    "SSEConnectionManager",
    "SSEServerChannel",
    "TransportConfig",
    "WebSocketClientChannel",
    "WebSocketServerChannel",
    "open_channel",
    "websocket_routes",
]
