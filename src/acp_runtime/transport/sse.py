"""Server-Sent Events (SSE) transport.

Server -> client traffic flows over one long-lived event stream per
connection; client -> server traffic is POSTed to a per-connection URL
that the server announces as the first event of the stream.

Wire format:
    GET /acp/events
        event: endpoint
        data: /acp/messages?connection=<id>

        event: message
        data: {"jsonrpc": "2.0", ...}

    POST /acp/messages?connection=<id>   body: one encoded message
        202 accepted | 400 undecodable | 404 unknown connection
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from ..config import TransportConfig
from ..errors import DecodeError, SessionClosed
from ..protocol.codec import decode, encode, encode_text
from ..protocol.messages import Message
from .base import BaseChannel, Frame

if TYPE_CHECKING:
    from ..server import Server

logger = logging.getLogger(__name__)

HEARTBEAT = ": heartbeat\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_sse(data: str, event: str | None = None) -> str:
    """Render one SSE event."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


@dataclass
class SSEEvent:
    """A parsed SSE event."""

    event: str = "message"
    data: str = ""
    id: str | None = None


@dataclass
class SSEParser:
    """Incremental SSE line parser.

    Feed lines without their terminators; a blank line dispatches the
    event accumulated so far.
    """

    _event: str | None = None
    _data: list[str] = field(default_factory=list)
    _id: str | None = None

    def feed(self, line: str) -> SSEEvent | None:
        if line == "":
            if not self._data and self._event is None:
                return None
            event = SSEEvent(event=self._event or "message", data="\n".join(self._data), id=self._id)
            self._event = None
            self._data = []
            return event

        if line.startswith(":"):
            return None  # Comment (heartbeat)

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None


# =============================================================================
# Server side
# =============================================================================


class SSEServerChannel(BaseChannel):
    """Server end of one SSE connection.

    Inbound frames are delivered by the POST endpoint; outbound messages are
    queued for the event-stream response generator.
    """

    def __init__(self, connection_id: str, max_buffer: int = 256) -> None:
        super().__init__(max_buffer=max_buffer)
        self.connection_id = connection_id
        self._outbound: asyncio.Queue[str] = asyncio.Queue(maxsize=max_buffer)

    async def deliver(self, frame: Frame) -> None:
        """Accept a frame POSTed by the client."""
        await self._feed(frame)

    async def _do_send(self, message: Message) -> None:
        await self._outbound.put(encode_text(message))

    async def _do_close(self) -> None:
        pass

    async def _next_outbound(self) -> str | None:
        if not self._outbound.empty():
            return self._outbound.get_nowait()
        if self.closed:
            return None
        try:
            return await self._until_closed(self._outbound.get())
        except SessionClosed:
            # Flush what was queued before close
            if not self._outbound.empty():
                return self._outbound.get_nowait()
            return None

    async def stream(self, heartbeat_interval: float = 15.0) -> AsyncIterator[str]:
        """Yield SSE-formatted outbound events until the channel closes.

        One getter task survives across heartbeats; a timeout never cancels
        a get that may already have dequeued a frame.
        """
        getter: asyncio.Task[str | None] | None = None
        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(self._next_outbound())
                done, _ = await asyncio.wait({getter}, timeout=heartbeat_interval)
                if not done:
                    yield HEARTBEAT
                    continue
                frame = getter.result()
                getter = None
                if frame is None:
                    return
                yield format_sse(frame, event="message")
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await getter


class SSEConnectionManager:
    """Owns the SSE connections of one server.

    Each GET on the events route opens a new connection, i.e. a new server
    session, which lives until the stream is dropped or the channel closes.
    """

    def __init__(
        self,
        server: Server,
        *,
        events_path: str = "/acp/events",
        messages_path: str = "/acp/messages",
        heartbeat_interval: float = 15.0,
        max_buffer: int = 256,
    ) -> None:
        self._server = server
        self._events_path = events_path
        self._messages_path = messages_path
        self._heartbeat_interval = heartbeat_interval
        self._max_buffer = max_buffer
        self._channels: dict[str, SSEServerChannel] = {}

    @property
    def connection_count(self) -> int:
        return len(self._channels)

    def get(self, connection_id: str) -> SSEServerChannel | None:
        return self._channels.get(connection_id)

    def open_connection(self) -> SSEServerChannel:
        """Register a new connection channel."""
        channel = SSEServerChannel(uuid.uuid4().hex, max_buffer=self._max_buffer)
        self._channels[channel.connection_id] = channel
        return channel

    async def events_endpoint(self, request: Request) -> StreamingResponse:
        """SSE endpoint - one server session per stream."""
        channel = self.open_connection()
        serve_task = asyncio.create_task(self._server.serve(channel))
        root_path = request.scope.get("root_path", "")
        endpoint_url = f"{root_path}{self._messages_path}?connection={channel.connection_id}"
        logger.info(f"SSE connection opened: {channel.connection_id}")

        async def event_stream() -> AsyncIterator[str]:
            yield format_sse(endpoint_url, event="endpoint")
            try:
                async for frame in channel.stream(self._heartbeat_interval):
                    yield frame
                    if frame == HEARTBEAT and await request.is_disconnected():
                        break
            finally:
                await self._drop(channel, serve_task)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    async def messages_endpoint(self, request: Request) -> Response:
        """POST endpoint - client -> server messages for one connection."""
        connection_id = request.query_params.get("connection", "")
        channel = self._channels.get(connection_id)
        if channel is None or channel.closed:
            return JSONResponse({"error": f"Unknown connection: {connection_id}"}, status_code=404)

        body = await request.body()
        try:
            decode(body)
        except DecodeError as e:
            logger.warning(f"Undecodable message on connection {connection_id}: {e.message}")
            await channel.close()
            raw = e.raw.decode("utf-8", "replace") if isinstance(e.raw, bytes) else e.raw
            return JSONResponse({"error": e.message, "raw": raw}, status_code=400)

        try:
            await channel.deliver(body)
        except SessionClosed:
            return JSONResponse({"error": "Connection closed"}, status_code=404)
        return Response(status_code=202)

    async def _drop(self, channel: SSEServerChannel, serve_task: asyncio.Task[None]) -> None:
        self._channels.pop(channel.connection_id, None)
        await channel.close()
        with contextlib.suppress(asyncio.CancelledError):
            await serve_task
        logger.info(f"SSE connection closed: {channel.connection_id}")

    async def aclose(self) -> None:
        """Close every open connection."""
        for channel in list(self._channels.values()):
            await channel.close()

    def routes(self) -> list[Route]:
        return [
            Route(self._events_path, self.events_endpoint, methods=["GET"]),
            Route(self._messages_path, self.messages_endpoint, methods=["POST"]),
        ]


# =============================================================================
# Client side
# =============================================================================


class SSEClientChannel(BaseChannel):
    """Client end of an SSE connection.

    Handles:
    - Opening the event stream and waiting for the endpoint announcement
    - Parsing SSE format into inbound frames
    - POSTing outbound messages to the announced endpoint
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or TransportConfig(mode="sse")
        super().__init__(max_buffer=self.config.max_buffer)
        self._client = client
        self._owns_client = client is None
        self._response: httpx.Response | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._endpoint: str | None = None
        self._endpoint_ready: asyncio.Future[str] | None = None

    @property
    def endpoint(self) -> str | None:
        """POST URL announced by the server."""
        return self._endpoint

    async def open(self) -> SSEClientChannel:
        """Connect the event stream.

        Raises:
            ConnectionError: If the stream cannot be opened or never
                announces its endpoint
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout, read=None),  # No read timeout for SSE
                headers=self.config.headers,
            )

        self._endpoint_ready = asyncio.get_running_loop().create_future()
        try:
            request = self._client.build_request(
                "GET",
                self.config.events_path,
                headers={"Accept": "text/event-stream"},
            )
            self._response = await self._client.send(request, stream=True)
            self._response.raise_for_status()

            self._reader_task = asyncio.create_task(self._read_loop())
            self._endpoint = await asyncio.wait_for(
                asyncio.shield(self._endpoint_ready), timeout=self.config.timeout
            )
        except Exception as e:
            await self.close()
            raise ConnectionError(f"Failed to open event stream: {e}") from e

        logger.info(f"SSE channel connected (endpoint={self._endpoint})")
        return self

    async def _read_loop(self) -> None:
        assert self._response is not None
        parser = SSEParser()
        try:
            async for line in self._response.aiter_lines():
                event = parser.feed(line)
                if event is None:
                    continue
                if event.event == "endpoint":
                    if self._endpoint_ready and not self._endpoint_ready.done():
                        self._endpoint_ready.set_result(event.data)
                elif event.event == "message":
                    await self._feed(event.data)
        except SessionClosed:
            pass
        except httpx.HTTPError as e:
            logger.warning(f"SSE stream lost: {e}")
        finally:
            if self._endpoint_ready and not self._endpoint_ready.done():
                self._endpoint_ready.set_exception(
                    ConnectionError("Event stream ended before endpoint was announced")
                )
            if not self.closed:
                await self.close()

    async def _do_send(self, message: Message) -> None:
        if self._client is None or self._endpoint is None:
            raise SessionClosed("Channel not open")
        try:
            response = await self._client.post(
                self._endpoint,
                content=encode(message),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"SSE send failed: {e}")
            raise SessionClosed(f"Send failed: {e}") from e

    async def _do_close(self) -> None:
        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._response is not None:
            await self._response.aclose()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
