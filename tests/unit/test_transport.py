"""Unit tests for the channel transports.

Tests:
- MemoryChannel ordering, close propagation and backpressure
- SSE framing (format_sse / SSEParser) and the server channel stream
- SSE client channel against a mocked HTTP transport
- Channel selection by transport mode
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from acp_runtime.config import TransportConfig
from acp_runtime.errors import DecodeError, SessionClosed
from acp_runtime.protocol import Notification, Request, Response, decode, encode_text
from acp_runtime.transport import Channel, MemoryChannel, open_channel
from acp_runtime.transport.sse import (
    HEARTBEAT,
    SSEClientChannel,
    SSEEvent,
    SSEParser,
    SSEServerChannel,
    format_sse,
)
from acp_runtime.transport.websocket import WebSocketClientChannel

# =============================================================================
# MemoryChannel Tests
# =============================================================================


class TestMemoryChannel:
    """Tests for the in-process channel pair."""

    @pytest.mark.asyncio
    async def test_messages_arrive_in_order(self) -> None:
        left, right = MemoryChannel.pair()
        sent = [Request.ping() for _ in range(5)]

        for message in sent:
            await left.send(message)
        await left.close()

        received = [message async for message in right.receive()]
        assert received == sent

    @pytest.mark.asyncio
    async def test_both_directions(self) -> None:
        left, right = MemoryChannel.pair()
        ping = Request.ping()

        await left.send(ping)
        incoming = right.receive()
        assert await incoming.__anext__() == ping

        await right.send(Response.ok(ping.id, {}))
        reply = await left.receive().__anext__()
        assert reply.id == ping.id

    @pytest.mark.asyncio
    async def test_close_is_shared_and_idempotent(self) -> None:
        left, right = MemoryChannel.pair()

        await left.close()
        await left.close()

        assert left.closed
        assert right.closed

    @pytest.mark.asyncio
    async def test_close_wakes_receiver(self) -> None:
        left, right = MemoryChannel.pair()

        async def drain() -> list:
            return [m async for m in right.receive()]

        receiver = asyncio.create_task(drain())
        await asyncio.sleep(0)
        await left.close()

        assert await asyncio.wait_for(receiver, 1.0) == []

    @pytest.mark.asyncio
    async def test_send_after_close(self) -> None:
        left, _ = MemoryChannel.pair()
        await left.close()

        with pytest.raises(SessionClosed):
            await left.send(Request.ping())

    @pytest.mark.asyncio
    async def test_full_buffer_suspends_sender(self) -> None:
        left, right = MemoryChannel.pair(max_buffer=1)
        await left.send(Request.ping())

        blocked = asyncio.create_task(left.send(Request.ping()))
        await asyncio.sleep(0.05)
        assert not blocked.done()

        await right.receive().__anext__()
        await asyncio.wait_for(blocked, 1.0)

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_sender(self) -> None:
        left, right = MemoryChannel.pair(max_buffer=1)
        await left.send(Request.ping())
        blocked = asyncio.create_task(left.send(Request.ping()))
        await asyncio.sleep(0)

        await right.close()

        with pytest.raises(SessionClosed):
            await asyncio.wait_for(blocked, 1.0)

    @pytest.mark.asyncio
    async def test_undecodable_frame_raises_on_receive(self) -> None:
        left, right = MemoryChannel.pair()

        await left.send_raw(b"{not json")

        with pytest.raises(DecodeError):
            await right.receive().__anext__()

    def test_satisfies_channel_protocol(self) -> None:
        assert isinstance(MemoryChannel(), Channel)


# =============================================================================
# SSE framing Tests
# =============================================================================


class TestSSEFraming:
    """Tests for SSE event formatting and parsing."""

    def test_format_with_event(self) -> None:
        assert format_sse('{"a": 1}', event="message") == 'event: message\ndata: {"a": 1}\n\n'

    def test_multiline_data(self) -> None:
        assert format_sse("one\ntwo") == "data: one\ndata: two\n\n"

    def test_parser_round_trip(self) -> None:
        parser = SSEParser()
        events = [
            parser.feed(line)
            for line in format_sse("one\ntwo", event="endpoint").split("\n")
        ]

        assert [e for e in events if e is not None] == [SSEEvent(event="endpoint", data="one\ntwo")]

    def test_parser_ignores_heartbeats(self) -> None:
        parser = SSEParser()

        assert [parser.feed(line) for line in HEARTBEAT.split("\n")] == [None, None, None]

    def test_parser_defaults_to_message_event(self) -> None:
        parser = SSEParser()
        parser.feed("id: 7")
        parser.feed("data:no-space")

        assert parser.feed("") == SSEEvent(event="message", data="no-space", id="7")


class TestSSEServerChannel:
    """Tests for the server end of an SSE connection."""

    @pytest.mark.asyncio
    async def test_stream_flushes_queued_messages_after_close(self) -> None:
        channel = SSEServerChannel("conn-1")
        first = Response.ok("req_1", {})
        second = Notification.list_changed()
        await channel.send(first)
        await channel.send(second)
        await channel.close()

        frames = [frame async for frame in channel.stream(heartbeat_interval=1.0)]

        parser = SSEParser()
        events = [e for frame in frames for line in frame.split("\n") if (e := parser.feed(line))]
        assert [decode(e.data) for e in events] == [first, second]

    @pytest.mark.asyncio
    async def test_stream_emits_heartbeats_when_idle(self) -> None:
        channel = SSEServerChannel("conn-1")
        stream = channel.stream(heartbeat_interval=0.01)

        assert await stream.__anext__() == HEARTBEAT
        await channel.close()

    @pytest.mark.asyncio
    async def test_heartbeats_never_drop_frames(self) -> None:
        channel = SSEServerChannel("conn-1")
        sent = [Response.ok(f"req_{i}", {"i": i}) for i in range(40)]

        async def produce() -> None:
            for message in sent:
                await asyncio.sleep(0.001)
                await channel.send(message)
            await channel.close()

        producer = asyncio.create_task(produce())
        parser = SSEParser()
        received = []
        async for frame in channel.stream(heartbeat_interval=0.001):
            for line in frame.split("\n"):
                if event := parser.feed(line):
                    received.append(decode(event.data))
        await producer

        assert received == sent

    @pytest.mark.asyncio
    async def test_deliver_feeds_receive(self) -> None:
        channel = SSEServerChannel("conn-1")
        ping = Request.ping()

        await channel.deliver(encode_text(ping))

        assert await channel.receive().__anext__() == ping


# =============================================================================
# SSE client Tests
# =============================================================================


def sse_stream_handler(body_events: list[str], posted: list[bytes], hold: asyncio.Event | None = None):
    """Mock HTTP handler: GET streams ``body_events``; POST records bodies."""

    async def stream():
        for event in body_events:
            yield event.encode("utf-8")
        if hold is not None:
            await hold.wait()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())
        posted.append(request.content)
        return httpx.Response(202)

    return handler


class TestSSEClientChannel:
    """Tests for the client end of an SSE connection."""

    @pytest.mark.asyncio
    async def test_reads_endpoint_then_messages(self) -> None:
        reply = Response.ok("req_1", {"ok": True})
        handler = sse_stream_handler(
            [
                format_sse("/acp/messages?connection=abc", event="endpoint"),
                HEARTBEAT,
                format_sse(encode_text(reply), event="message"),
            ],
            [],
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")

        channel = await SSEClientChannel(TransportConfig(base_url="http://test"), client=client).open()

        assert channel.endpoint == "/acp/messages?connection=abc"
        assert [m async for m in channel.receive()] == [reply]
        assert channel.closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_send_posts_to_endpoint(self) -> None:
        posted: list[bytes] = []
        hold = asyncio.Event()
        handler = sse_stream_handler([format_sse("/acp/messages?connection=abc", event="endpoint")], posted, hold)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
        channel = await SSEClientChannel(TransportConfig(base_url="http://test"), client=client).open()
        ping = Request.ping()

        await channel.send(ping)

        assert [decode(body) for body in posted] == [ping]
        hold.set()
        await channel.close()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stream_without_endpoint_fails_to_open(self) -> None:
        handler = sse_stream_handler([HEARTBEAT], [])
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")

        with pytest.raises(ConnectionError, match="endpoint"):
            await SSEClientChannel(TransportConfig(base_url="http://test"), client=client).open()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_fails_to_open(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(404)),
            base_url="http://test",
        )

        with pytest.raises(ConnectionError):
            await SSEClientChannel(TransportConfig(base_url="http://test"), client=client).open()
        await client.aclose()


# =============================================================================
# Channel selection Tests
# =============================================================================


class TestOpenChannel:
    """Tests for open_channel mode dispatch."""

    def test_websocket_url(self) -> None:
        channel = WebSocketClientChannel(TransportConfig(mode="websocket", base_url="https://example.com/"))

        assert channel.url == "wss://example.com/acp/ws"

    @pytest.mark.asyncio
    async def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError, match="Unknown transport mode"):
            await open_channel(TransportConfig(mode="carrier-pigeon"))

    @pytest.mark.asyncio
    async def test_websocket_mode(self) -> None:
        with patch.object(WebSocketClientChannel, "open", new=AsyncMock(return_value="opened")) as opened:
            result = await open_channel(TransportConfig(mode="websocket"))

        assert result == "opened"
        opened.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_websocket_connect_failure(self) -> None:
        with (
            patch("acp_runtime.transport.websocket.websockets.connect", side_effect=OSError("refused")),
            pytest.raises(ConnectionError, match="refused"),
        ):
            await open_channel(TransportConfig(mode="websocket", timeout=0.5))
