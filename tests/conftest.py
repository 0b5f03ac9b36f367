"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio

from acp_runtime import ClientSession, Server, connect_in_process
from acp_runtime.protocol import ErrorResponse, Message, Notification, Request, Response
from acp_runtime.transport import MemoryChannel

TEXT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


def make_hello_server(**server_kwargs: Any) -> Server:
    """Server with the hello-world agent registered."""
    server = Server(**server_kwargs)

    @server.agent(
        "hello-world",
        description="This is my Hello World agent",
        input_schema=TEXT_SCHEMA,
        output_schema=TEXT_SCHEMA,
    )
    async def hello(input: dict[str, Any]) -> dict[str, Any]:
        return {"text": f"Hi there {input['text']}"}

    return server


@pytest.fixture
def server() -> Server:
    return make_hello_server()


@pytest_asyncio.fixture
async def session(server: Server) -> AsyncIterator[ClientSession]:
    session = await connect_in_process(server)
    yield session
    await session.close()
    await server.aclose()


class RawPeer:
    """Client end of a memory channel, speaking raw protocol messages."""

    def __init__(self, channel: MemoryChannel, serve_task: asyncio.Task[None]) -> None:
        self.channel = channel
        self.serve_task = serve_task
        self._messages = channel.receive()

    async def next(self, timeout: float = 2.0) -> Message:
        return await asyncio.wait_for(self._messages.__anext__(), timeout)

    async def request(self, request: Request, timeout: float = 2.0) -> Response | ErrorResponse:
        """Send a request and return its terminal message."""
        await self.channel.send(request)
        _, terminal = await self.collect(request.id, timeout)
        return terminal

    async def collect(
        self, request_id: Any, timeout: float = 2.0
    ) -> tuple[list[Notification], Response | ErrorResponse]:
        """Read until the terminal message for ``request_id``."""
        notifications: list[Notification] = []
        while True:
            message = await self.next(timeout)
            if isinstance(message, Notification):
                notifications.append(message)
            elif message.id == request_id:
                return notifications, message

    async def initialize(self) -> Response:
        response = await self.request(Request.initialize("test-client", "1.0.0"))
        assert isinstance(response, Response)
        return response

    async def close(self) -> None:
        await self.channel.close()
        await asyncio.wait_for(self.serve_task, 2.0)


async def open_peer(server: Server, *, initialize: bool = True) -> RawPeer:
    client_end, server_end = MemoryChannel.pair()
    peer = RawPeer(client_end, asyncio.create_task(server.serve(server_end)))
    if initialize:
        await peer.initialize()
    return peer


@pytest_asyncio.fixture
async def peer_factory():
    """Open raw peers against any server; closes them at teardown."""
    peers: list[RawPeer] = []

    async def factory(server: Server, *, initialize: bool = True) -> RawPeer:
        peer = await open_peer(server, initialize=initialize)
        peers.append(peer)
        return peer

    yield factory

    for peer in peers:
        await peer.channel.close()
        peer.serve_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await peer.serve_task


@pytest.fixture
def hello_server_factory():
    return make_hello_server
