"""ACP Runtime Application.

Creates the Starlette ASGI application that exposes a ``Server`` over HTTP.

Route organization:
- /health       - Health check
- /acp/events   - SSE stream, one session per connection (GET)
- /acp/messages - Client -> server messages for an SSE connection (POST)
- /acp/ws       - WebSocket transport, one session per socket
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import BaseRoute, Route

from .config import ServerConfig
from .protocol.messages import PROTOCOL_VERSION
from .server import Server
from .transport.sse import SSEConnectionManager
from .transport.websocket import websocket_routes

logger = logging.getLogger(__name__)


def health_routes(server: Server) -> list[Route]:
    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            {
                "status": "ok",
                "name": server.config.name,
                "version": server.config.version,
                "protocolVersion": PROTOCOL_VERSION,
                "agents": len(server.registry),
                "sessions": len(server.sessions),
            }
        )

    return [Route("/health", health_check, methods=["GET"])]


def create_app(server: Server | None = None, config: ServerConfig | None = None) -> Starlette:
    """Create the ACP runtime application.

    Args:
        server: Server to expose. A fresh one (configured from the
            environment unless ``config`` is given) is created if omitted.
        config: Used only when ``server`` is omitted

    Returns:
        Configured Starlette application
    """
    if server is None:
        server = Server(config=config or ServerConfig.from_env())
    settings = server.config

    sse = SSEConnectionManager(
        server,
        heartbeat_interval=settings.heartbeat_interval,
        max_buffer=settings.channel_buffer,
    )

    routes: list[BaseRoute] = []
    routes.extend(health_routes(server))
    routes.extend(sse.routes())  # /acp/events, /acp/messages
    routes.extend(websocket_routes(server, max_buffer=settings.channel_buffer))  # /acp/ws

    # CORS middleware for local development
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info(f"{settings.name} {settings.version} serving {len(server.registry)} agent(s)")
        yield
        await sse.aclose()
        await server.aclose()
        logger.info(f"{settings.name} stopped")

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.server = server
    app.state.sse = sse
    return app
