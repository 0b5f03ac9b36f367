"""ACP Runtime - Agent Communication Protocol server and client.

Register agents on a ``Server``, expose it in-process, over SSE or over
WebSocket, and call it from a ``ClientSession``.

    from acp_runtime import Server, connect_in_process

    server = Server()

    @server.agent("hello-world", description="This is my Hello World agent")
    async def hello(input, context):
        return {"text": f"Hi there {input['text']}"}

    session = await connect_in_process(server)
    await session.invoke("hello-world", {"text": "Bee"})
"""

__version__ = "0.1.0"

from .client import ClientSession, RunHandle, connect, connect_in_process  # noqa: E402
from .config import ClientConfig, DisconnectPolicy, ServerConfig, TransportConfig  # noqa: E402
from .context import RunContext  # noqa: E402
from .errors import (  # noqa: E402
    AcpError,
    Cancelled,
    DecodeError,
    DuplicateIdentifier,
    ErrorCode,
    HandlerFailed,
    HandshakeFailed,
    InvalidInput,
    InvalidParams,
    MethodNotFound,
    NotFound,
    NotInitialized,
    SchemaValidationError,
    SessionClosed,
    UnknownAgent,
)
from .registry import AgentDescriptor, AgentHandler, AgentRegistry  # noqa: E402
from .schema import DefaultSchemaValidator, SchemaValidator  # noqa: E402
from .server import Server, ServerSession  # noqa: E402
from .telemetry import LoggingTelemetry, NoopTelemetry, Telemetry  # noqa: E402

__all__ = [
    "AcpError",
    "AgentDescriptor",
    "AgentHandler",
    "AgentRegistry",
    "Cancelled",
    "ClientConfig",
    "ClientSession",
    "DecodeError",
    "DefaultSchemaValidator",
    "DisconnectPolicy",
    "DuplicateIdentifier",
    "ErrorCode",
    "HandlerFailed",
    "HandshakeFailed",
    "InvalidInput",
    "InvalidParams",
    "LoggingTelemetry",
    "MethodNotFound",
    "NoopTelemetry",
    "NotFound",
    "NotInitialized",
    "RunContext",
    "RunHandle",
    "SchemaValidationError",
    "SchemaValidator",
    "Server",
    "ServerConfig",
    "ServerSession",
    "SessionClosed",
    "Telemetry",
    "TransportConfig",
    "UnknownAgent",
    "__version__",
    "connect",
    "connect_in_process",
]
