"""Protocol message definitions.

Four message kinds travel over a channel, all framed as JSON-RPC 2.0
envelopes:

- Request: client -> server, carries a correlation ``id``
- Response: terminal success, same ``id`` as its Request
- ErrorResponse: terminal failure, same ``id`` as its Request
- Notification: fire-and-forget, no ``id``

Streamed output is carried by ``agents/run/chunk`` notifications whose
params hold the ``requestId`` they belong to, so every Request still ends in
exactly one Response or ErrorResponse.

Example (request):
    {
        "jsonrpc": "2.0",
        "id": "req_abc123",
        "method": "agents/run",
        "params": {"agent": "hello-world", "input": {"text": "Bee"}}
    }
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, StrictInt, StrictStr

from ..errors import AcpError, ErrorCode, InvalidParams, error_from_payload

PROTOCOL_VERSION = "2025-10-01"
JSONRPC_VERSION = "2.0"

RequestId = Union[StrictStr, StrictInt]


class Method(str, Enum):
    """All protocol methods."""

    # Requests
    INITIALIZE = "initialize"
    PING = "ping"
    AGENTS_LIST = "agents/list"
    AGENTS_RUN = "agents/run"

    # Client -> server notifications
    AGENTS_CANCEL = "agents/cancel"

    # Server -> client notifications
    RUN_CHUNK = "agents/run/chunk"
    LIST_CHANGED = "agents/list_changed"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def _with_deadline(params: dict[str, Any], deadline: float | None) -> dict[str, Any]:
    """Attach the relative deadline hint (seconds) as ``_meta.deadline``."""
    if deadline is not None:
        params["_meta"] = {"deadline": deadline}
    return params


class Request(BaseModel):
    """A request from client to server.

    The server answers with exactly one Response or ErrorResponse carrying
    the same ``id``.
    """

    jsonrpc: Literal["2.0"] = "2.0"
    id: RequestId = Field(default_factory=new_request_id)
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    def get_param(self, key: str, default: Any = None) -> Any:
        """Get a parameter with optional default."""
        return self.params.get(key, default)

    def require_param(self, key: str) -> Any:
        """Get a required parameter, raise if missing."""
        if key not in self.params:
            raise InvalidParams(f"Missing required parameter: {key}")
        return self.params[key]

    @classmethod
    def create(
        cls,
        method: str | Method,
        params: dict[str, Any] | None = None,
        request_id: RequestId | None = None,
    ) -> Request:
        """Factory method for creating requests."""
        return cls(
            id=request_id if request_id is not None else new_request_id(),
            method=method.value if isinstance(method, Method) else method,
            params=params or {},
        )

    # Convenience factories for common requests
    @classmethod
    def initialize(
        cls,
        client_name: str,
        client_version: str,
        protocol_version: str = PROTOCOL_VERSION,
    ) -> Request:
        """Create an initialize request."""
        return cls.create(
            Method.INITIALIZE,
            {
                "protocolVersion": protocol_version,
                "clientInfo": {"name": client_name, "version": client_version},
                "capabilities": {"streaming": True, "cancellation": True},
            },
        )

    @classmethod
    def list_agents(cls, deadline: float | None = None) -> Request:
        return cls.create(Method.AGENTS_LIST, _with_deadline({}, deadline))

    @classmethod
    def run_agent(
        cls,
        agent: str,
        input: Any = None,
        deadline: float | None = None,
    ) -> Request:
        """Create an agents/run request.

        ``deadline`` is relative, in seconds, and is forwarded as a hint so
        the server can stop the handler once it elapses.
        """
        return cls.create(Method.AGENTS_RUN, _with_deadline({"agent": agent, "input": input}, deadline))

    @classmethod
    def ping(cls, deadline: float | None = None) -> Request:
        return cls.create(Method.PING, _with_deadline({}, deadline))


class Response(BaseModel):
    """Terminal success for a request."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: RequestId
    result: Any = None

    @classmethod
    def ok(cls, request_id: RequestId, result: Any = None) -> Response:
        return cls(id=request_id, result=result)


class ErrorObject(BaseModel):
    """JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Any = None


class ErrorResponse(BaseModel):
    """Terminal failure for a request.

    ``id`` is None only when the failing request could not be read at all.
    """

    jsonrpc: Literal["2.0"] = "2.0"
    id: RequestId | None
    error: ErrorObject

    @classmethod
    def create(
        cls,
        request_id: RequestId | None,
        code: int | ErrorCode,
        message: str,
        data: Any = None,
    ) -> ErrorResponse:
        return cls(id=request_id, error=ErrorObject(code=int(code), message=message, data=data))

    @classmethod
    def from_error(cls, request_id: RequestId | None, error: AcpError) -> ErrorResponse:
        """Wrap a typed protocol error."""
        return cls(id=request_id, error=ErrorObject(**error.to_payload()))

    def to_exception(self) -> AcpError:
        """Rebuild the typed exception this response carries."""
        return error_from_payload(self.error.model_dump())


class Notification(BaseModel):
    """A fire-and-forget message. Never answered."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(cls, method: str | Method, params: dict[str, Any] | None = None) -> Notification:
        return cls(
            method=method.value if isinstance(method, Method) else method,
            params=params or {},
        )

    @classmethod
    def run_chunk(cls, request_id: RequestId, sequence: int, chunk: Any) -> Notification:
        """A partial result of a chunked invocation."""
        return cls.create(
            Method.RUN_CHUNK,
            {"requestId": request_id, "sequence": sequence, "chunk": chunk},
        )

    @classmethod
    def cancel(cls, request_id: RequestId, reason: str | None = None) -> Notification:
        params: dict[str, Any] = {"requestId": request_id}
        if reason:
            params["reason"] = reason
        return cls.create(Method.AGENTS_CANCEL, params)

    @classmethod
    def list_changed(cls, reason: str | None = None, agent: str | None = None) -> Notification:
        params: dict[str, Any] = {}
        if reason:
            params["reason"] = reason
        if agent:
            params["agent"] = agent
        return cls.create(Method.LIST_CHANGED, params)


Message = Union[Request, Response, ErrorResponse, Notification]
