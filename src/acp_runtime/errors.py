"""Error taxonomy for the Agent Communication Protocol.

Every failure that crosses the wire is an ``AcpError`` subclass carrying a
JSON-RPC style integer code. The client maps error payloads back to the same
typed exceptions with ``error_from_payload``.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Wire error codes.

    The -327xx/-326xx block follows JSON-RPC 2.0. The -320xx block holds
    the protocol-specific codes.
    """

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    SESSION_CLOSED = -32001
    NOT_INITIALIZED = -32002
    HANDSHAKE_FAILED = -32003
    NOT_FOUND = -32004
    UNKNOWN_AGENT = -32005
    DUPLICATE_IDENTIFIER = -32006
    INVALID_INPUT = -32010
    HANDLER_FAILED = -32011
    SCHEMA_INVALID = -32012
    CANCELLED = -32800


class AcpError(Exception):
    """Base class for all protocol errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, data: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_payload(self) -> dict[str, Any]:
        """Render as a JSON-RPC error object."""
        return {"code": int(self.code), "message": self.message, "data": self.data}

    @classmethod
    def from_error_payload(cls, payload: dict[str, Any]) -> AcpError:
        """Typed exception for a wire error object (see ``error_from_payload``)."""
        return error_from_payload(payload)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class DecodeError(AcpError):
    """A wire payload could not be decoded into a message."""

    code = ErrorCode.PARSE_ERROR

    def __init__(self, message: str, *, raw: str | bytes = "", data: Any | None = None) -> None:
        super().__init__(message, data=data)
        self.raw = raw


class InvalidRequest(AcpError):
    code = ErrorCode.INVALID_REQUEST


class MethodNotFound(AcpError):
    code = ErrorCode.METHOD_NOT_FOUND


class InvalidParams(AcpError):
    code = ErrorCode.INVALID_PARAMS


class HandshakeFailed(AcpError):
    code = ErrorCode.HANDSHAKE_FAILED


class NotInitialized(AcpError):
    code = ErrorCode.NOT_INITIALIZED


class DuplicateIdentifier(AcpError):
    code = ErrorCode.DUPLICATE_IDENTIFIER

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Agent already registered: {identifier}", data={"agent": identifier})
        self.identifier = identifier


class NotFound(AcpError):
    code = ErrorCode.NOT_FOUND


class UnknownAgent(NotFound):
    code = ErrorCode.UNKNOWN_AGENT

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Unknown agent: {identifier}", data={"agent": identifier})
        self.identifier = identifier


class SchemaValidationError(AcpError):
    """Raised by the schema collaborator when a payload does not conform."""

    code = ErrorCode.SCHEMA_INVALID

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message, data={"errors": errors or []})
        self.errors = errors or []


class InvalidInput(AcpError):
    code = ErrorCode.INVALID_INPUT


class HandlerFailed(AcpError):
    code = ErrorCode.HANDLER_FAILED


class SessionClosed(AcpError):
    code = ErrorCode.SESSION_CLOSED

    def __init__(self, message: str = "Session closed", *, data: Any | None = None) -> None:
        super().__init__(message, data=data)


class Cancelled(AcpError):
    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Cancelled", *, reason: str = "cancelled") -> None:
        super().__init__(message, data={"reason": reason})
        self.reason = reason


_SIMPLE_ERRORS: dict[int, type[AcpError]] = {
    ErrorCode.PARSE_ERROR: DecodeError,
    ErrorCode.INVALID_REQUEST: InvalidRequest,
    ErrorCode.METHOD_NOT_FOUND: MethodNotFound,
    ErrorCode.INVALID_PARAMS: InvalidParams,
    ErrorCode.SESSION_CLOSED: SessionClosed,
    ErrorCode.NOT_INITIALIZED: NotInitialized,
    ErrorCode.HANDSHAKE_FAILED: HandshakeFailed,
    ErrorCode.NOT_FOUND: NotFound,
    ErrorCode.INVALID_INPUT: InvalidInput,
    ErrorCode.HANDLER_FAILED: HandlerFailed,
}


def error_from_payload(payload: dict[str, Any]) -> AcpError:
    """Rebuild a typed exception from a wire error object.

    Unknown codes fall back to a plain ``AcpError`` that keeps the code.
    """
    code = payload.get("code", ErrorCode.INTERNAL_ERROR)
    message = payload.get("message", "Unknown error")
    data = payload.get("data")
    details = data if isinstance(data, dict) else {}

    if code == ErrorCode.UNKNOWN_AGENT:
        error: AcpError = UnknownAgent(details.get("agent", ""))
        error.message = message
        error.args = (message,)
        return error
    if code == ErrorCode.DUPLICATE_IDENTIFIER:
        return DuplicateIdentifier(details.get("agent", ""))
    if code == ErrorCode.CANCELLED:
        return Cancelled(message, reason=details.get("reason", "cancelled"))
    if code == ErrorCode.SCHEMA_INVALID:
        return SchemaValidationError(message, errors=details.get("errors"))

    error_cls = _SIMPLE_ERRORS.get(code)
    if error_cls is None:
        error = AcpError(message, data=data)
        error.code = code  # type: ignore[assignment]
        return error
    return error_cls(message, data=data)
