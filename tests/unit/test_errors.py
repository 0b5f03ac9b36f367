"""Tests for the error taxonomy and its wire mapping."""

from __future__ import annotations

import pytest

from acp_runtime.errors import (
    AcpError,
    Cancelled,
    DecodeError,
    DuplicateIdentifier,
    ErrorCode,
    HandlerFailed,
    InvalidInput,
    MethodNotFound,
    NotFound,
    NotInitialized,
    SchemaValidationError,
    SessionClosed,
    UnknownAgent,
    error_from_payload,
)


class TestErrorPayloads:
    """Typed errors survive a trip through their wire payload."""

    @pytest.mark.parametrize(
        "error",
        [
            DecodeError("Invalid JSON: Expecting value"),
            MethodNotFound("Unknown method: agents/frobnicate"),
            NotInitialized("Session not initialized"),
            InvalidInput("Invalid input: text: 'text' is a required property"),
            HandlerFailed("boom", data={"agent": "hello-world"}),
            SessionClosed(),
        ],
    )
    def test_simple_errors_map_back_to_their_class(self, error: AcpError) -> None:
        rebuilt = error_from_payload(error.to_payload())

        assert type(rebuilt) is type(error)
        assert rebuilt.message == error.message
        assert rebuilt.data == error.data

    def test_unknown_agent_keeps_identifier(self) -> None:
        rebuilt = error_from_payload(UnknownAgent("missing-agent").to_payload())

        assert isinstance(rebuilt, UnknownAgent)
        assert isinstance(rebuilt, NotFound)
        assert rebuilt.identifier == "missing-agent"
        assert str(rebuilt) == "Unknown agent: missing-agent"

    def test_cancelled_keeps_reason(self) -> None:
        rebuilt = error_from_payload(Cancelled("Run req_1 cancelled", reason="deadline").to_payload())

        assert isinstance(rebuilt, Cancelled)
        assert rebuilt.reason == "deadline"

    def test_schema_error_keeps_error_list(self) -> None:
        error = SchemaValidationError("Payload does not match schema", errors=["text: required"])
        rebuilt = error_from_payload(error.to_payload())

        assert isinstance(rebuilt, SchemaValidationError)
        assert rebuilt.errors == ["text: required"]

    def test_duplicate_identifier(self) -> None:
        rebuilt = AcpError.from_error_payload(DuplicateIdentifier("hello-world").to_payload())

        assert isinstance(rebuilt, DuplicateIdentifier)
        assert rebuilt.identifier == "hello-world"

    def test_unknown_code_falls_back_to_base_error(self) -> None:
        rebuilt = error_from_payload({"code": -31999, "message": "custom", "data": [1, 2]})

        assert type(rebuilt) is AcpError
        assert rebuilt.code == -31999
        assert rebuilt.data == [1, 2]

    def test_payload_shape(self) -> None:
        payload = MethodNotFound("nope").to_payload()

        assert payload == {"code": ErrorCode.METHOD_NOT_FOUND, "message": "nope", "data": None}
        assert isinstance(payload["code"], int)
