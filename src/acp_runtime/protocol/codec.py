"""Message codec.

``encode`` is total for well-formed messages. ``decode`` is partial: any
payload that is not valid UTF-8 JSON matching exactly one message kind
raises ``DecodeError`` carrying the offending fragment.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from ..errors import DecodeError
from .messages import ErrorResponse, Message, Notification, Request, Response

# Keep error payloads bounded when a peer sends something huge.
MAX_FRAGMENT = 200


def _fragment(raw: str | bytes) -> str | bytes:
    return raw[:MAX_FRAGMENT]


def encode(message: Message) -> bytes:
    """Serialize a message to UTF-8 JSON."""
    return message.model_dump_json().encode("utf-8")


def encode_text(message: Message) -> str:
    """Serialize a message to a JSON string (for text frames)."""
    return message.model_dump_json()


def _classify(payload: dict[str, Any]) -> type[Message] | None:
    if "method" in payload:
        if payload.get("id") is not None:
            return Request
        return Notification
    if "error" in payload:
        return ErrorResponse
    if "result" in payload and "id" in payload:
        return Response
    return None


def decode(data: str | bytes) -> Message:
    """Parse a wire payload into a message.

    Raises:
        DecodeError: If the payload is malformed. ``raw`` holds the fragment.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            text = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8: {e.reason}", raw=_fragment(bytes(data))) from e
    else:
        text = data

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON: {e.msg}", raw=_fragment(text)) from e

    if not isinstance(payload, dict):
        raise DecodeError("Message must be a JSON object", raw=_fragment(text))

    message_cls = _classify(payload)
    if message_cls is None:
        raise DecodeError("Unrecognized message envelope", raw=_fragment(text))

    try:
        return message_cls.model_validate(payload)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise DecodeError(
            f"Invalid {message_cls.__name__}: {'; '.join(errors)}",
            raw=_fragment(text),
            data={"errors": errors},
        ) from e
