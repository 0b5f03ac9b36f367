"""Transport-agnostic protocol layer.

Defines the message envelopes and codec shared by every transport.

Key concepts:
- Requests: client -> server with correlation ids
- Responses / ErrorResponses: exactly one per request, same id
- Notifications: uncorrelated pushes (list changes, chunks, cancels)
"""

from .codec import decode, encode, encode_text
from .messages import (
    PROTOCOL_VERSION,
    ErrorObject,
    ErrorResponse,
    Message,
    Method,
    Notification,
    Request,
    RequestId,
    Response,
)

__all__ = [
    "PROTOCOL_VERSION",
    "ErrorObject",
    "ErrorResponse",
    "Message",
    "Method",
    "Notification",
    "Request",
    "RequestId",
    "Response",
    "decode",
    "encode",
    "encode_text",
]
