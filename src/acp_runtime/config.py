"""Runtime configuration.

Dataclasses with sensible defaults. The server side can also be configured
from ``ACP_*`` environment variables, which the CLI options override.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from . import __version__


class DisconnectPolicy(str, Enum):
    """What happens to in-flight handlers when their session goes away."""

    CANCEL = "cancel"  # Cancel the handler immediately
    DRAIN = "drain"  # Let it finish, discard the output


@dataclass
class ServerConfig:
    """Configuration for an invocation server."""

    name: str = "acp-runtime"
    version: str = __version__

    # Admission: None = unbounded. An int bounds concurrent agent runs
    # across all sessions of the server (worker-pool backpressure).
    max_concurrency: int | None = None

    disconnect_policy: DisconnectPolicy = DisconnectPolicy.CANCEL

    # Transport settings used by the HTTP app
    heartbeat_interval: float = 15.0
    channel_buffer: int = 256

    def __post_init__(self) -> None:
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be a positive integer or None")
        self.disconnect_policy = DisconnectPolicy(self.disconnect_policy)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> ServerConfig:
        """Build config from ``ACP_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if env.get("ACP_SERVER_NAME"):
            values["name"] = env["ACP_SERVER_NAME"]
        if env.get("ACP_MAX_CONCURRENCY"):
            limit = int(env["ACP_MAX_CONCURRENCY"])
            values["max_concurrency"] = limit if limit > 0 else None
        if env.get("ACP_DISCONNECT_POLICY"):
            values["disconnect_policy"] = env["ACP_DISCONNECT_POLICY"].lower()
        if env.get("ACP_HEARTBEAT_INTERVAL"):
            values["heartbeat_interval"] = float(env["ACP_HEARTBEAT_INTERVAL"])

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class ClientConfig:
    """Configuration for a client session."""

    name: str = "acp-runtime-client"
    version: str = __version__

    # Seconds to wait for the initialize response
    handshake_timeout: float = 10.0

    # Applied to requests that don't pass their own deadline. None = wait forever.
    default_deadline: float | None = None


@dataclass
class TransportConfig:
    """Client transport configuration."""

    # Connection mode
    mode: str = "sse"  # "sse" | "websocket"

    base_url: str = "http://localhost:4096"
    timeout: float = 30.0

    # Inbound buffer; a full buffer suspends the producer
    max_buffer: int = 256

    headers: dict[str, str] = field(default_factory=dict)

    # Route paths (must match the server app)
    events_path: str = "/acp/events"
    websocket_path: str = "/acp/ws"
