"""Telemetry hooks.

The server opens a span at each of three boundaries:

- ``acp.request.receive``: a request was decoded and is being dispatched
- ``acp.handler.invoke``: an agent handler is running
- ``acp.response.send``: a terminal message is being written

The default backend does nothing. Plug in any object implementing
``Telemetry`` (an OpenTelemetry bridge, a metrics recorder, ...) without
touching the core.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

REQUEST_RECEIVE = "acp.request.receive"
HANDLER_INVOKE = "acp.handler.invoke"
RESPONSE_SEND = "acp.response.send"


@runtime_checkable
class Telemetry(Protocol):
    """Protocol for telemetry backends."""

    def span(self, name: str, **attributes: Any) -> AbstractContextManager[Any]:
        """Context manager covering one operation."""
        ...

    def event(self, name: str, **attributes: Any) -> None:
        """Record a point-in-time event."""
        ...


class NoopTelemetry:
    """Telemetry backend that records nothing."""

    def span(self, name: str, **attributes: Any) -> AbstractContextManager[Any]:
        return contextlib.nullcontext()

    def event(self, name: str, **attributes: Any) -> None:
        pass


class LoggingTelemetry:
    """Telemetry backend that writes spans and events to a logger."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.DEBUG) -> None:
        self._log = log or logger
        self._level = level

    @contextlib.contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        except BaseException as e:
            elapsed = (time.perf_counter() - started) * 1000
            self._log.log(self._level, f"{name} failed after {elapsed:.1f}ms: {e!r} {attributes}")
            raise
        elapsed = (time.perf_counter() - started) * 1000
        self._log.log(self._level, f"{name} {elapsed:.1f}ms {attributes}")

    def event(self, name: str, **attributes: Any) -> None:
        self._log.log(self._level, f"{name} {attributes}")
