"""Per-invocation context handed to agent handlers."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import Cancelled
from .protocol.messages import RequestId


@dataclass
class RunContext:
    """Correlation and cancellation info for one agent run.

    Async handlers can ``await context.wait_cancelled()`` or poll
    ``context.cancelled``; sync handlers (which run in a worker thread) can
    only poll. ``raise_if_cancelled`` is the usual checkpoint.
    """

    request_id: RequestId
    agent: str
    session_id: str
    deadline: float | None = None  # Absolute, time.monotonic() based
    metadata: dict[str, Any] = field(default_factory=dict)
    cancel_reason: str | None = None
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _task: asyncio.Task[Any] | None = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def time_remaining(self) -> float | None:
        """Seconds until the deadline, or None if there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def bind(self, task: asyncio.Task[Any]) -> None:
        """Attach the task running the handler, so ``cancel`` can stop it."""
        self._task = task

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if already cancelled."""
        if self.cancelled:
            return False
        self.cancel_reason = reason
        self._cancel_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled(f"Run {self.request_id} cancelled", reason=self.cancel_reason or "cancelled")
