"""Client session.

Opens a channel, performs the handshake and correlates responses to the
calls that are waiting for them. A background reader demultiplexes inbound
traffic:

- Response / ErrorResponse -> the pending call or run with the same id
- ``agents/run/chunk``      -> the RunHandle named by ``requestId``
- other notifications      -> registered observers

Usage:
    async with await connect(TransportConfig(base_url="http://localhost:4096")) as session:
        for agent in await session.list_agents():
            print(agent.identifier)

        run = await session.run_agent("hello-world", {"text": "Bee"})
        print(await run.result())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import ClientConfig, TransportConfig
from .errors import (
    AcpError,
    Cancelled,
    DecodeError,
    HandshakeFailed,
    NotInitialized,
    SessionClosed,
)
from .protocol.messages import (
    ErrorResponse,
    Message,
    Method,
    Notification,
    Request,
    RequestId,
    Response,
)
from .registry import AgentDescriptor
from .transport import Channel, MemoryChannel, open_channel

if TYPE_CHECKING:
    from .server import Server

logger = logging.getLogger(__name__)

NotificationObserver = Callable[[Notification], Any]


class ClientState(str, Enum):
    """Client-side session lifecycle."""

    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


class RunHandle:
    """An in-flight ``agents/run`` call.

    Iterate it for streamed chunks (one pass only), or await ``result()``
    for the terminal output. Both surface the run's failure as the typed
    error (``HandlerFailed``, ``Cancelled``, ``SessionClosed``, ...).
    """

    def __init__(self, session: ClientSession, request_id: RequestId, agent: str) -> None:
        self.request_id = request_id
        self.agent = agent
        self.chunk_count = 0
        self._session = session
        self._chunks: asyncio.Queue[Any] = asyncio.Queue()
        self._outcome: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._timer: asyncio.TimerHandle | None = None
        self._iterating = False

    @property
    def done(self) -> bool:
        return self._outcome.done()

    def __aiter__(self) -> AsyncIterator[Any]:
        if self._iterating:
            raise RuntimeError(f"Run {self.request_id} is already being iterated")
        self._iterating = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            getter = asyncio.ensure_future(self._chunks.get())
            try:
                done, _ = await asyncio.wait({getter, self._outcome}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                getter.cancel()
                raise
            if getter in done:
                yield getter.result()
                continue

            getter.cancel()
            while not self._chunks.empty():
                yield self._chunks.get_nowait()
            # Re-raises the run's error, if any
            self._outcome.result()
            return

    async def result(self) -> Any:
        """Wait for the terminal output.

        For streamed runs the output is the list of every chunk.
        """
        return await asyncio.shield(self._outcome)

    async def cancel(self, reason: str | None = None) -> bool:
        """Ask the server to stop the run.

        Resolves locally with ``Cancelled`` right away; a terminal response
        that arrives later is discarded.

        Returns:
            False if the run had already finished
        """
        if self.done:
            return False
        self._fail(Cancelled(f"Run {self.request_id} cancelled", reason=reason or "cancelled by client"))
        self._session._runs.pop(self.request_id, None)
        with contextlib.suppress(SessionClosed):
            await self._session._channel.send(Notification.cancel(self.request_id, reason))
        return True

    def _push(self, chunk: Any) -> None:
        if not self.done:
            self._chunks.put_nowait(chunk)

    def _settle(self, message: Response | ErrorResponse) -> None:
        if isinstance(message, ErrorResponse):
            self._fail(message.to_exception())
            return
        result = message.result if isinstance(message.result, dict) else {}
        self.chunk_count = int(result.get("chunks") or 0)
        self._finish(result.get("output"))

    def _finish(self, output: Any) -> None:
        if not self._outcome.done():
            self._outcome.set_result(output)
        self._stop_timer()

    def _fail(self, error: BaseException) -> None:
        if not self._outcome.done():
            self._outcome.set_exception(error)
            # Mark retrieved so an unobserved failure doesn't log at GC
            self._outcome.exception()
        self._stop_timer()

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __repr__(self) -> str:
        state = "done" if self.done else "running"
        return f"RunHandle(agent={self.agent!r}, id={self.request_id!r}, {state})"


class ClientSession:
    """A client's view of one protocol session."""

    def __init__(self, channel: Channel, config: ClientConfig | None = None) -> None:
        self.config = config or ClientConfig()
        self.state = ClientState.CONNECTING
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None
        self.session_id: str | None = None

        self._channel = channel
        self._pending: dict[RequestId, asyncio.Future[Response | ErrorResponse]] = {}
        self._runs: dict[RequestId, RunHandle] = {}
        self._observers: dict[str, list[NotificationObserver]] = {}
        self._observer_tasks: set[asyncio.Task[Any]] = set()
        self._reader: asyncio.Task[None] | None = None

    @property
    def is_ready(self) -> bool:
        return self.state == ClientState.READY

    @property
    def pending_count(self) -> int:
        """Calls and runs still waiting for their terminal message."""
        return len(self._pending) + len(self._runs)

    async def initialize(self, timeout: float | None = None) -> dict[str, Any]:
        """Perform the handshake.

        Raises:
            HandshakeFailed: On timeout, an error response or a lost channel.
                The session is closed in every case.
        """
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

        request = Request.initialize(self.config.name, self.config.version)
        try:
            result = await self._call(request, timeout if timeout is not None else self.config.handshake_timeout)
        except TimeoutError as e:
            await self.close()
            raise HandshakeFailed("Timed out waiting for the initialize response") from e
        except AcpError as e:
            await self.close()
            raise HandshakeFailed(f"Handshake rejected: {e.message}", data=e.to_payload()) from e

        result = result if isinstance(result, dict) else {}
        self.protocol_version = result.get("protocolVersion")
        self.server_info = result.get("serverInfo") or {}
        self.capabilities = result.get("capabilities") or {}
        self.session_id = result.get("sessionId")
        self.state = ClientState.READY
        logger.info(
            f"Connected to {self.server_info.get('name', 'server')} "
            f"{self.server_info.get('version', '')} (protocol {self.protocol_version})"
        )
        return result

    async def list_agents(self, deadline: float | None = None) -> list[AgentDescriptor]:
        """Fetch the server's current agent descriptors."""
        self._require_ready()
        deadline = self._deadline(deadline)
        result = await self._call(Request.list_agents(deadline), deadline)
        return [AgentDescriptor.from_wire(item) for item in (result or {}).get("agents", [])]

    async def ping(self, deadline: float | None = None) -> None:
        self._require_ready()
        deadline = self._deadline(deadline)
        await self._call(Request.ping(deadline), deadline)

    async def run_agent(
        self,
        identifier: str,
        input: Any = None,
        *,
        deadline: float | None = None,
    ) -> RunHandle:
        """Start an agent run.

        Args:
            identifier: Agent to run
            input: Payload checked against the agent's input schema
            deadline: Seconds before the run is abandoned. The server is told
                too, so it can stop the handler.

        Returns:
            Handle yielding chunks and the terminal output
        """
        self._require_ready()
        deadline = self._deadline(deadline)

        request = Request.run_agent(identifier, input, deadline=deadline)
        handle = RunHandle(self, request.id, identifier)
        self._runs[request.id] = handle
        try:
            await self._channel.send(request)
        except SessionClosed:
            self._runs.pop(request.id, None)
            raise

        if deadline is not None:
            loop = asyncio.get_running_loop()
            handle._timer = loop.call_later(deadline, self._expire, handle)
        logger.debug(f"Started run {request.id} of {identifier}")
        return handle

    async def invoke(self, identifier: str, input: Any = None, *, deadline: float | None = None) -> Any:
        """Run an agent and wait for its output."""
        handle = await self.run_agent(identifier, input, deadline=deadline)
        return await handle.result()

    def on_notification(self, method: str | Method, observer: NotificationObserver) -> Callable[[], None]:
        """Observe notifications of one method ("*" for all).

        Observers may be plain functions or coroutine functions.

        Returns:
            Unsubscribe function
        """
        key = method.value if isinstance(method, Method) else method
        self._observers.setdefault(key, []).append(observer)

        def unsubscribe() -> None:
            observers = self._observers.get(key, [])
            if observer in observers:
                observers.remove(observer)

        return unsubscribe

    def on_list_changed(self, observer: NotificationObserver) -> Callable[[], None]:
        return self.on_notification(Method.LIST_CHANGED, observer)

    async def close(self) -> None:
        """Close the session. Every pending call resolves with SessionClosed."""
        await self._channel.close()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self._teardown()

        for task in list(self._observer_tasks):
            task.cancel()

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_ready(self) -> None:
        if self.state == ClientState.CLOSED:
            raise SessionClosed()
        if self.state != ClientState.READY:
            raise NotInitialized("Session not initialized")

    def _deadline(self, deadline: float | None) -> float | None:
        return self.config.default_deadline if deadline is None else deadline

    async def _call(self, request: Request, deadline: float | None) -> Any:
        if self.state == ClientState.CLOSED:
            raise SessionClosed()
        if deadline is None:
            deadline = self.config.default_deadline

        future: asyncio.Future[Response | ErrorResponse] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            await self._channel.send(request)
            async with asyncio.timeout(deadline):
                message = await future
        finally:
            self._pending.pop(request.id, None)

        if isinstance(message, ErrorResponse):
            raise message.to_exception()
        return message.result

    def _expire(self, handle: RunHandle) -> None:
        if handle.done:
            return
        self._runs.pop(handle.request_id, None)
        handle._fail(TimeoutError(f"Run {handle.request_id} of {handle.agent} exceeded its deadline"))
        logger.debug(f"Run {handle.request_id} expired")
        if not self._channel.closed:
            self._spawn(self._send_quietly(Notification.cancel(handle.request_id, "deadline")))

    async def _send_quietly(self, message: Message) -> None:
        with contextlib.suppress(SessionClosed):
            await self._channel.send(message)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._observer_tasks.add(task)
        task.add_done_callback(self._observer_tasks.discard)

    async def _read_loop(self) -> None:
        """Background task reading messages and routing them."""
        try:
            async for message in self._channel.receive():
                self._route(message)
        except DecodeError as e:
            logger.warning(f"Undecodable message from server, closing session: {e.message}")
        except SessionClosed:
            pass
        except Exception as e:
            logger.exception(f"Read loop error: {e}")
        finally:
            await self._channel.close()
            self._teardown()

    def _route(self, message: Message) -> None:
        match message:
            case Response() | ErrorResponse() if message.id is None:
                logger.warning(f"Server reported an uncorrelated error: {message.error.message}")

            case Response() | ErrorResponse():
                future = self._pending.pop(message.id, None)
                if future is not None:
                    if not future.done():
                        future.set_result(message)
                    return
                handle = self._runs.pop(message.id, None)
                if handle is not None:
                    handle._settle(message)
                    return
                logger.debug(f"Discarding response for unknown request {message.id}")

            case Notification(method=Method.RUN_CHUNK.value):
                handle = self._runs.get(message.params.get("requestId"))
                if handle is None:
                    logger.debug(f"Discarding chunk for unknown run {message.params.get('requestId')}")
                    return
                handle._push(message.params.get("chunk"))

            case Notification():
                self._notify(message)

            case Request():
                logger.debug(f"Ignoring server request {message.method}")

    def _notify(self, notification: Notification) -> None:
        observers = list(self._observers.get(notification.method, [])) + list(self._observers.get("*", []))
        for observer in observers:
            try:
                result = observer(notification)
                if asyncio.iscoroutine(result):
                    self._spawn(result)
            except Exception:
                logger.exception(f"Error in observer for {notification.method}")

    def _teardown(self) -> None:
        """Resolve everything still waiting with SessionClosed."""
        if self.state != ClientState.CLOSED:
            logger.info(f"Session {self.session_id or '(unopened)'} closed")
        self.state = ClientState.CLOSED

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(SessionClosed())

        runs, self._runs = self._runs, {}
        for handle in runs.values():
            handle._fail(SessionClosed())

    async def __aenter__(self) -> ClientSession:
        if self.state == ClientState.CONNECTING:
            await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


async def connect(
    target: Channel | TransportConfig,
    *,
    config: ClientConfig | None = None,
    timeout: float | None = None,
) -> ClientSession:
    """Open a session and complete the handshake.

    Args:
        target: An open channel, or transport settings to open one with
        config: Client identity and defaults
        timeout: Handshake timeout (defaults to ``config.handshake_timeout``)

    Raises:
        HandshakeFailed: If the channel cannot be opened or the handshake
            does not complete
    """
    if isinstance(target, TransportConfig):
        try:
            channel = await open_channel(target)
        except (ConnectionError, OSError) as e:
            raise HandshakeFailed(f"Could not open {target.mode} channel to {target.base_url}: {e}") from e
    else:
        channel = target

    session = ClientSession(channel, config)
    await session.initialize(timeout)
    return session


async def connect_in_process(
    server: Server,
    *,
    config: ClientConfig | None = None,
    timeout: float | None = None,
) -> ClientSession:
    """Embedded mode: serve ``server`` over an in-memory pair and connect to it."""
    client_end, server_end = MemoryChannel.pair()
    server._track(asyncio.create_task(server.serve(server_end)))
    return await connect(client_end, config=config, timeout=timeout)
