"""Invocation server.

A ``Server`` owns an agent registry and the set of sessions currently
connected to it. Each connected channel gets a ``ServerSession`` which runs
the per-session state machine:

    uninitialized --initialize--> initialized --channel closes--> closed

Only ``initialize`` and ``ping`` are accepted before the handshake;
everything else is answered with ``NotInitialized``.

Usage:
    server = Server()

    @server.agent("hello-world", description="This is my Hello World agent")
    async def hello(input, context):
        return {"text": f"Hi there {input['text']}"}

    # Any transport: embedded memory pair, SSE, WebSocket
    await server.serve(channel)

Correlation:
    Every Request receives exactly one Response or ErrorResponse with the
    same id. Chunks of a streamed run are ``agents/run/chunk``
    notifications that precede the terminal message.

Failures:
    Handler exceptions are converted to ``HandlerFailed`` at the invocation
    boundary. Decode and transport failures end the affected session only.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from .config import DisconnectPolicy, ServerConfig
from .context import RunContext
from .errors import (
    AcpError,
    Cancelled,
    DecodeError,
    HandlerFailed,
    InvalidInput,
    InvalidParams,
    InvalidRequest,
    MethodNotFound,
    NotFound,
    NotInitialized,
    SchemaValidationError,
    SessionClosed,
    UnknownAgent,
)
from .protocol.messages import (
    PROTOCOL_VERSION,
    ErrorResponse,
    Message,
    Method,
    Notification,
    Request,
    RequestId,
    Response,
)
from .registry import AgentRegistry, RegisteredAgent, RegistryChange
from .schema import DefaultSchemaValidator, SchemaRef, SchemaValidator, to_jsonable
from .telemetry import (
    HANDLER_INVOKE,
    REQUEST_RECEIVE,
    RESPONSE_SEND,
    NoopTelemetry,
    Telemetry,
)
from .transport.base import Channel

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Server-side session lifecycle."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    CLOSED = "closed"


class ServerSession:
    """One connected client, served over one channel."""

    def __init__(self, server: Server, channel: Channel) -> None:
        self.id = f"sess_{uuid.uuid4().hex[:12]}"
        self.state = SessionState.UNINITIALIZED
        self.client_info: dict[str, Any] = {}
        self._server = server
        self._channel = channel
        self._runs: dict[RequestId, RunContext] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        """Number of agent runs currently executing."""
        return len(self._runs)

    async def run(self) -> None:
        """Process inbound messages until the channel closes."""
        logger.info(f"Session {self.id} opened")
        try:
            async for message in self._channel.receive():
                await self._dispatch(message)
        except DecodeError as e:
            logger.warning(f"Session {self.id}: undecodable message, closing: {e.message}")
            with contextlib.suppress(SessionClosed):
                await self._channel.send(ErrorResponse.from_error(None, e))
        except SessionClosed:
            pass
        finally:
            await self._shutdown()

    async def close(self) -> None:
        await self._channel.close()

    async def send(self, message: Message) -> None:
        await self._channel.send(message)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch(self, message: Message) -> None:
        match message:
            case Request():
                if message.method == Method.AGENTS_RUN.value:
                    # Runs execute on their own task so a slow agent never
                    # stalls discovery or other runs.
                    self._spawn(self._serve_request(message))
                else:
                    await self._serve_request(message)

            case Notification():
                self._handle_notification(message)

            case Response() | ErrorResponse():
                logger.debug(f"Session {self.id}: ignoring unsolicited response {message.id}")

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        self._server._track(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve_request(self, request: Request) -> None:
        telemetry = self._server.telemetry
        with telemetry.span(REQUEST_RECEIVE, session=self.id, method=request.method, id=request.id):
            response = await self._handle_request(request)

        with telemetry.span(RESPONSE_SEND, session=self.id, id=request.id):
            try:
                await self._channel.send(response)
            except SessionClosed:
                logger.debug(f"Session {self.id}: dropped response for {request.id}, channel closed")

    async def _handle_request(self, request: Request) -> Response | ErrorResponse:
        """Produce the terminal message for a request. Never raises."""
        logger.debug(f"Session {self.id}: handling {request.method} (id={request.id})")
        try:
            match request.method:
                case Method.INITIALIZE.value:
                    result = self._initialize(request)
                case Method.PING.value:
                    result = {}
                case _ if self.state != SessionState.INITIALIZED:
                    raise NotInitialized("Session not initialized. Call 'initialize' first.")
                case Method.AGENTS_LIST.value:
                    result = {"agents": [d.to_wire() for d in self._server.registry.list()]}
                case Method.AGENTS_RUN.value:
                    result = await self._run_agent(request)
                case _:
                    raise MethodNotFound(f"Unknown method: {request.method}")
            return Response.ok(request.id, result)

        except AcpError as e:
            return ErrorResponse.from_error(request.id, e)
        except Exception as e:
            logger.exception(f"Error handling request {request.id}: {e}")
            return ErrorResponse.from_error(request.id, HandlerFailed(str(e) or type(e).__name__))

    def _handle_notification(self, notification: Notification) -> None:
        if notification.method == Method.AGENTS_CANCEL.value:
            request_id = notification.params.get("requestId")
            context = self._runs.get(request_id) if request_id is not None else None
            if context is None:
                logger.debug(f"Session {self.id}: cancel for unknown run {request_id}")
                return
            reason = notification.params.get("reason") or "cancelled by client"
            if context.cancel(reason):
                logger.info(f"Session {self.id}: run {request_id} cancelled ({reason})")
            return
        logger.debug(f"Session {self.id}: ignoring notification {notification.method}")

    # =========================================================================
    # Methods
    # =========================================================================

    def _initialize(self, request: Request) -> dict[str, Any]:
        client_info = request.get_param("clientInfo") or {}
        if not isinstance(client_info, dict):
            raise InvalidParams("clientInfo must be an object")
        self.client_info = client_info

        if self.state == SessionState.UNINITIALIZED:
            self.state = SessionState.INITIALIZED
            logger.info(
                f"Session {self.id} initialized "
                f"(client={client_info.get('name', 'unknown')}, "
                f"protocol={request.get_param('protocolVersion')})"
            )

        config = self._server.config
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": config.name, "version": config.version},
            "sessionId": self.id,
            "capabilities": {"streaming": True, "listChanged": True, "cancellation": True},
        }

    async def _run_agent(self, request: Request) -> dict[str, Any]:
        identifier = request.require_param("agent")
        if not isinstance(identifier, str):
            raise InvalidParams("agent must be a string")
        if request.id in self._runs:
            raise InvalidRequest(f"Duplicate request id in flight: {request.id}")

        try:
            registered = self._server.registry.resolve(identifier)
        except NotFound as e:
            raise UnknownAgent(identifier) from e

        descriptor = registered.descriptor
        value = self._validate(descriptor.input_schema, request.get_param("input"), InvalidInput)

        context = RunContext(
            request_id=request.id,
            agent=identifier,
            session_id=self.id,
            deadline=_deadline_from(request),
        )
        self._runs[request.id] = context
        try:
            async with self._server.admission():
                context.raise_if_cancelled()
                with self._server.telemetry.span(
                    HANDLER_INVOKE, session=self.id, agent=identifier, id=request.id
                ):
                    output, chunks = await self._invoke(registered, value, context)
        finally:
            self._runs.pop(request.id, None)

        return {"output": output, "chunks": chunks}

    async def _invoke(
        self,
        registered: RegisteredAgent,
        value: Any,
        context: RunContext,
    ) -> tuple[Any, int]:
        """Run the handler on its own task, honoring cancel and deadline."""
        task = asyncio.create_task(self._call_handler(registered, value, context))
        context.bind(task)
        if context.cancelled:
            task.cancel()

        try:
            async with asyncio.timeout(context.time_remaining()):
                return await task
        except TimeoutError:
            context.cancel("deadline exceeded")
            raise Cancelled(f"Run {context.request_id} exceeded its deadline", reason="deadline") from None
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            if context.cancelled:
                raise Cancelled(
                    f"Run {context.request_id} cancelled",
                    reason=context.cancel_reason or "cancelled",
                ) from None
            # The handler raised CancelledError itself (e.g. awaited a cancelled sub-task)
            logger.warning(f"Agent {context.agent} raised CancelledError without a cancel request")
            raise HandlerFailed(
                "handler was cancelled",
                data={"agent": context.agent, "exception": "CancelledError"},
            ) from None

    async def _call_handler(
        self,
        registered: RegisteredAgent,
        value: Any,
        context: RunContext,
    ) -> tuple[Any, int]:
        descriptor = registered.descriptor
        try:
            result = registered.handler.invoke(value, context)
            if hasattr(result, "__aiter__"):
                return await self._stream(result, descriptor.output_schema, context)
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
        except (Cancelled, HandlerFailed):
            raise
        except AcpError as e:
            raise HandlerFailed(e.message, data=e.data) from e
        except Exception as e:
            logger.exception(f"Agent {descriptor.identifier} failed: {e}")
            raise HandlerFailed(
                str(e) or type(e).__name__,
                data={"agent": descriptor.identifier, "exception": type(e).__name__},
            ) from e

        output = self._validate(descriptor.output_schema, result, HandlerFailed)
        return to_jsonable(output), 0

    async def _stream(
        self,
        chunks: AsyncIterator[Any],
        output_schema: SchemaRef,
        context: RunContext,
    ) -> tuple[list[Any], int]:
        """Forward chunks as they are produced. The output is all chunks."""
        collected: list[Any] = []
        async for chunk in chunks:
            payload = to_jsonable(self._validate(output_schema, chunk, HandlerFailed))
            await self._channel.send(Notification.run_chunk(context.request_id, len(collected), payload))
            collected.append(payload)
        return collected, len(collected)

    def _validate(self, schema: SchemaRef, payload: Any, error_cls: type[AcpError]) -> Any:
        try:
            return self._server.validator.validate(schema, payload)
        except SchemaValidationError as e:
            kind = "input" if error_cls is InvalidInput else "output"
            raise error_cls(f"Invalid {kind}: {'; '.join(e.errors) or e.message}", data={"errors": e.errors}) from e

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _shutdown(self) -> None:
        self.state = SessionState.CLOSED
        await self._channel.close()

        if self._server.config.disconnect_policy == DisconnectPolicy.CANCEL:
            for context in list(self._runs.values()):
                context.cancel("session closed")
            pending = list(self._tasks)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        elif self._runs:
            logger.info(f"Session {self.id}: draining {len(self._runs)} run(s), output will be discarded")

        self._server._sessions.discard(self)
        logger.info(f"Session {self.id} closed")


def _deadline_from(request: Request) -> float | None:
    meta = request.get_param("_meta") or {}
    seconds = meta.get("deadline") if isinstance(meta, dict) else None
    if seconds is None:
        return None
    try:
        return time.monotonic() + max(0.0, float(seconds))
    except (TypeError, ValueError) as e:
        raise InvalidParams(f"Invalid deadline: {seconds!r}") from e


class Server:
    """An agent invocation server.

    Holds its own registry and session set; several servers can live in one
    process.
    """

    def __init__(
        self,
        registry: AgentRegistry | None = None,
        config: ServerConfig | None = None,
        *,
        validator: SchemaValidator | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.registry = registry if registry is not None else AgentRegistry()
        self.config = config or ServerConfig()
        self.validator: SchemaValidator = validator or DefaultSchemaValidator()
        self.telemetry: Telemetry = telemetry or NoopTelemetry()

        self._sessions: set[ServerSession] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._semaphore: asyncio.Semaphore | None = (
            asyncio.Semaphore(self.config.max_concurrency) if self.config.max_concurrency else None
        )
        self._unsubscribe = self.registry.subscribe(self._on_registry_change)

    @property
    def sessions(self) -> list[ServerSession]:
        return list(self._sessions)

    def agent(self, identifier: str | None = None, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Shortcut for ``server.registry.agent(...)``."""
        return self.registry.agent(identifier, **kwargs)

    def admission(self) -> contextlib.AbstractAsyncContextManager[Any]:
        """Admission control for agent runs (bounded when max_concurrency is set)."""
        if self._semaphore is None:
            return contextlib.nullcontext()
        return self._semaphore

    async def serve(self, channel: Channel) -> None:
        """Serve one session over ``channel`` until it closes."""
        self._loop = asyncio.get_running_loop()
        session = ServerSession(self, channel)
        self._sessions.add(session)
        await session.run()

    async def broadcast(self, notification: Notification) -> int:
        """Send a notification to every initialized session.

        Returns:
            Number of sessions the notification reached
        """
        targets = [s for s in self._sessions if s.state == SessionState.INITIALIZED]
        # A peer that stopped reading must not hold up the others
        results = await asyncio.gather(*(self._deliver(s, notification) for s in targets))
        return sum(results)

    async def _deliver(self, session: ServerSession, notification: Notification) -> bool:
        try:
            await session.send(notification)
        except SessionClosed:
            logger.debug(f"Session {session.id} closed before {notification.method}")
            return False
        except Exception as e:
            logger.warning(f"Session {session.id}: failed to deliver {notification.method}: {e}")
            return False
        return True

    async def aclose(self) -> None:
        """Close every session and detach from the registry."""
        self._unsubscribe()
        for session in list(self._sessions):
            await session.close()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_registry_change(self, change: RegistryChange) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        notification = Notification.list_changed(reason=change.kind, agent=change.identifier)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._track(loop.create_task(self.broadcast(notification)))
        else:
            # Registry mutated from another thread
            asyncio.run_coroutine_threadsafe(self.broadcast(notification), loop)
