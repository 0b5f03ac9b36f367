"""Agent registry.

Maps agent identifiers to their descriptor and handler. The registry is
shared by every session of a server:

- mutations are serialized by a lock
- readers work on an immutable snapshot, so they never observe a
  half-applied registration
- every mutation is reported to subscribed listeners (the server turns
  these into ``agents/list_changed`` notifications)

Usage:
    registry = AgentRegistry()

    @registry.agent("hello-world", description="This is my Hello World agent")
    async def hello(input, context):
        return {"text": f"Hi there {input['text']}"}
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from .context import RunContext
from .errors import DuplicateIdentifier, NotFound
from .schema import SchemaRef, check_schema, schema_to_json

logger = logging.getLogger(__name__)


class AgentDescriptor(BaseModel):
    """Describes a registered agent. Immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    identifier: str = Field(..., min_length=1, description="Unique agent identifier")
    description: str = Field(default="", description="Human-readable description")
    input_schema: SchemaRef = Field(default=None, alias="inputSchema")
    output_schema: SchemaRef = Field(default=None, alias="outputSchema")

    def to_wire(self) -> dict[str, Any]:
        """Render for an ``agents/list`` response."""
        return {
            "identifier": self.identifier,
            "description": self.description,
            "inputSchema": schema_to_json(self.input_schema),
            "outputSchema": schema_to_json(self.output_schema),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> AgentDescriptor:
        return cls.model_validate(data)


@runtime_checkable
class AgentHandler(Protocol):
    """Capability invoked for every run of an agent.

    ``invoke`` may return a plain value, an awaitable resolving to the
    output, or an async iterator of output chunks.
    """

    def invoke(self, input: Any, context: RunContext) -> Any: ...


_END = object()


class FunctionHandler:
    """Adapts a plain callable to ``AgentHandler``.

    Supported shapes, detected once at construction:
    - coroutine function -> awaited
    - async generator function -> streamed
    - generator function -> streamed, advanced in a worker thread
    - plain function -> run in a worker thread
    The callable takes ``(input)`` or ``(input, context)``.
    """

    def __init__(self, func: Callable[..., Any]) -> None:
        self.func = func
        self._takes_context = _accepts_context(func)
        if inspect.isasyncgenfunction(func):
            self._kind = "async_gen"
        elif inspect.iscoroutinefunction(func):
            self._kind = "coroutine"
        elif inspect.isgeneratorfunction(func):
            self._kind = "sync_gen"
        else:
            self._kind = "sync"

    @property
    def streaming(self) -> bool:
        return self._kind in ("async_gen", "sync_gen")

    def _call(self, input: Any, context: RunContext) -> Any:
        if self._takes_context:
            return self.func(input, context)
        return self.func(input)

    def invoke(self, input: Any, context: RunContext) -> Any:
        match self._kind:
            case "async_gen" | "coroutine":
                return self._call(input, context)
            case "sync_gen":
                return _iterate_in_thread(self._call(input, context))
            case _:
                return asyncio.to_thread(self._call, input, context)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__qualname__', self.func)!r})"


def _accepts_context(func: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return True
    positional = [
        p for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(p.kind == p.VAR_POSITIONAL for p in params)
    return has_varargs or len(positional) >= 2


async def _iterate_in_thread(iterator: Iterator[Any]) -> AsyncIterator[Any]:
    while True:
        item = await asyncio.to_thread(next, iterator, _END)
        if item is _END:
            return
        yield item


def as_handler(handler: AgentHandler | Callable[..., Any]) -> AgentHandler:
    """Return ``handler`` itself if it implements ``invoke``, else adapt it."""
    if isinstance(handler, AgentHandler):
        return handler
    if callable(handler):
        return FunctionHandler(handler)
    raise TypeError(f"Agent handler must be callable or implement invoke(): {handler!r}")


@dataclass(frozen=True)
class RegisteredAgent:
    """A registry entry."""

    descriptor: AgentDescriptor
    handler: AgentHandler

    @property
    def identifier(self) -> str:
        return self.descriptor.identifier


@dataclass(frozen=True)
class RegistryChange:
    """Describes one registry mutation."""

    kind: Literal["registered", "unregistered"]
    identifier: str


RegistryListener = Callable[[RegistryChange], None]


class AgentRegistry:
    """Ordered, thread-safe registry of agents."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # Replaced wholesale on every mutation; dict order = registration order
        self._agents: MappingProxyType[str, RegisteredAgent] = MappingProxyType({})
        self._listeners: list[RegistryListener] = []

    def register(
        self,
        descriptor: AgentDescriptor,
        handler: AgentHandler | Callable[..., Any],
    ) -> RegisteredAgent:
        """Register an agent.

        Raises:
            DuplicateIdentifier: If the identifier is taken. The existing
                entry is left untouched.
        """
        check_schema(descriptor.input_schema)
        check_schema(descriptor.output_schema)
        entry = RegisteredAgent(descriptor=descriptor, handler=as_handler(handler))

        with self._lock:
            if descriptor.identifier in self._agents:
                raise DuplicateIdentifier(descriptor.identifier)
            agents = dict(self._agents)
            agents[descriptor.identifier] = entry
            self._agents = MappingProxyType(agents)

        logger.info(f"Registered agent: {descriptor.identifier}")
        self._notify(RegistryChange("registered", descriptor.identifier))
        return entry

    def add(
        self,
        identifier: str,
        description: str = "",
        input_schema: SchemaRef = None,
        output_schema: SchemaRef = None,
        handler: AgentHandler | Callable[..., Any] | None = None,
    ) -> RegisteredAgent:
        """Embedding surface: build the descriptor and register in one call."""
        if handler is None:
            raise TypeError("handler is required")
        descriptor = AgentDescriptor(
            identifier=identifier,
            description=description,
            input_schema=input_schema,
            output_schema=output_schema,
        )
        return self.register(descriptor, handler)

    def agent(
        self,
        identifier: str | None = None,
        *,
        description: str | None = None,
        input_schema: SchemaRef = None,
        output_schema: SchemaRef = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering a function as an agent.

        The identifier defaults to the function name (underscores become
        dashes) and the description to the first docstring line.
        """

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            name = identifier or func.__name__.replace("_", "-")
            doc = description
            if doc is None:
                doc = (inspect.getdoc(func) or "").split("\n", 1)[0]
            self.add(name, doc, input_schema, output_schema, func)
            return func

        return decorator

    def unregister(self, identifier: str) -> RegisteredAgent:
        """Remove an agent.

        Raises:
            NotFound: If no agent has this identifier
        """
        with self._lock:
            entry = self._agents.get(identifier)
            if entry is None:
                raise NotFound(f"Agent not found: {identifier}", data={"agent": identifier})
            agents = dict(self._agents)
            del agents[identifier]
            self._agents = MappingProxyType(agents)

        logger.info(f"Unregistered agent: {identifier}")
        self._notify(RegistryChange("unregistered", identifier))
        return entry

    def resolve(self, identifier: str) -> RegisteredAgent:
        """Look up an agent.

        Raises:
            NotFound: If no agent has this identifier
        """
        entry = self._agents.get(identifier)
        if entry is None:
            raise NotFound(f"Agent not found: {identifier}", data={"agent": identifier})
        return entry

    def list(self) -> list[AgentDescriptor]:
        """Descriptors in registration order."""
        return [entry.descriptor for entry in self._agents.values()]

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Call ``listener`` after every mutation.

        Returns:
            Unsubscribe function
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: RegistryChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception(f"Error in registry listener for {change.identifier}")
