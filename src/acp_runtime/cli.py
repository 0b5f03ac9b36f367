"""ACP Runtime CLI.

Commands:
    acp-runtime serve --agents pkg.module:server   - Run the HTTP server
    acp-runtime health                             - Check server health
    acp-runtime agents                             - List a server's agents
    acp-runtime run AGENT --input '{"text": "Bee"}' - Run an agent once
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from typing import Any

import click
import httpx

from .client import connect
from .config import ClientConfig, DisconnectPolicy, ServerConfig, TransportConfig
from .errors import AcpError
from .registry import AgentRegistry
from .server import Server

logger = logging.getLogger(__name__)

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def configure_logging(level: str) -> None:
    """Send all log records to stderr; stdout is reserved for command output."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(stderr_handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def truncate(text: str | None, max_len: int = 50) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def load_server(target: str | None, config: ServerConfig) -> Server:
    """Build the server to expose from a ``module:attribute`` reference.

    The attribute may be a Server, an AgentRegistry, or a callable taking
    the new Server and registering agents on it.
    """
    if not target:
        return Server(config=config)

    module_name, _, attr = target.partition(":")
    module = importlib.import_module(module_name)
    obj: Any = getattr(module, attr or "server")

    if isinstance(obj, Server):
        return obj
    if isinstance(obj, AgentRegistry):
        return Server(obj, config)
    if callable(obj):
        server = Server(config=config)
        obj(server)
        return server
    raise click.BadParameter(f"{target} is not a Server, AgentRegistry or setup function", param_hint="--agents")


def transport_config(url: str, transport: str) -> TransportConfig:
    return TransportConfig(mode="websocket" if transport == "ws" else "sse", base_url=url)


@click.group(invoke_without_command=True)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    envvar="ACP_LOG_LEVEL",
    help="Log level for stderr output",
)
@click.pass_context
def main(ctx: click.Context, log_level: str) -> None:
    """ACP Runtime - serve and call agents over the Agent Communication Protocol."""
    configure_logging(log_level)
    ctx.obj = {"log_level": log_level}
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Server Commands
# =============================================================================


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=4096, help="Port to bind to")
@click.option("--agents", "agents_ref", default=None, help="Agents to serve, as module:attribute")
@click.option("--name", default=None, help="Server name reported in the handshake")
@click.option("--max-concurrency", type=int, default=None, help="Bound on concurrent agent runs")
@click.option(
    "--disconnect-policy",
    type=click.Choice([p.value for p in DisconnectPolicy]),
    default=None,
    help="What happens to running agents when their client disconnects",
)
@click.pass_context
def serve(
    ctx: click.Context,
    host: str,
    port: int,
    agents_ref: str | None,
    name: str | None,
    max_concurrency: int | None,
    disconnect_policy: str | None,
) -> None:
    """Run the ACP server (HTTP mode).

    Examples:

        acp-runtime serve --agents myapp.agents:server

        acp-runtime serve --agents myapp.agents:registry --max-concurrency 8
    """
    import uvicorn

    from .app import create_app

    config = ServerConfig.from_env(
        name=name,
        max_concurrency=max_concurrency,
        disconnect_policy=disconnect_policy,
    )
    try:
        server = load_server(agents_ref, config)
    except (ImportError, AttributeError) as e:
        click.echo(f"Cannot load agents from {agents_ref}: {e}", err=True)
        sys.exit(1)

    click.echo(f"Starting {server.config.name} on http://{host}:{port}", err=True)
    click.echo(f"  Agents: {', '.join(d.identifier for d in server.registry.list()) or 'none'}", err=True)
    click.echo("  Endpoints: /acp/events, /acp/messages, /acp/ws", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(
        create_app(server),
        host=host,
        port=port,
        log_level=ctx.obj["log_level"].lower(),
    )


@main.command()
@click.option("--url", default="http://localhost:4096", help="Server URL")
def health(url: str) -> None:
    """Check server health."""

    async def check() -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{url}/health")
                if response.status_code == 200:
                    data = response.json()
                    click.echo(f"Server is healthy: {data}")
                else:
                    click.echo(f"Server returned {response.status_code}", err=True)
                    sys.exit(1)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to server at {url}", err=True)
            sys.exit(1)

    asyncio.run(check())


# =============================================================================
# Client Commands
# =============================================================================


@main.command("agents")
@click.option("--url", default="http://localhost:4096", help="Server URL")
@click.option("--transport", type=click.Choice(["sse", "ws"]), default="sse", help="Transport to connect with")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
def list_agents(url: str, transport: str, output_format: str) -> None:
    """List the agents a server offers.

    Examples:

        acp-runtime agents
        acp-runtime agents --url http://localhost:8000 --format json
    """

    async def run() -> None:
        try:
            async with await connect(transport_config(url, transport)) as session:
                agents = await session.list_agents()
        except AcpError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)

        if output_format == FORMAT_JSON:
            click.echo(json.dumps([a.to_wire() for a in agents], indent=2))
            return

        if not agents:
            click.echo("No agents registered.")
            return

        click.echo(f"{'Agent':<25} {'Description':<50}")
        click.echo("-" * 77)
        for agent in agents:
            click.echo(f"{truncate(agent.identifier, 25):<25} {truncate(agent.description, 50):<50}")
        click.echo(f"\nTotal: {len(agents)} agent(s)")

    asyncio.run(run())


@main.command("run")
@click.argument("agent")
@click.option("--input", "-i", "input_json", default="null", help="Agent input as JSON")
@click.option("--url", default="http://localhost:4096", help="Server URL")
@click.option("--transport", type=click.Choice(["sse", "ws"]), default="sse", help="Transport to connect with")
@click.option("--deadline", type=float, default=None, help="Seconds before the run is abandoned")
@click.option("--stream", is_flag=True, help="Print chunks as they arrive")
def run_agent(
    agent: str,
    input_json: str,
    url: str,
    transport: str,
    deadline: float | None,
    stream: bool,
) -> None:
    """Run an agent once and print its output as JSON.

    Examples:

        acp-runtime run hello-world --input '{"text": "Bee"}'

        # Chunked agents
        acp-runtime run counter --input '{"n": 3}' --stream
    """
    try:
        payload = json.loads(input_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Not valid JSON: {e}", param_hint="--input") from e

    async def execute() -> None:
        try:
            async with await connect(transport_config(url, transport), config=ClientConfig()) as session:
                handle = await session.run_agent(agent, payload, deadline=deadline)
                if stream:
                    async for chunk in handle:
                        click.echo(json.dumps(chunk, ensure_ascii=False))
                    return
                output = await handle.result()
        except AcpError as e:
            click.echo(json.dumps({"error": e.message, "code": int(e.code), "data": e.data}), err=True)
            sys.exit(1)
        except TimeoutError:
            click.echo(json.dumps({"error": "Deadline exceeded"}), err=True)
            sys.exit(1)

        click.echo(json.dumps(output, indent=2, ensure_ascii=False))

    asyncio.run(execute())


if __name__ == "__main__":
    main()
