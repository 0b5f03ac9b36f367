"""Tests for the command line interface."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import click
import httpx
import pytest
from click.testing import CliRunner

from acp_runtime import AgentRegistry, Server, connect_in_process
from acp_runtime.cli import load_server, main, transport_config, truncate
from acp_runtime.config import ServerConfig


@pytest.fixture
def runner():
    # The real handler would keep writing to CliRunner's closed stderr
    with patch("acp_runtime.cli.configure_logging"):
        yield CliRunner()


@pytest.fixture
def in_process(server: Server):
    """Route the CLI's network connect through an in-process session."""

    async def fake_connect(target, **kwargs):
        fake_connect.targets.append(target)
        return await connect_in_process(server)

    fake_connect.targets = []
    with patch("acp_runtime.cli.connect", new=fake_connect):
        yield fake_connect


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    def test_truncate(self) -> None:
        assert truncate(None) == ""
        assert truncate("short") == "short"
        assert truncate("x" * 60, 10) == "xxxxxxx..."

    def test_transport_config(self) -> None:
        assert transport_config("http://h:1", "ws").mode == "websocket"
        assert transport_config("http://h:1", "sse").mode == "sse"
        assert transport_config("http://h:1", "sse").base_url == "http://h:1"


class TestLoadServer:
    def test_no_target(self) -> None:
        config = ServerConfig(name="plain")

        server = load_server(None, config)

        assert server.config is config
        assert len(server.registry) == 0

    def test_server_attribute(self, server: Server) -> None:
        module = SimpleNamespace(server=server)

        with patch("acp_runtime.cli.importlib.import_module", return_value=module) as imported:
            assert load_server("myapp.agents", ServerConfig()) is server

        imported.assert_called_once_with("myapp.agents")

    def test_registry_attribute(self) -> None:
        registry = AgentRegistry()
        registry.add("echo", handler=lambda input: input)
        module = SimpleNamespace(registry=registry)

        with patch("acp_runtime.cli.importlib.import_module", return_value=module):
            server = load_server("myapp.agents:registry", ServerConfig(name="wrapped"))

        assert server.registry is registry
        assert server.config.name == "wrapped"

    def test_setup_function(self) -> None:
        def setup(server: Server) -> None:
            server.registry.add("echo", handler=lambda input: input)

        with patch("acp_runtime.cli.importlib.import_module", return_value=SimpleNamespace(setup=setup)):
            server = load_server("myapp.agents:setup", ServerConfig())

        assert [d.identifier for d in server.registry.list()] == ["echo"]

    def test_unusable_attribute(self) -> None:
        with (
            patch("acp_runtime.cli.importlib.import_module", return_value=SimpleNamespace(server=42)),
            pytest.raises(click.BadParameter),
        ):
            load_server("myapp.agents", ServerConfig())


# =============================================================================
# Commands
# =============================================================================


class TestMainGroup:
    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("serve", "health", "agents", "run"):
            assert command in result.output

    def test_no_command_prints_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, [])

        assert result.exit_code == 0
        assert "Agent Communication Protocol" in result.output


class TestServeCommand:
    def test_serve_runs_uvicorn(self, runner: CliRunner, server: Server) -> None:
        with (
            patch("acp_runtime.cli.load_server", return_value=server) as loaded,
            patch("uvicorn.run") as uvicorn_run,
            patch("acp_runtime.app.create_app", return_value="app") as create_app,
        ):
            result = runner.invoke(
                main,
                ["serve", "--agents", "myapp:server", "--port", "5000", "--max-concurrency", "2"],
            )

        assert result.exit_code == 0, result.output
        config = loaded.call_args.args[1]
        assert config.max_concurrency == 2
        create_app.assert_called_once_with(server)
        uvicorn_run.assert_called_once_with("app", host="127.0.0.1", port=5000, log_level="warning")

    def test_serve_reports_import_failure(self, runner: CliRunner) -> None:
        with patch("uvicorn.run") as uvicorn_run:
            result = runner.invoke(main, ["serve", "--agents", "no_such_module_for_acp:server"])

        assert result.exit_code == 1
        uvicorn_run.assert_not_called()


class TestHealthCommand:
    def test_healthy(self, runner: CliRunner) -> None:
        client = MagicMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        client.get = AsyncMock(return_value=httpx.Response(200, json={"status": "ok"}))

        with patch("acp_runtime.cli.httpx.AsyncClient", return_value=client):
            result = runner.invoke(main, ["health", "--url", "http://test:1"])

        assert result.exit_code == 0
        assert "Server is healthy" in result.output
        client.get.assert_awaited_once_with("http://test:1/health")

    def test_unreachable(self, runner: CliRunner) -> None:
        client = MagicMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch("acp_runtime.cli.httpx.AsyncClient", return_value=client):
            result = runner.invoke(main, ["health"])

        assert result.exit_code == 1


class TestAgentsCommand:
    def test_table(self, runner: CliRunner, in_process) -> None:
        result = runner.invoke(main, ["agents"])

        assert result.exit_code == 0, result.output
        assert "hello-world" in result.output
        assert "Total: 1 agent(s)" in result.output

    def test_json(self, runner: CliRunner, in_process) -> None:
        result = runner.invoke(main, ["agents", "--format", "json", "--transport", "ws"])

        assert result.exit_code == 0, result.output
        agents = json.loads(result.stdout)
        assert agents[0]["identifier"] == "hello-world"
        assert agents[0]["description"] == "This is my Hello World agent"
        assert in_process.targets[0].mode == "websocket"


class TestRunCommand:
    def test_run_prints_output(self, runner: CliRunner, in_process) -> None:
        result = runner.invoke(main, ["run", "hello-world", "--input", '{"text": "Bee"}'])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"text": "Hi there Bee"}

    def test_run_streams_chunks(self, runner: CliRunner, server: Server, in_process) -> None:
        @server.agent("counter")
        async def counter(input: int):
            for i in range(input):
                yield {"n": i}

        result = runner.invoke(main, ["run", "counter", "--input", "2", "--stream"])

        assert result.exit_code == 0, result.output
        assert [json.loads(line) for line in result.stdout.splitlines()] == [{"n": 0}, {"n": 1}]

    def test_invalid_input_json(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["run", "hello-world", "--input", "{nope"])

        assert result.exit_code == 2
        assert "Not valid JSON" in result.output

    def test_agent_error_exits_nonzero(self, runner: CliRunner, in_process) -> None:
        result = runner.invoke(main, ["run", "missing-agent", "--input", '{"text": "Bee"}'])

        assert result.exit_code == 1
        assert "missing-agent" in result.output
