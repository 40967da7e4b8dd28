"""
Unit tests for the command-line entry point.

Tests cover:
- Argument parsing for run, health and emergency commands
- Config overrides from --paper/--live and --log-level
- Health and emergency commands against a mocked HTTP transport
"""
import json

import httpx
import pytest

from janus import __main__ as cli
from janus import __version__


@pytest.fixture
def mock_http(monkeypatch):
    """Route every httpx.AsyncClient the CLI creates through a handler."""
    real_client = httpx.AsyncClient
    requests: list[httpx.Request] = []

    def install(handler):
        def recording(request):
            requests.append(request)
            return handler(request)

        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(recording)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", factory)
        return requests

    return install


class TestParseArgs:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = cli.parse_args([])

        assert args.command is None
        assert args.paper_trading is None
        assert args.config is None

    def test_paper_and_live(self):
        assert cli.parse_args(["--paper"]).paper_trading is True
        assert cli.parse_args(["--live"]).paper_trading is False

    def test_paper_and_live_exclusive(self):
        """Verify --paper and --live cannot be combined."""
        with pytest.raises(SystemExit):
            cli.parse_args(["--paper", "--live"])

    def test_emergency_trigger(self):
        args = cli.parse_args(["emergency", "trigger", "venue outage", "--user-id", "u-1"])

        assert args.command == "emergency"
        assert args.action == "trigger"
        assert args.reason == "venue outage"
        assert args.user_id == "u-1"

    def test_emergency_requires_action(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["emergency"])

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["--log-level", "TRACE"])


class TestConfigLoading:
    """Tests for config discovery and overrides."""

    def test_overrides_from_flags(self, tmp_path, monkeypatch):
        """Verify --live and --log-level win over the file."""
        monkeypatch.chdir(tmp_path)
        config_file = tmp_path / "custom.toml"
        config_file.write_text(
            '[trading]\npaper_trading = true\n\n[janus]\nlog_level = "INFO"\n'
        )

        config = cli.load_config(
            cli.parse_args(["--config", str(config_file), "--live", "--log-level", "DEBUG"])
        )

        assert config.get_bool("trading.paper_trading") is False
        assert config.get("janus.log_level") == "DEBUG"

    def test_no_config_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        assert cli.find_config_file(tmp_path / "missing.toml") is None

    def test_search_path(self, tmp_path, monkeypatch):
        """Verify config/default.toml is found from the working directory."""
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "default.toml").write_text("[server]\nport = 9100\n")

        args = cli.parse_args(["health"])

        assert cli.find_config_file(None).name == "default.toml"
        assert cli.base_url(args) == "http://localhost:9100"

    def test_explicit_url(self):
        args = cli.parse_args(["--url", "http://janus:8080/", "health"])

        assert cli.base_url(args) == "http://janus:8080"


class TestCommands:
    """Tests for commands that talk to a running instance."""

    def test_version(self, capsys):
        assert cli.main(["version"]) == 0
        assert __version__ in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_health_healthy(self, mock_http, capsys):
        """Verify a healthy instance exits 0 and prints connections."""
        requests = mock_http(lambda request: httpx.Response(200, json={
            "status": "healthy",
            "message": "ok",
            "in_flight": 1,
            "connections": {"guest": 2},
        }))

        code = await cli.check_health("http://janus:8080")

        output = capsys.readouterr().out
        assert code == 0
        assert requests[0].url.path == "/health"
        assert "Status: healthy" in output
        assert "guest: 2" in output

    @pytest.mark.asyncio
    async def test_health_degraded(self, mock_http):
        mock_http(lambda request: httpx.Response(503, json={"status": "unhealthy"}))

        assert await cli.check_health("http://janus:8080") == 1

    @pytest.mark.asyncio
    async def test_health_unreachable(self, mock_http, capsys):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        mock_http(refuse)

        assert await cli.check_health("http://janus:8080") == 1
        assert "Cannot connect" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_emergency_trigger(self, mock_http, capsys):
        """Verify trigger posts the reason and user scope."""
        requests = mock_http(lambda request: httpx.Response(201, json={"id": "e-1"}))
        args = cli.parse_args(["emergency", "trigger", "halt", "--user-id", "u-1"])

        code = await cli.emergency_command("http://janus:8080", args)

        assert code == 0
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/emergency/stop"
        assert json.loads(requests[0].content) == {"reason": "halt", "userId": "u-1"}
        assert json.loads(capsys.readouterr().out) == {"id": "e-1"}

    @pytest.mark.asyncio
    async def test_emergency_resolve_not_found(self, mock_http):
        requests = mock_http(lambda request: httpx.Response(404, json={"error": "not found"}))
        args = cli.parse_args(["emergency", "resolve", "e-9"])

        code = await cli.emergency_command("http://janus:8080", args)

        assert code == 1
        assert requests[0].url.path == "/emergency/e-9/resolve"

    @pytest.mark.asyncio
    async def test_emergency_active(self, mock_http):
        requests = mock_http(lambda request: httpx.Response(200, json={"events": []}))
        args = cli.parse_args(["emergency", "active"])

        assert await cli.emergency_command("http://janus:8080", args) == 0
        assert requests[0].method == "GET"
        assert requests[0].url.path == "/emergency/active"
