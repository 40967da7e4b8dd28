"""
Unit tests for ConfigManager.

Tests verify:
- TOML loading
- Environment variable overrides
- Explicit overrides
- Type-specific getters
- The shipped default.toml feeds the component factories
"""
from decimal import Decimal
from pathlib import Path

import pytest

from janus.core.config import ConfigManager
from janus.domain.risk import PlanTier, TradingLimits

DEFAULT_TOML = Path(__file__).resolve().parents[2] / "config" / "default.toml"


def write_toml(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "janus.toml"
    path.write_text(text)
    return path


class TestConfigBasics:
    """Tests for basic ConfigManager functionality."""

    def test_empty_config(self):
        """Verify ConfigManager works without a config file."""
        config = ConfigManager()
        assert config.get("any.key") is None
        assert config.get("any.key", "default") == "default"

    def test_load_toml_file(self, tmp_path):
        """Verify ConfigManager loads TOML config file."""
        path = write_toml(tmp_path, """
[janus]
log_level = "debug"

[trading]
paper_trading = true
min_confidence = 65
""")
        config = ConfigManager(config_path=path)

        assert config.config_path == path
        assert config.get("janus.log_level") == "debug"
        assert config.get("trading.paper_trading") is True
        assert config.get("trading.min_confidence") == 65

    def test_missing_file_is_ignored(self, tmp_path):
        """Verify a non-existent path yields an empty config."""
        config = ConfigManager(config_path=tmp_path / "absent.toml")
        assert config.get("janus.log_level", "INFO") == "INFO"

    def test_get_bool(self, tmp_path):
        """Verify get_bool returns correct boolean values."""
        path = write_toml(tmp_path, """
[settings]
flag_true = true
flag_false = false
""")
        config = ConfigManager(config_path=path)
        assert config.get_bool("settings.flag_true") is True
        assert config.get_bool("settings.flag_false") is False
        assert config.get_bool("settings.missing", default=True) is True

    def test_get_decimal(self, tmp_path):
        """Verify get_decimal returns Decimal values."""
        path = write_toml(tmp_path, """
[trading]
max_position_usd = 2500.50
""")
        config = ConfigManager(config_path=path)
        assert config.get_decimal("trading.max_position_usd") == Decimal("2500.5")
        assert config.get_decimal("trading.missing", Decimal("100")) == Decimal("100")

    def test_get_int_and_float(self, tmp_path):
        """Verify numeric getters coerce values."""
        path = write_toml(tmp_path, """
[server]
port = 9000

[execution]
poll_timeout_seconds = 12
""")
        config = ConfigManager(config_path=path)
        assert config.get_int("server.port") == 9000
        assert config.get_float("execution.poll_timeout_seconds") == 12.0
        assert config.get_int("server.missing", 8080) == 8080

    def test_get_list(self):
        """Verify get_list splits strings and wraps scalars."""
        config = ConfigManager(overrides={"a.list": "x, y", "a.scalar": 3})
        assert config.get_list("a.list") == ["x", "y"]
        assert config.get_list("a.scalar") == [3]
        assert config.get_list("a.missing") == []

    def test_get_section(self, tmp_path):
        """Verify get_section returns a nested table."""
        path = write_toml(tmp_path, """
[venues.retry]
max_attempts = 4
""")
        config = ConfigManager(config_path=path)
        assert config.get_section("venues.retry") == {"max_attempts": 4}
        assert config.get_section("venues.missing") == {}


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_env_overrides_toml(self, tmp_path, monkeypatch):
        """Verify environment variables override TOML values."""
        path = write_toml(tmp_path, """
[janus]
log_level = "info"
""")
        monkeypatch.setenv("JANUS_JANUS_LOG_LEVEL", "debug")

        config = ConfigManager(config_path=path)
        assert config.get("janus.log_level") == "debug"

    def test_env_boolean_parsing(self, monkeypatch):
        """Verify environment variable boolean parsing."""
        monkeypatch.setenv("JANUS_TRADING_PAPER_TRADING", "false")

        config = ConfigManager()
        assert config.get("trading.paper_trading") is False
        assert config.get_bool("trading.paper_trading", True) is False

    def test_env_numeric_parsing(self, monkeypatch):
        """Verify numeric environment values are typed."""
        monkeypatch.setenv("JANUS_SERVER_PORT", "9100")
        monkeypatch.setenv("JANUS_TRADING_MIN_CONFIDENCE", "72.5")

        config = ConfigManager()
        assert config.get("server.port") == 9100
        assert config.get("trading.min_confidence") == 72.5


class TestExplicitOverrides:
    """Tests for overrides passed in code (CLI flags)."""

    def test_overrides_beat_env(self, monkeypatch):
        """Verify explicit overrides win over environment variables."""
        monkeypatch.setenv("JANUS_TRADING_PAPER_TRADING", "true")
        config = ConfigManager(overrides={"trading.paper_trading": False})
        assert config.get_bool("trading.paper_trading", True) is False

    def test_set(self):
        """Verify set() registers an override."""
        config = ConfigManager()
        config.set("server.port", 1234)
        assert config.get_int("server.port") == 1234


class TestDefaultConfig:
    """Tests against the shipped config/default.toml."""

    @pytest.fixture
    def config(self):
        return ConfigManager(config_path=DEFAULT_TOML)

    def test_defaults_present(self, config):
        """Verify the documented defaults."""
        assert config.get_bool("trading.paper_trading") is True
        assert config.get_int("realtime.rate_limit_messages") == 50
        assert config.get_int("realtime.basic_symbol_limit") == 10
        assert config.get_float("realtime.guest_idle_seconds") == 1800.0

    def test_trading_limits_from_default(self, config):
        """Verify TradingLimits reads the trading section."""
        limits = TradingLimits.from_config(config)

        assert limits.max_position_usd == Decimal("1000")
        assert limits.min_confidence == Decimal("60")
        assert limits.required_plan is PlanTier.PRO
        assert limits.user_exposure_cap == Decimal("5000")
