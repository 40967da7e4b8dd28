"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values passed at the call site
2. TOML file (config/default.toml)
3. Environment variables (JANUS_* prefix)
4. Explicit overrides (command-line flags)
"""
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        paper = config.get_bool("trading.paper_trading", True)
        max_size = config.get_decimal("trading.max_position_usd", Decimal("1000"))
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "JANUS_",
        overrides: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
            overrides: Dot-notation values that win over every other source
        """
        self._data: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path
        self._overrides: dict[str, Any] = dict(overrides or {})

        if config_path and config_path.exists():
            self._load_toml(config_path)

    @property
    def config_path(self) -> Optional[Path]:
        """Path of the loaded TOML file, if any."""
        return self._config_path

    def _load_toml(self, path: Path) -> None:
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        current: Any = data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]
        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Any]:
        """Get value from environment variable.

        Converts key like "trading.paper_trading" to "JANUS_TRADING_PAPER_TRADING".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            return True, self._parse_env_value(os.environ[env_key])
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def set(self, key: str, value: Any) -> None:
        """Set an explicit override (e.g. from a CLI flag)."""
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Explicit overrides win, then environment variables, then TOML values.

        Args:
            key: Dot-notation key like "trading.max_position_usd"
            default: Default value if key not found

        Returns:
            Configuration value
        """
        if key in self._overrides:
            return self._overrides[key]

        found, value = self._get_env_value(key)
        if found:
            return value

        found, value = self._get_nested(self._data, key)
        if found:
            return value

        return default

    def get_section(self, section: str) -> dict[str, Any]:
        """Get entire configuration section as a dictionary."""
        found, value = self._get_nested(self._data, section)
        if found and isinstance(value, dict):
            return value
        return {}

    def get_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        """Get configuration value as Decimal."""
        value = self.get(key)
        if value is None:
            return default
        return Decimal(str(value))

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float."""
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean.

        Numeric env values such as "1" and "0" are accepted as well.
        """
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer."""
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        """Get configuration value as list.

        Comma-separated strings are split; scalars are wrapped.
        """
        if default is None:
            default = []
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [v.strip() for v in value.split(",")]
        return [value]
