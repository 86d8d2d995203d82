"""Tool settings module.

Persistent, user-level knobs for azfleet stored in TOML: SSH and Azure CLI
timeouts, the guest administrative group, history depth for login audits,
host-key policy, and the default descriptor paths used when a command is run
without a CONFIG argument.

Deployment and user descriptors are separate JSON files, see
azfleet.deployment_config and azfleet.user_config.

Security:
- Settings file permissions: 0600 (owner read/write only)
- Atomic writes via temp file + rename
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomli
import tomlkit

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "AZFLEET_SETTINGS"


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


@dataclass
class Settings:
    """azfleet tool settings."""

    ssh_connect_timeout: int = 10
    ssh_command_timeout: int = 120
    az_timeout: int = 60
    az_create_timeout: int = 900  # az vm create blocks until the VM is provisioned
    admin_group: str = "sudo"
    history_lines: int = 10
    strict_host_key_checking: bool = False
    deployment_config: str = "./vm-config.local.json"
    users_config: str = "./vm-users.local.json"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def field_types(cls) -> dict[str, type]:
        """Map of setting name to its declared Python type."""
        return {f.name: type(f.default) for f in fields(cls)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Create from dictionary, validating value types.

        Raises:
            ConfigError: If a known key holds a value of the wrong type
        """
        types = cls.field_types()
        values: dict[str, Any] = {}

        for key, value in data.items():
            expected = types.get(key)
            if expected is None:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            # bool is a subclass of int; reject it for integer settings
            if expected is int and isinstance(value, bool):
                raise ConfigError(f"Setting '{key}' must be an integer, got {value!r}")
            if not isinstance(value, expected):
                raise ConfigError(
                    f"Setting '{key}' must be of type {expected.__name__}, got {value!r}"
                )
            if expected is int and value <= 0:
                raise ConfigError(f"Setting '{key}' must be positive, got {value}")
            values[key] = value

        return cls(**values)


class SettingsManager:
    """Manage the azfleet settings file.

    Settings are stored at ~/.azfleet/config.toml unless overridden by an
    explicit path or the AZFLEET_SETTINGS environment variable.
    """

    DEFAULT_SETTINGS_DIR = Path.home() / ".azfleet"
    DEFAULT_SETTINGS_FILE = DEFAULT_SETTINGS_DIR / "config.toml"

    @classmethod
    def get_settings_path(cls, custom_path: str | None = None) -> Path:
        """Resolve the settings file path.

        Priority order:
        1. Explicit path (--settings)
        2. AZFLEET_SETTINGS environment variable
        3. ~/.azfleet/config.toml
        """
        if custom_path:
            return Path(custom_path).expanduser()

        env_path = os.environ.get(SETTINGS_ENV_VAR)
        if env_path:
            return Path(env_path).expanduser()

        return cls.DEFAULT_SETTINGS_FILE

    @classmethod
    def load_settings(cls, custom_path: str | None = None) -> Settings:
        """Load settings from file.

        Returns:
            Settings object (defaults when the file does not exist)

        Raises:
            ConfigError: If the file cannot be parsed or holds invalid values
        """
        settings_path = cls.get_settings_path(custom_path)

        if not settings_path.exists():
            logger.debug(f"Settings file not found at {settings_path}, using defaults")
            return Settings()

        mode = settings_path.stat().st_mode & 0o777
        if mode & 0o077:
            logger.warning(f"Settings file has insecure permissions: {oct(mode)}. Fixing to 0600...")
            os.chmod(settings_path, 0o600)

        try:
            with open(settings_path, "rb") as f:
                data = tomli.load(f)
        except (OSError, tomli.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load settings from {settings_path}: {e}") from e

        logger.debug(f"Loaded settings from: {settings_path}")
        return Settings.from_dict(data)

    @classmethod
    def save_settings(cls, settings: Settings, custom_path: str | None = None) -> Path:
        """Save settings to file, preserving comments in an existing file.

        Returns:
            Path the settings were written to

        Raises:
            ConfigError: If saving fails
        """
        settings_path = cls.get_settings_path(custom_path)
        temp_path = settings_path.with_suffix(".tmp")

        try:
            settings_path.parent.mkdir(parents=True, exist_ok=True)

            if settings_path.exists():
                with open(settings_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            for key, value in settings.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(settings_path)

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save settings: {e}") from e

        logger.debug(f"Saved settings to: {settings_path}")
        return settings_path

    @classmethod
    def coerce_value(cls, key: str, raw: str) -> Any:
        """Convert a command-line string into the type of setting `key`.

        Raises:
            ConfigError: If the key is unknown or the value does not convert
        """
        expected = Settings.field_types().get(key)
        if expected is None:
            known = ", ".join(sorted(Settings.field_types()))
            raise ConfigError(f"Unknown setting '{key}'. Known settings: {known}")

        if expected is bool:
            lowered = raw.strip().lower()
            if lowered in ("true", "yes", "1", "on"):
                return True
            if lowered in ("false", "no", "0", "off"):
                return False
            raise ConfigError(f"Setting '{key}' expects true/false, got '{raw}'")

        if expected is int:
            try:
                return int(raw)
            except ValueError as e:
                raise ConfigError(f"Setting '{key}' expects an integer, got '{raw}'") from e

        return raw

    @classmethod
    def update_setting(cls, key: str, raw_value: str, custom_path: str | None = None) -> Settings:
        """Set a single setting and persist it.

        Raises:
            ConfigError: If the key or value is invalid, or saving fails
        """
        settings = cls.load_settings(custom_path)
        data = settings.to_dict()
        data[key] = cls.coerce_value(key, raw_value)
        updated = Settings.from_dict(data)
        cls.save_settings(updated, custom_path)
        return updated
