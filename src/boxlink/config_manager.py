"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores the server release to install, launch environment and session tuning.

Security:
- Config file permissions: 0600 (owner read/write only)
- Atomic writes through a temporary file
"""

import logging
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for Python versions that ship tomllib
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

from boxlink.session_paths import (
    DEFAULT_DOWNLOAD_URL_TEMPLATE,
    DEFAULT_INSTALL_PATH_TEMPLATE,
    ServerRelease,
)

logger = logging.getLogger(__name__)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class BoxlinkConfig:
    """Boxlink configuration data."""

    server_version: str = "1.99.32704"
    server_release: str | None = None
    server_quality: str = "stable"
    server_application_name: str = "codium-server"
    server_data_folder: str = ".vscodium-server"
    download_url_template: str = DEFAULT_DOWNLOAD_URL_TEMPLATE
    install_path_template: str = DEFAULT_INSTALL_PATH_TEMPLATE
    session_prefix: str = "vscodium-reh"
    # value is a string, or true to copy the variable from the local environment
    launch_environment: dict[str, str | bool] = field(default_factory=dict)
    start_attempts: int = 20
    disconnect_grace: float = 5.0
    python_command: str = "python3"
    container_command: list[str] | None = None
    command_timeout: float = 120.0

    def server_release_info(self) -> ServerRelease:
        return ServerRelease(
            version=self.server_version,
            release=self.server_release,
            quality=self.server_quality,
            application_name=self.server_application_name,
            data_folder=self.server_data_folder,
            download_url_template=self.download_url_template,
            install_path_template=self.install_path_template,
        )

    def resolved_environment(self, local_env: dict[str, str] | None = None) -> dict[str, str]:
        """Environment for the server; ``true`` entries copy the local value if set."""
        local_env = os.environ if local_env is None else local_env
        resolved = {}
        for name, value in self.launch_environment.items():
            if isinstance(value, str):
                resolved[name] = value
            elif value is True and local_env.get(name):
                resolved[name] = local_env[name]
        return resolved

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # Filter out None values as TOML doesn't support them
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BoxlinkConfig":
        """Create from dictionary.

        Raises:
            ConfigError: If a value has the wrong type
        """
        defaults = cls()
        environment = data.get("launch_environment", {})
        if not isinstance(environment, dict):
            raise ConfigError("launch_environment must be a table")
        for name, value in environment.items():
            if not _ENV_NAME.match(name):
                raise ConfigError(f"Invalid environment variable name: {name}")
            if not isinstance(value, (str, bool)):
                raise ConfigError(f"launch_environment.{name} must be a string or true")

        container_command = data.get("container_command")
        if container_command is not None and not (
            isinstance(container_command, list) and all(isinstance(a, str) for a in container_command)
        ):
            raise ConfigError("container_command must be a list of strings")

        try:
            return cls(
                server_version=str(data.get("server_version", defaults.server_version)),
                server_release=(
                    str(data["server_release"]) if data.get("server_release") is not None else None
                ),
                server_quality=data.get("server_quality", defaults.server_quality),
                server_application_name=data.get(
                    "server_application_name", defaults.server_application_name
                ),
                server_data_folder=data.get("server_data_folder", defaults.server_data_folder),
                download_url_template=data.get(
                    "download_url_template", defaults.download_url_template
                ),
                install_path_template=data.get(
                    "install_path_template", defaults.install_path_template
                ),
                session_prefix=data.get("session_prefix", defaults.session_prefix),
                launch_environment=dict(environment),
                start_attempts=int(data.get("start_attempts", defaults.start_attempts)),
                disconnect_grace=float(data.get("disconnect_grace", defaults.disconnect_grace)),
                python_command=data.get("python_command", defaults.python_command),
                container_command=container_command,
                command_timeout=float(data.get("command_timeout", defaults.command_timeout)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e


class ConfigManager:
    """Manage boxlink configuration file.

    Configuration is stored at ~/.boxlink/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".boxlink"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Raises:
            ConfigError: If a custom path does not exist
        """
        if custom_path:
            path = Path(custom_path).expanduser().resolve()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            return path

        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def ensure_config_dir(cls) -> Path:
        """Ensure config directory exists with secure permissions.

        Raises:
            ConfigError: If directory creation fails
        """
        try:
            cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)

            # Set secure permissions (owner only: rwx------)
            os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)

            logger.debug(f"Config directory ready: {cls.DEFAULT_CONFIG_DIR}")
            return cls.DEFAULT_CONFIG_DIR

        except OSError as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> BoxlinkConfig:
        """Load configuration from file, or defaults when there is none.

        Raises:
            ConfigError: If loading fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return BoxlinkConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:  # Check if group/other have any permissions
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)  # type: ignore[attr-defined]

        except (OSError, tomli.TOMLDecodeError) as e:  # type: ignore[attr-defined]
            raise ConfigError(f"Failed to load config: {e}") from e

        logger.debug(f"Loaded config from: {config_path}")
        return BoxlinkConfig.from_dict(data)

    @classmethod
    def save_config(cls, config: BoxlinkConfig, custom_path: str | None = None) -> None:
        """Save configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = Path(custom_path).expanduser().resolve()
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.ensure_config_dir()
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            # Load existing file if it exists (preserves comments/formatting)
            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()
            for key, value in config.to_dict().items():
                doc[key] = value
            if config.server_release is None and "server_release" in doc:
                del doc["server_release"]

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            # Set secure permissions before moving
            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")

        except Exception as e:
            # Cleanup temp file on error
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> BoxlinkConfig:
        """Update configuration values.

        Raises:
            ConfigError: If a key is unknown or the update fails
        """
        config = cls.load_config(custom_path)

        for key, value in updates.items():
            if not hasattr(config, key):
                raise ConfigError(f"Unknown config key: {key}")
            setattr(config, key, value)

        # round-trip through from_dict so values are validated and coerced
        config = BoxlinkConfig.from_dict(config.to_dict())
        cls.save_config(config, custom_path)
        return config
