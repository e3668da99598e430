"""Unit tests for config_manager module."""

import os

import pytest

from boxlink.config_manager import BoxlinkConfig, ConfigError, ConfigManager


@pytest.fixture
def config_home(tmp_path, monkeypatch):
    """Point the default config location at a temporary directory."""
    config_dir = tmp_path / ".boxlink"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", config_dir)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    return config_dir


class TestBoxlinkConfig:
    """Tests for BoxlinkConfig dataclass."""

    def test_default_values(self):
        config = BoxlinkConfig()
        assert config.server_version == "1.99.32704"
        assert config.server_release is None
        assert config.session_prefix == "vscodium-reh"
        assert config.start_attempts == 20
        assert config.disconnect_grace == 5.0
        assert config.python_command == "python3"

    def test_to_dict_excludes_none(self):
        data = BoxlinkConfig().to_dict()
        assert "server_release" not in data
        assert "container_command" not in data
        assert data["server_version"] == "1.99.32704"

    def test_from_dict_partial(self):
        config = BoxlinkConfig.from_dict({"server_release": "25105", "start_attempts": 30})
        assert config.server_release == "25105"
        assert config.start_attempts == 30
        assert config.server_quality == "stable"  # Default

    def test_from_dict_rejects_bad_environment_name(self):
        with pytest.raises(ConfigError, match="Invalid environment variable name"):
            BoxlinkConfig.from_dict({"launch_environment": {"BAD-NAME": "x"}})

    def test_from_dict_rejects_bad_environment_value(self):
        with pytest.raises(ConfigError, match="string or true"):
            BoxlinkConfig.from_dict({"launch_environment": {"DISPLAY": 1}})

    def test_from_dict_rejects_bad_container_command(self):
        with pytest.raises(ConfigError, match="list of strings"):
            BoxlinkConfig.from_dict({"container_command": "distrobox"})

    def test_from_dict_rejects_bad_number(self):
        with pytest.raises(ConfigError, match="Invalid config value"):
            BoxlinkConfig.from_dict({"start_attempts": "many"})

    def test_server_release_info(self):
        config = BoxlinkConfig(server_version="1.99.32704", server_release="25105")
        release = config.server_release_info()
        assert release.version == "1.99.32704"
        assert release.maybe_release == ".25105"
        assert release.application_name == "codium-server"


class TestLaunchEnvironment:
    """Tests for resolving the server's launch environment."""

    def test_string_values_are_used_as_is(self):
        config = BoxlinkConfig(launch_environment={"LANG": "C.UTF-8"})
        assert config.resolved_environment({}) == {"LANG": "C.UTF-8"}

    def test_true_copies_local_value(self):
        config = BoxlinkConfig(launch_environment={"DISPLAY": True, "WAYLAND_DISPLAY": True})
        resolved = config.resolved_environment({"DISPLAY": ":0"})
        assert resolved == {"DISPLAY": ":0"}

    def test_false_is_ignored(self):
        config = BoxlinkConfig(launch_environment={"DISPLAY": False})
        assert config.resolved_environment({"DISPLAY": ":0"}) == {}


class TestConfigManager:
    """Tests for ConfigManager class."""

    def test_load_config_without_file_returns_defaults(self, config_home):
        config = ConfigManager.load_config()
        assert config == BoxlinkConfig()

    def test_custom_path_must_exist(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            ConfigManager.load_config(str(tmp_path / "missing.toml"))

    def test_save_and_load(self, config_home):
        config = BoxlinkConfig(
            server_release="25105",
            launch_environment={"DISPLAY": True, "LANG": "C.UTF-8"},
            container_command=["podman", "exec"],
        )

        ConfigManager.save_config(config)
        loaded = ConfigManager.load_config()

        assert loaded == config
        assert (config_home / "config.toml").stat().st_mode & 0o777 == 0o600
        assert config_home.stat().st_mode & 0o777 == 0o700

    def test_save_preserves_comments(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('# my settings\nserver_version = "1.98.0"\n')

        ConfigManager.save_config(BoxlinkConfig(server_version="1.99.32704"), str(path))

        text = path.read_text()
        assert "# my settings" in text
        assert 'server_version = "1.99.32704"' in text

    def test_load_fixes_insecure_permissions(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('server_version = "1.99.32704"\n')
        os.chmod(path, 0o644)

        ConfigManager.load_config(str(path))

        assert path.stat().st_mode & 0o777 == 0o600

    def test_load_invalid_toml_raises(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("server_version = \n")

        with pytest.raises(ConfigError, match="Failed to load config"):
            ConfigManager.load_config(str(path))

    def test_update_config(self, config_home):
        updated = ConfigManager.update_config(start_attempts=40, server_release="25105")

        assert updated.start_attempts == 40
        assert ConfigManager.load_config().server_release == "25105"

    def test_update_unknown_key_raises(self, config_home):
        with pytest.raises(ConfigError, match="Unknown config key"):
            ConfigManager.update_config(no_such_key=1)

    def test_update_validates_values(self, config_home):
        with pytest.raises(ConfigError):
            ConfigManager.update_config(container_command="distrobox")
        assert not (config_home / "config.toml").exists()
