"""Unit tests for server identifiers and session layout."""

import pytest

from boxlink.platform_detector import PlatformInfo
from boxlink.session_paths import (
    ServerRelease,
    SessionLayout,
    download_url,
    fill_template,
    install_path,
    server_command_path,
    server_identifier,
    session_identifier,
)

LINUX_X64 = PlatformInfo("linux", "x64")
ALPINE_ARM64 = PlatformInfo("alpine", "arm64")


class TestFillTemplate:
    """Test ${name} placeholder substitution."""

    def test_substitutes_known_placeholders(self):
        assert fill_template("a-${os}-${arch}", {"os": "linux", "arch": "x64"}) == "a-linux-x64"

    def test_unknown_placeholder_raises(self):
        with pytest.raises(ValueError, match="commit"):
            fill_template("${commit}", {})


class TestIdentifiers:
    """Test server and session identifiers."""

    def test_server_identifier_without_release(self):
        release = ServerRelease("1.99.32704")
        assert server_identifier(release, LINUX_X64) == "linux-x64-1.99.32704"

    def test_server_identifier_with_release(self):
        release = ServerRelease("1.99.32704", release="25105")
        assert server_identifier(release, ALPINE_ARM64) == "alpine-arm64-1.99.32704.25105"

    def test_insider_identifier(self):
        release = ServerRelease("1.100.0-insider", release="25110", quality="insider")
        assert server_identifier(release, LINUX_X64) == "linux-x64-1.100.0.25110-insider"

    def test_session_identifier_adds_target_name(self):
        release = ServerRelease("1.99.32704")
        assert (
            session_identifier(release, LINUX_X64, "fedora") == "linux-x64-1.99.32704-fedora"
        )

    def test_sessions_differ_per_target_and_platform(self):
        release = ServerRelease("1.99.32704")
        identifiers = {
            session_identifier(release, LINUX_X64, "fedora"),
            session_identifier(release, LINUX_X64, "ubuntu"),
            session_identifier(release, ALPINE_ARM64, "fedora"),
        }
        assert len(identifiers) == 3


class TestPaths:
    """Test install paths and download URLs."""

    def test_download_url(self):
        release = ServerRelease("1.99.32704", release="25105")
        assert download_url(release, LINUX_X64) == (
            "https://github.com/VSCodium/vscodium/releases/download/1.99.32704.25105/"
            "vscodium-reh-linux-x64-1.99.32704.25105.tar.gz"
        )

    def test_install_path_is_under_home(self):
        release = ServerRelease("1.99.32704")
        assert install_path(release, LINUX_X64, "/home/user/") == (
            "/home/user/.vscodium-server/bin/vscodium-reh-linux-x64-1.99.32704"
        )

    def test_install_path_does_not_depend_on_target_name(self):
        release = ServerRelease("1.99.32704")
        # two targets sharing $HOME share the install
        assert install_path(release, LINUX_X64, "/home/user") == install_path(
            release, LINUX_X64, "/home/user"
        )
        assert install_path(release, LINUX_X64, "/home/user") != install_path(
            release, ALPINE_ARM64, "/home/user"
        )

    def test_absolute_install_template_ignores_home(self):
        release = ServerRelease("1.99.32704", install_path_template="/opt/server-${arch}")
        assert install_path(release, LINUX_X64, "/home/user") == "/opt/server-x64"

    def test_server_command_path(self):
        release = ServerRelease("1.99.32704", application_name="codium-server")
        assert server_command_path(release, LINUX_X64, "/home/user").endswith(
            "vscodium-reh-linux-x64-1.99.32704/bin/codium-server"
        )


class TestSessionLayout:
    """Test paths inside a session directory."""

    def test_layout_paths(self):
        layout = SessionLayout(
            runtime_dir="/run/user/1000/",
            prefix="vscodium-reh",
            session_id="linux-x64-1.99.32704-fedora",
            controller_version="0.4.0",
        )

        assert layout.session_dir == "/run/user/1000/vscodium-reh-linux-x64-1.99.32704-fedora"
        assert layout.controller_path == f"{layout.session_dir}/controller-0.4.0.py"
        assert layout.settings_path == f"{layout.session_dir}/controller-0.4.0.json"

    def test_controller_file_is_versioned(self):
        old = SessionLayout("/tmp", "vscodium-reh", "s", "0.3.0")
        new = SessionLayout("/tmp", "vscodium-reh", "s", "0.4.0")

        assert old.session_dir == new.session_dir
        assert old.controller_path != new.controller_path
