"""
Shared test fixtures for boxlink tests.

This module provides common fixtures used across all test types:
- A fake target that speaks the controller protocol
- A fake process table and launcher for the session controller
- Controller settings backed by a temporary install directory
"""

from pathlib import Path

import pytest

from boxlink.controller import ControllerSettings
from tests.mocks.target_mock import FakeLauncher, FakeProcessTable, FakeTarget


@pytest.fixture
def fake_target():
    """A glibc x86_64 fake target named ``fedora``."""
    return FakeTarget()


@pytest.fixture
def process_table():
    return FakeProcessTable()


@pytest.fixture
def launcher(process_table):
    return FakeLauncher(process_table)


@pytest.fixture
def sleeps():
    """Recorded sleep durations; use ``sleeps.append`` as the sleep function."""
    return []


@pytest.fixture
def install_dir(tmp_path) -> Path:
    """Install directory containing a server launcher."""
    directory = tmp_path / "install"
    (directory / "bin").mkdir(parents=True)
    server = directory / "bin" / "codium-server"
    server.write_text("#!/bin/sh\n")
    server.chmod(0o755)
    return directory


@pytest.fixture
def settings(install_dir) -> ControllerSettings:
    return ControllerSettings(
        install_dir=str(install_dir),
        application_name="codium-server",
        poll_interval=0.0,
    )


@pytest.fixture
def session_dir(tmp_path) -> Path:
    directory = tmp_path / "run" / "vscodium-reh-linux-x64-1.99.32704-fedora"
    directory.mkdir(parents=True)
    return directory
