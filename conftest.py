"""Pytest configuration and fixtures for boxlink tests.

CRITICAL: Protects the user's configuration from test modifications.
"""

import os
import shutil
from pathlib import Path

import pytest


@pytest.fixture(scope="session", autouse=True)
def protect_user_config():
    """Protect ~/.boxlink/config.toml from being modified by tests.

    This fixture:
    1. Backs up the real config.toml before any tests run
    2. Restores it after all tests complete
    """
    config_path = Path.home() / ".boxlink" / "config.toml"
    backup_path = Path.home() / ".boxlink" / ".config.toml.pytest-backup"

    config_existed = config_path.exists()
    if config_existed:
        shutil.copy2(config_path, backup_path)
        print(f"\n[PYTEST] Protected config.toml - backup at {backup_path}")

    yield

    if config_existed and backup_path.exists():
        shutil.copy2(backup_path, config_path)
        backup_path.unlink()
        print("\n[PYTEST] Restored config.toml from backup")
    elif backup_path.exists():
        backup_path.unlink()


@pytest.fixture(scope="session", autouse=True)
def prevent_real_containers():
    """Mark test mode; ``ContainerCommand.auto()`` refuses to run under it."""
    os.environ["BOXLINK_TEST_MODE"] = "true"
    yield
    os.environ.pop("BOXLINK_TEST_MODE", None)
