"""Shared pytest configuration and fixtures."""

import os

# Keep tests independent of the developer's environment
for _name in ("CIPHERROOM_ROOM_CODE_LENGTH", "CIPHERROOM_BIND_METADATA", "CIPHERROOM_LOG_LEVEL"):
    os.environ.pop(_name, None)


import pytest
from cipherroom.events import reset_event_bus

pytest_plugins = ["cipherroom.testing"]


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Point XDG_CONFIG_HOME at a temp dir so no real config is read or written."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    yield tmp_path / "xdg" / "cipherroom"


@pytest.fixture(autouse=True)
def reset_global_bus():
    """Reset the global event bus between tests."""
    reset_event_bus()
    yield
    reset_event_bus()
