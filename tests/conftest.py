"""
Pytest configuration and shared fixtures for hc-backdrop tests.

This file contains:
- Commands for the fake lair-keystore / holochain daemons in fixtures/
- Environment isolation for the BACKDROP_* settings
- Marker registration
"""

import shlex
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from backdrop.config.startup_timeouts import reset_timeouts  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def script_command(name):
    """Shell-style command line running a fixture script with this interpreter."""
    return shlex.join([sys.executable, str(FIXTURES_DIR / name)])


@pytest.fixture(scope="session")
def project_root_path():
    """Return the project root directory path."""
    return project_root


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep the caller's BACKDROP_* / log settings out of the tests."""
    for key in (
        "BACKDROP_LAIR_BIN",
        "BACKDROP_HOLOCHAIN_BIN",
        "BACKDROP_CLEANUP",
        "BACKDROP_START_TIMEOUT",
        "BACKDROP_ADMIN_TIMEOUT",
        "BACKDROP_STOP_GRACE",
        "BACKDROP_MAX_TIMEOUT",
        "BACKDROP_KEYSTORE_INIT_TIMEOUT",
        "BACKDROP_PORT_PROBE_TIMEOUT",
        "FAKE_LAIR_MODE",
        "FAKE_HOLOCHAIN_MODE",
        "LAIR_LOG",
        "CONDUCTOR_LOG",
        "RUST_LOG",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    reset_timeouts()
    yield
    reset_timeouts()


@pytest.fixture
def fake_daemons(monkeypatch):
    """Point the controller at the fake daemons in tests/fixtures."""
    commands = {
        "lair": script_command("fake_lair.py"),
        "holochain": script_command("fake_holochain.py"),
    }
    monkeypatch.setenv("BACKDROP_LAIR_BIN", commands["lair"])
    monkeypatch.setenv("BACKDROP_HOLOCHAIN_BIN", commands["holochain"])
    return commands


@pytest.fixture
def python_command():
    """Argv prefix for running an inline script: ``[*python_command, code]``."""
    return [sys.executable, "-u", "-c"]


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Register custom markers
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (spawns fake daemons)"
    )
    config.addinivalue_line(
        "markers", "e2e: mark test as an end-to-end test (needs real holochain binaries)"
    )
