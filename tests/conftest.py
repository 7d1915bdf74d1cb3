"""
Pytest configuration and shared fixtures for Toolpkg tests.
"""

import logging

import pytest

# Import test fixtures to make them available to all tests
# These imports register the fixtures with pytest's fixture discovery system
# ruff: noqa: F401
from tests.fixtures.artifacts import layout, toolpkg_config


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep the default data directory inside the test's tmp_path."""
    monkeypatch.setenv("TOOLPKG_HOME", str(tmp_path / "home"))


@pytest.fixture
def toolpkg_logs(caplog):
    """Capture toolpkg log records at DEBUG level."""
    caplog.set_level(logging.DEBUG, logger="toolpkg")
    return caplog
