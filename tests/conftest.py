"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/fleet_monitor/sync/tests/conftest.py
"""

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """
    Keep MONITOR_* variables from the developer's shell out of tests.

    Settings are always passed explicitly in tests.
    """
    for name in list(os.environ):
        if name.startswith("MONITOR_"):
            monkeypatch.delenv(name, raising=False)
