"""Pytest configuration for all tests."""

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_settings_environment(monkeypatch):
    """Keep TICKETFLOW_* variables from the host out of settings built in tests."""
    for name in list(os.environ):
        if name.startswith("TICKETFLOW_"):
            monkeypatch.delenv(name, raising=False)
