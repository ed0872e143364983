"""Shared fixtures for the flowgate tests."""

import pytest

from flowgate import config as flowgate_config
from flowgate.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config file at an empty location so ~/.flowgate never leaks in."""
    monkeypatch.setattr(flowgate_config, "FLOWGATE_CONFIG_FILE", tmp_path / "missing.json")
    yield
    clear_trace_context()
