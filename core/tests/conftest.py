"""Shared fixtures: every test runs against an empty configuration file."""

import pytest

from adaptflow.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point ADAPTFLOW_CONFIG at a file that does not exist, so defaults apply."""
    monkeypatch.setenv("ADAPTFLOW_CONFIG", str(tmp_path / "no-config" / "configuration.json"))


@pytest.fixture(autouse=True)
def reset_trace_context():
    yield
    clear_trace_context()
