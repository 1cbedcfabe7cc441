"""Shared fixtures: isolate tests from any user configuration file."""

import pytest

from flowengine.config import RunSettings


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWENGINE_CONFIG", str(tmp_path / "missing-configuration.json"))
    return tmp_path


@pytest.fixture
def settings():
    return RunSettings(
        node_timeout_seconds=5.0,
        cancel_grace_seconds=0.05,
        max_concurrency=None,
        execution_mode="parallel",
        error_handling="continue",
        agent_max_steps=5,
        default_model="test/model",
    )
