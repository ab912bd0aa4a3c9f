"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep developer settings and log directories out of the tests."""

    for name in list(os.environ):
        if name.startswith("LOREMASTER_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOREMASTER_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def settings_path(tmp_path):
    return tmp_path / "settings.json"
