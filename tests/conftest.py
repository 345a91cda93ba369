"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeSpawner

from devwatch.config import WatchConfig


@pytest.fixture
def spawner(monkeypatch: pytest.MonkeyPatch) -> FakeSpawner:
    """Route ``devwatch.process.exec_subprocess`` to fake processes."""
    fake = FakeSpawner()
    monkeypatch.setattr("devwatch.process.exec_subprocess", fake)
    return fake


@pytest.fixture
def watch_config(tmp_path: Path) -> WatchConfig:
    """Default watcher set rooted in a temporary directory."""
    return WatchConfig(root=str(tmp_path))
