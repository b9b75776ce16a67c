"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from batch_heal.engine.repository import CheckpointRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[CheckpointRepository]:
    """Migrated SQLite repository in a temporary directory."""
    repo = CheckpointRepository(tmp_path / "batch_heal.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop BATCH_HEAL_* variables inherited from the developer shell."""

    for name in list(os.environ):
        if name.startswith("BATCH_HEAL_"):
            monkeypatch.delenv(name, raising=False)
