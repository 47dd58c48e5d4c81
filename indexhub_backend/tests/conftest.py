from __future__ import annotations

import pytest

from indexhub_backend.config.settings import reset_settings
from indexhub_backend.models.entities import DatabaseManager


@pytest.fixture(name="db_manager")
def fixture_db_manager(tmp_path):
    """A fresh DatabaseManager backed by a temporary SQLite file."""

    DatabaseManager.reset_instance()
    manager = DatabaseManager.get_instance(str(tmp_path / "indexhub.db"))
    yield manager
    DatabaseManager.reset_instance()


@pytest.fixture(autouse=True)
def _reset_settings():
    reset_settings()
    yield
    reset_settings()
