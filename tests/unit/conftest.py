"""Shared test fixtures."""

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from outline_vault.core.assets.store import ContentStore
from outline_vault.core.database.schema import open_database
from outline_vault.core.outline.reconciler import save_outline
from outline_vault.core.projects import resolve_project
from outline_vault.models.node import SaveResult
from tests.unit.helpers import SAMPLE_OUTLINE


@pytest.fixture
def conn() -> Iterator[sqlite3.Connection]:
    """Return a fresh in-memory outline database."""
    c = open_database(":memory:")
    yield c
    c.close()


@pytest.fixture
def project_id(conn: sqlite3.Connection) -> int:
    return resolve_project(conn).project_id


@pytest.fixture
def store(conn: sqlite3.Connection, tmp_path: Path) -> ContentStore:
    return ContentStore(conn, tmp_path / "uploads")


@pytest.fixture
def saved(conn: sqlite3.Connection, project_id: int) -> SaveResult:
    """Save SAMPLE_OUTLINE into the default project."""
    return save_outline(conn, project_id, SAMPLE_OUTLINE)
