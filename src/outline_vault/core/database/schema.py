"""SQLite schema creation, migration and transactions for the outline store."""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from outline_vault.errors import StorageUnavailable

SCHEMA_VERSION = 2

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    project_id INTEGER NOT NULL,
    parent_id TEXT,
    title TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id),
    FOREIGN KEY (parent_id) REFERENCES nodes(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_nodes_project ON nodes(project_id);
CREATE INDEX IF NOT EXISTS idx_nodes_parent ON nodes(parent_id);
CREATE INDEX IF NOT EXISTS idx_nodes_position ON nodes(project_id, parent_id, position);

CREATE TABLE IF NOT EXISTS work_dates (
    node_id TEXT NOT NULL,
    date TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (node_id, date),
    FOREIGN KEY (node_id) REFERENCES nodes(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_work_dates_date ON work_dates(date);

CREATE TABLE IF NOT EXISTS outline_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    cause TEXT NOT NULL DEFAULT 'autosave',
    parent_id INTEGER,
    hash TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    meta TEXT NOT NULL DEFAULT '{}',
    doc_json TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id),
    FOREIGN KEY (parent_id) REFERENCES outline_versions(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_versions_project ON outline_versions(project_id, id DESC);

CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stored_name TEXT NOT NULL,
    original_name TEXT,
    mime_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    digest TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_files_digest ON files(digest);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_REMINDERS_SQL = """\
CREATE TABLE IF NOT EXISTS reminders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    node_id TEXT NOT NULL UNIQUE,
    remind_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'incomplete',
    message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    dismissed_at TEXT,
    completed_at TEXT,
    FOREIGN KEY (project_id) REFERENCES projects(id),
    FOREIGN KEY (node_id) REFERENCES nodes(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders(project_id, status, remind_at);
"""

# Script upgrading a database from the keyed version to the next one.
_MIGRATIONS: dict[int, str] = {1: _REMINDERS_SQL}


def now_iso() -> str:
    """Current UTC time as stored in timestamp columns."""
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds")


def create_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes."""
    conn.executescript(_SCHEMA_SQL)
    conn.executescript(_REMINDERS_SQL)
    set_metadata(conn, "schema_version", str(SCHEMA_VERSION))


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """Return the current schema version, or None if metadata table doesn't exist."""
    try:
        value = get_metadata(conn, "schema_version")
    except sqlite3.OperationalError:
        return None
    return int(value) if value is not None else None


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Create or migrate the database schema to the latest version."""
    version = get_schema_version(conn)
    if version is None:
        create_schema(conn)
        return
    while version < SCHEMA_VERSION:
        conn.executescript(_MIGRATIONS[version])
        version += 1
        set_metadata(conn, "schema_version", str(version))
        logger.info("Migrated database schema to version {}", version)


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (key, value),
    )
    conn.commit()


def open_database(path: str | Path) -> sqlite3.Connection:
    """Open (and migrate) an outline database.

    The connection runs in autocommit mode; multi-statement writes go
    through :func:`transaction`.
    """
    db_path = str(path)
    try:
        conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        conn.execute("PRAGMA foreign_keys = ON")
        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        migrate_schema(conn)
    except sqlite3.Error as e:
        msg = f"Cannot open database {db_path!r}: {e}"
        raise StorageUnavailable(msg) from e
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction.

    Commits on success. Any exception rolls the whole block back; database
    errors are re-raised as StorageUnavailable.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        msg = f"Cannot start transaction: {e}"
        raise StorageUnavailable(msg) from e
    try:
        yield conn
    except sqlite3.Error as e:
        conn.rollback()
        logger.exception("Transaction rolled back")
        msg = f"Database error: {e}"
        raise StorageUnavailable(msg) from e
    except BaseException:
        conn.rollback()
        raise
    else:
        try:
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            msg = f"Commit failed: {e}"
            raise StorageUnavailable(msg) from e
