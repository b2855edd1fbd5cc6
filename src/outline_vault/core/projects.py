"""Project (workspace) resolution.

Every engine call takes an explicit project id. Transport layers resolve it
once per command or request with :func:`resolve_project`.
"""

import sqlite3

from loguru import logger

from outline_vault.config import resolve_project_name
from outline_vault.core.database.schema import now_iso
from outline_vault.models.node import ProjectContext


def resolve_project(conn: sqlite3.Connection, name: str | None = None) -> ProjectContext:
    """Look up a project by name, creating it on first use."""
    project_name = resolve_project_name(name)
    row = conn.execute("SELECT id FROM projects WHERE name = ?", (project_name,)).fetchone()
    if row:
        return ProjectContext(project_id=row[0], name=project_name)
    # INSERT OR IGNORE keeps concurrent first use from failing on the UNIQUE name.
    conn.execute(
        "INSERT OR IGNORE INTO projects (name, created_at) VALUES (?, ?)",
        (project_name, now_iso()),
    )
    row = conn.execute("SELECT id FROM projects WHERE name = ?", (project_name,)).fetchone()
    logger.debug("Created project {!r} (id={})", project_name, row[0])
    return ProjectContext(project_id=row[0], name=project_name)


def list_projects(conn: sqlite3.Connection) -> list[ProjectContext]:
    rows = conn.execute("SELECT id, name FROM projects ORDER BY id").fetchall()
    return [ProjectContext(project_id=r[0], name=r[1]) for r in rows]
