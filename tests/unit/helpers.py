"""Sample data and small query helpers shared by the tests."""

import sqlite3
from typing import Any

SAMPLE_OUTLINE: list[dict[str, Any]] = [
    {
        "id": "new-project",
        "title": "Project #work",
        "status": "todo",
        "dates": ["2024-03-01"],
        "children": [
            {
                "id": "new-design",
                "title": "Design",
                "status": "done",
                "dates": ["2024-03-02"],
                "content": [
                    {
                        "type": "paragraph",
                        "content": [{"type": "text", "text": "Sketch the #ui first"}],
                    }
                ],
                "children": [{"id": "new-review", "title": "Review"}],
            },
            {"id": "new-build", "title": "Build", "status": "in-progress"},
        ],
    },
    {"id": "new-inbox", "title": "Inbox", "dates": ["2024-03-02"]},
]


def ids_by_title(conn: sqlite3.Connection, project_id: int) -> dict[str, str]:
    rows = conn.execute("SELECT title, id FROM nodes WHERE project_id = ?", (project_id,))
    return dict(rows.fetchall())


def node_count(conn: sqlite3.Connection, project_id: int) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM nodes WHERE project_id = ?", (project_id,)
    ).fetchone()[0]


def version_count(conn: sqlite3.Connection, project_id: int) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM outline_versions WHERE project_id = ?", (project_id,)
    ).fetchone()[0]


def work_dates(conn: sqlite3.Connection, node_id: str) -> set[str]:
    rows = conn.execute("SELECT date FROM work_dates WHERE node_id = ?", (node_id,))
    return {r[0] for r in rows}
