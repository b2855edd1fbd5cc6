"""Replay a historical snapshot into the live nodes table."""

import sqlite3
from typing import Any

from loguru import logger

from outline_vault.config import CAUSE_RESTORE, DEFAULT_TITLE
from outline_vault.core.assets.richtext import stringify_nodes
from outline_vault.core.database.schema import transaction
from outline_vault.core.outline.reconciler import insert_node
from outline_vault.core.reminders.store import reattach_reminders, stash_reminders
from outline_vault.core.versioning.store import get_version, record_version_locked
from outline_vault.errors import NotFoundError, ValidationError
from outline_vault.models.node import RestoreResult


def _snapshot_content(value: Any) -> str:
    if isinstance(value, list):
        return stringify_nodes(value)
    return value if isinstance(value, str) else ""


def _replay(conn: sqlite3.Connection, project_id: int, roots: list[Any]) -> int:
    """Insert a frozen forest depth-first, keeping ids; returns the node count."""
    count = 0
    seen: set[str] = set()
    stack: list[tuple[Any, str | None, int]] = [
        (n, None, idx) for idx, n in reversed(list(enumerate(roots)))
    ]
    while stack:
        node, parent_id, index = stack.pop()
        if not isinstance(node, dict) or not node.get("id"):
            msg = "Snapshot contains a node without an id"
            raise ValidationError(msg, node_id=parent_id)
        node_id = str(node["id"])
        if node_id in seen:
            logger.warning("Snapshot repeats node {}, keeping the first copy", node_id)
            continue
        seen.add(node_id)
        position = node.get("position")
        insert_node(
            conn,
            node_id=node_id,
            project_id=project_id,
            parent_id=parent_id,
            title=node["title"] if isinstance(node.get("title"), str) else DEFAULT_TITLE,
            status=node.get("status") or "",
            content=_snapshot_content(node.get("content")),
            position=position if isinstance(position, int) else index,
            worked_dates=node.get("ownWorkedOnDates") or [],
            created_at=node.get("created_at"),
            updated_at=node.get("updated_at"),
        )
        count += 1
        children = node.get("children") or []
        stack.extend((c, node_id, i) for i, c in reversed(list(enumerate(children))))
    return count


def restore_version(conn: sqlite3.Connection, project_id: int, version_id: int) -> RestoreResult:
    """Replace the live outline with the forest of a stored version.

    The replacement and the resulting ``restore`` version are written in one
    transaction; on failure the previous outline stays in place.

    Raises:
        NotFoundError: The version does not exist in this project.
    """
    version = get_version(conn, project_id, version_id)
    if version is None:
        msg = f"Version {version_id} not found"
        raise NotFoundError(msg)

    with transaction(conn):
        reminders = stash_reminders(conn, project_id)
        conn.execute(
            "DELETE FROM work_dates WHERE node_id IN (SELECT id FROM nodes WHERE project_id = ?)",
            (project_id,),
        )
        conn.execute("DELETE FROM nodes WHERE project_id = ?", (project_id,))
        count = _replay(conn, project_id, version.doc.get("roots") or [])
        dropped = reattach_reminders(conn, project_id, reminders)
        recorded = record_version_locked(
            conn, project_id, CAUSE_RESTORE, {"fromVersionId": version_id}
        )

    logger.info("Restored version {} ({} nodes) as version {}", version_id, count, recorded.id)
    if dropped:
        logger.info("Dropped {} reminder(s) of nodes absent from version {}", dropped, version_id)
    return RestoreResult(restored_to=version_id, new_version_id=recorded.id)
