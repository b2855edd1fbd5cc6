"""Single-node reads and partial updates."""

import json
import sqlite3
from typing import Any

from loguru import logger

from outline_vault.config import CAUSE_AUTOSAVE
from outline_vault.core.assets.richtext import stringify_nodes
from outline_vault.core.database.schema import now_iso, transaction
from outline_vault.core.outline.reconciler import coerce_status
from outline_vault.core.tags.extractor import compute_tags
from outline_vault.core.tree.builder import NODE_COLUMNS, row_to_node
from outline_vault.core.versioning.store import record_version_locked
from outline_vault.errors import NotFoundError, ValidationError
from outline_vault.models.node import Node

UPDATABLE_FIELDS = ("title", "status", "content")


def get_node(conn: sqlite3.Connection, project_id: int, node_id: str) -> Node:
    """Look up a node of the project, with its own worked dates."""
    row = conn.execute(
        f"SELECT {NODE_COLUMNS} FROM nodes WHERE id = ? AND project_id = ?",
        (node_id, project_id),
    ).fetchone()
    if row is None:
        msg = f"Node {node_id} not found"
        raise NotFoundError(msg)
    dates = [
        r[0] for r in conn.execute("SELECT date FROM work_dates WHERE node_id = ?", (node_id,))
    ]
    return row_to_node(row, dates)


def update_node(
    conn: sqlite3.Connection, project_id: int, node_id: str, changes: dict[str, Any]
) -> Node:
    """Apply a partial update of title, status and/or content.

    Fields absent from ``changes`` keep their stored value. Tags are
    recomputed and an autosave version is recorded in the same transaction.
    """
    unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
    if unknown:
        msg = f"Cannot update field(s): {', '.join(unknown)}"
        raise ValidationError(msg, node_id=node_id)

    with transaction(conn):
        current = get_node(conn, project_id, node_id)
        title = changes.get("title", current.title)
        if not isinstance(title, str):
            msg = "Node title must be a string"
            raise ValidationError(msg, node_id=node_id)
        status = coerce_status(changes["status"]) if "status" in changes else current.status
        content = changes.get("content", current.content)
        if isinstance(content, list):
            content = stringify_nodes(content)
        elif not isinstance(content, str):
            msg = "Node content must be a string or a list"
            raise ValidationError(msg, node_id=node_id)

        if (title, status, content) == (current.title, current.status, current.content):
            return current
        conn.execute(
            "UPDATE nodes SET title = ?, status = ?, content = ?, tags = ?, updated_at = ? "
            "WHERE id = ?",
            (
                title,
                status,
                content,
                json.dumps(list(compute_tags(title, content))),
                now_iso(),
                node_id,
            ),
        )
        record_version_locked(conn, project_id, CAUSE_AUTOSAVE, {"nodeId": node_id})
        updated = get_node(conn, project_id, node_id)

    logger.info("Updated node {}", node_id)
    return updated
