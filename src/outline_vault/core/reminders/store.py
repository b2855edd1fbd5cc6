"""Per-node reminders: schedule, list, dismiss, complete and delete.

Each node carries at most one reminder. Rescheduling a node's reminder
reopens it. Reminders go away with their node.
"""

import sqlite3
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from outline_vault.config import (
    CAUSE_AUTOSAVE,
    REMINDER_COMPLETED,
    REMINDER_INCOMPLETE,
    REMINDER_STATUSES,
)
from outline_vault.core.database.schema import now_iso, transaction
from outline_vault.core.outline.nodes import get_node
from outline_vault.core.versioning.store import record_version_locked
from outline_vault.errors import NotFoundError, ValidationError
from outline_vault.models.node import Reminder

_SELECT = (
    "SELECT r.id, r.project_id, r.node_id, r.remind_at, r.status, r.message, r.created_at, "
    "r.updated_at, r.dismissed_at, r.completed_at, n.title, n.status "
    "FROM reminders r JOIN nodes n ON n.id = r.node_id WHERE r.project_id = ?"
)

_ROW_COLUMNS = (
    "id, project_id, node_id, remind_at, status, message, created_at, updated_at, "
    "dismissed_at, completed_at"
)


def parse_remind_at(value: Any) -> str:
    """Normalize a reminder time to the UTC ISO form of the timestamp columns.

    Accepts a datetime or an ISO 8601 string (a bare date means midnight).
    Times without an offset are taken as UTC.
    """
    if isinstance(value, datetime):
        when = value
    elif isinstance(value, str) and value.strip():
        try:
            when = datetime.fromisoformat(value.strip())
        except ValueError as e:
            msg = f"Invalid reminder time {value!r}"
            raise ValidationError(msg) from e
    else:
        msg = f"Invalid reminder time {value!r}"
        raise ValidationError(msg)
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return when.astimezone(UTC).isoformat(timespec="milliseconds")


def _row_to_reminder(row: tuple) -> Reminder:
    return Reminder(
        id=row[0],
        project_id=row[1],
        node_id=row[2],
        remind_at=row[3],
        status=REMINDER_COMPLETED if row[4] == REMINDER_COMPLETED else REMINDER_INCOMPLETE,
        message=row[5] or None,
        created_at=row[6],
        updated_at=row[7],
        dismissed_at=row[8],
        completed_at=row[9],
        node_title=row[10],
        node_status=row[11],
    )


def get_reminder(conn: sqlite3.Connection, project_id: int, reminder_id: int) -> Reminder:
    row = conn.execute(f"{_SELECT} AND r.id = ?", (project_id, reminder_id)).fetchone()
    if row is None:
        msg = f"Reminder {reminder_id} not found"
        raise NotFoundError(msg)
    return _row_to_reminder(row)


def set_reminder(
    conn: sqlite3.Connection,
    project_id: int,
    node_id: str,
    remind_at: Any,
    message: str | None = None,
) -> Reminder:
    """Schedule the node's reminder, replacing and reopening any existing one.

    Raises:
        ValidationError: ``remind_at`` is not a valid time.
        NotFoundError: The node is not in this project.
    """
    when = parse_remind_at(remind_at)
    with transaction(conn):
        get_node(conn, project_id, node_id)
        stamp = now_iso()
        conn.execute(
            """INSERT INTO reminders
               (project_id, node_id, remind_at, status, message, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (node_id) DO UPDATE SET
                 remind_at = excluded.remind_at, status = excluded.status,
                 message = excluded.message, dismissed_at = NULL, completed_at = NULL,
                 updated_at = excluded.updated_at""",
            (project_id, node_id, when, REMINDER_INCOMPLETE, message or None, stamp, stamp),
        )
        row = conn.execute(f"{_SELECT} AND r.node_id = ?", (project_id, node_id)).fetchone()
    logger.info("Reminder for node {} set to {}", node_id, when)
    return _row_to_reminder(row)


def list_reminders(
    conn: sqlite3.Connection,
    project_id: int,
    *,
    status: str | None = None,
    pending: bool = False,
    now: str | None = None,
) -> list[Reminder]:
    """List reminders, earliest first.

    Args:
        status: "incomplete" or "completed" to filter by status.
        pending: Only open, undismissed reminders that are due by ``now``.
            Takes precedence over ``status``.
        now: UTC ISO time for ``pending`` (default: the current time).
    """
    sql = _SELECT
    params: list[Any] = [project_id]
    if pending:
        sql += " AND r.status != ? AND r.dismissed_at IS NULL AND r.remind_at <= ?"
        params += [REMINDER_COMPLETED, now or now_iso()]
    elif status is not None:
        if status not in REMINDER_STATUSES:
            msg = f"Unknown reminder status {status!r}"
            raise ValidationError(msg)
        sql += " AND r.status = ?" if status == REMINDER_COMPLETED else " AND r.status != ?"
        params.append(REMINDER_COMPLETED)
    rows = conn.execute(sql + " ORDER BY r.remind_at ASC, r.id ASC", params).fetchall()
    return [_row_to_reminder(r) for r in rows]


def dismiss_reminder(conn: sqlite3.Connection, project_id: int, reminder_id: int) -> Reminder:
    """Hide a reminder from the pending list without completing it."""
    with transaction(conn):
        get_reminder(conn, project_id, reminder_id)
        stamp = now_iso()
        conn.execute(
            "UPDATE reminders SET dismissed_at = ?, updated_at = ? WHERE id = ?",
            (stamp, stamp, reminder_id),
        )
        reminder = get_reminder(conn, project_id, reminder_id)
    logger.info("Dismissed reminder {}", reminder_id)
    return reminder


def complete_reminder(conn: sqlite3.Connection, project_id: int, reminder_id: int) -> Reminder:
    """Mark a reminder completed and its node done.

    The node change is recorded as an autosave version in the same transaction.
    """
    with transaction(conn):
        current = get_reminder(conn, project_id, reminder_id)
        stamp = now_iso()
        conn.execute(
            "UPDATE reminders SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
            (REMINDER_COMPLETED, stamp, stamp, reminder_id),
        )
        if current.node_status != "done":
            conn.execute(
                "UPDATE nodes SET status = 'done', updated_at = ? WHERE id = ?",
                (stamp, current.node_id),
            )
            record_version_locked(
                conn,
                project_id,
                CAUSE_AUTOSAVE,
                {"nodeId": current.node_id, "reminderId": reminder_id},
            )
        reminder = get_reminder(conn, project_id, reminder_id)
    logger.info("Completed reminder {} (node {})", reminder_id, reminder.node_id)
    return reminder


def delete_reminder(conn: sqlite3.Connection, project_id: int, reminder_id: int) -> None:
    with transaction(conn):
        get_reminder(conn, project_id, reminder_id)
        conn.execute("DELETE FROM reminders WHERE id = ?", (reminder_id,))
    logger.info("Deleted reminder {}", reminder_id)


def stash_reminders(conn: sqlite3.Connection, project_id: int) -> list[tuple]:
    """Raw reminder rows of a project, for :func:`reattach_reminders`."""
    return conn.execute(
        f"SELECT {_ROW_COLUMNS} FROM reminders WHERE project_id = ?", (project_id,)
    ).fetchall()


def reattach_reminders(conn: sqlite3.Connection, project_id: int, rows: list[tuple]) -> int:
    """Re-insert stashed reminders whose node exists again; returns how many were dropped.

    Must run inside the transaction that replaced the project's nodes.
    """
    cur = conn.execute("SELECT id FROM nodes WHERE project_id = ?", (project_id,))
    live = {r[0] for r in cur}
    kept = [r for r in rows if r[2] in live]
    conn.executemany(
        f"INSERT OR REPLACE INTO reminders ({_ROW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        kept,
    )
    return len(rows) - len(kept)
