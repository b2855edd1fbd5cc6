"""Reconcile a client-submitted forest against the nodes table.

A save is planned first (ids resolved, payload validated) and then applied
in one transaction together with its autosave version.
"""

import json
import re
import sqlite3
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import date
from typing import Any

import pydantic
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from outline_vault.config import CAUSE_AUTOSAVE, DEFAULT_TITLE, PLACEHOLDER_PREFIX, STATUSES
from outline_vault.core.assets.richtext import sanitize_content, stringify_nodes
from outline_vault.core.database.schema import now_iso, transaction
from outline_vault.core.tags.extractor import compute_tags
from outline_vault.core.tree.builder import build_forest, forest_to_dict, load_nodes
from outline_vault.core.versioning.store import record_version_locked
from outline_vault.errors import StorageUnavailable, ValidationError
from outline_vault.models.node import SaveResult
from outline_vault.protocols import ContentStoreProtocol

# Field names under which clients send a node's own worked dates.
DATE_FIELDS = ("dates", "workedDates", "ownWorkedOnDates", "worked_dates")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class PlannedNode:
    """One node of a validated save, with its server id resolved."""

    id: str
    client_id: str | None
    parent_id: str | None
    position: int
    title: str
    status: str
    content: str
    dates: frozenset[str]
    is_new: bool


def new_node_id() -> str:
    return str(uuid.uuid4())


def coerce_status(value: Any) -> str:
    status = value.strip().lower() if isinstance(value, str) else ""
    return status if status in STATUSES else ""


def parse_work_date(value: Any) -> str:
    """Return a ``YYYY-MM-DD`` calendar date; raises ValueError otherwise."""
    text = str(value).strip()
    if not _DATE_RE.match(text):
        msg = f"Invalid worked date {value!r}"
        raise ValueError(msg)
    try:
        date.fromisoformat(text)
    except ValueError as e:
        msg = f"Invalid worked date {value!r}"
        raise ValueError(msg) from e
    return text


def normalize_dates(raw: Any, *, node_id: str | None = None) -> frozenset[str]:
    """Validate a list of ``YYYY-MM-DD`` strings into a set."""
    if raw is None:
        return frozenset()
    if not isinstance(raw, (list, tuple, set, frozenset)):
        msg = f"Worked dates must be a list, got {type(raw).__name__}"
        raise ValidationError(msg, node_id=node_id)
    try:
        return frozenset(parse_work_date(value) for value in raw if value)
    except ValueError as e:
        raise ValidationError(str(e), node_id=node_id) from e


class OutlineNodeIn(BaseModel):
    """A node as submitted by a client; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    title: str | None = None
    status: str = ""
    content: str | list[Any] | None = None
    body: Any = None
    dates: list[str] = Field(default_factory=list, validation_alias=AliasChoices(*DATE_FIELDS))
    children: list["OutlineNodeIn"] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _client_id(cls, value: Any) -> str | None:
        return None if value in (None, "") else str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value: Any) -> str:
        return coerce_status(value)

    @field_validator("dates", mode="before")
    @classmethod
    def _calendar_dates(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple, set, frozenset)):
            msg = f"Worked dates must be a list, got {type(value).__name__}"
            raise ValueError(msg)
        return sorted({parse_work_date(v) for v in value if v})

    @field_validator("children", mode="before")
    @classmethod
    def _children_default(cls, value: Any) -> Any:
        return [] if value is None else value

    def stored_content(self) -> str:
        """Content as persisted: ``body`` wins, then ``content``, else an empty node list."""
        if isinstance(self.body, list):
            return stringify_nodes(self.body)
        if self.content is None:
            return "[]"
        if isinstance(self.content, list):
            return stringify_nodes(self.content)
        return self.content


_FOREST = TypeAdapter(list[OutlineNodeIn])


def _failing_node_id(forest: list[Any], loc: Sequence[Any]) -> str | None:
    """Client id of the deepest node object on a validation error location."""
    node_id = None
    items: Any = forest
    parts = iter(loc)
    for index in parts:
        if not isinstance(index, int) or not isinstance(items, list) or index >= len(items):
            break
        raw = items[index]
        if not isinstance(raw, dict):
            break
        raw_id = raw.get("id")
        node_id = None if raw_id in (None, "") else str(raw_id)
        if next(parts, None) != "children":
            break
        items = raw.get("children")
    return node_id


def parse_forest(forest: Any) -> list[OutlineNodeIn]:
    """Structural validation of a submitted forest, naming the offending node."""
    if not isinstance(forest, list):
        msg = f"Outline must be a list of nodes, got {type(forest).__name__}"
        raise ValidationError(msg)
    try:
        return _FOREST.validate_python(forest)
    except pydantic.ValidationError as e:
        errors = e.errors()
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in errors[:3]
        ]
        msg = f"Outline validation failed: {'; '.join(problems)}"
        raise ValidationError(msg, node_id=_failing_node_id(forest, errors[0]["loc"])) from e


def plan_save(forest: Any, existing_ids: Iterable[str]) -> tuple[list[PlannedNode], dict[str, str]]:
    """Validate a submitted forest and resolve every node's server id.

    Pure: reads nothing but its arguments.

    Returns:
        The planned nodes in depth-first order (parents before children) and
        the placeholder-to-new-id map.

    Raises:
        ValidationError: On a malformed payload, naming the offending node.
    """
    nodes = parse_forest(forest)
    known = set(existing_ids)
    planned: list[PlannedNode] = []
    id_remap: dict[str, str] = {}
    client_ids: set[str] = set()

    stack: list[tuple[OutlineNodeIn, str | None, int]] = [
        (node, None, idx) for idx, node in reversed(list(enumerate(nodes)))
    ]
    while stack:
        node, parent_id, position = stack.pop()
        client_id = node.id
        if client_id is not None:
            if client_id in client_ids:
                msg = f"Duplicate node id {client_id!r} in outline"
                raise ValidationError(msg, node_id=client_id)
            client_ids.add(client_id)

        is_new = (
            client_id is None or client_id.startswith(PLACEHOLDER_PREFIX) or client_id not in known
        )
        node_id = new_node_id() if is_new else client_id
        if is_new and client_id is not None:
            id_remap[client_id] = node_id

        planned.append(
            PlannedNode(
                id=node_id,
                client_id=client_id,
                parent_id=parent_id,
                position=position,
                title=node.title or DEFAULT_TITLE,
                status=node.status,
                content=node.stored_content(),
                dates=frozenset(node.dates),
                is_new=is_new,
            )
        )
        stack.extend(
            (child, node_id, idx) for idx, child in reversed(list(enumerate(node.children)))
        )
    return planned, id_remap


def insert_node(
    conn: sqlite3.Connection,
    *,
    node_id: str,
    project_id: int,
    parent_id: str | None,
    title: str,
    status: str,
    content: str,
    position: int,
    worked_dates: Iterable[str] = (),
    created_at: str | None = None,
    updated_at: str | None = None,
) -> None:
    """Insert one node row and its worked dates, computing its tags.

    Shared by save, restore and import. Must run inside a transaction.
    """
    stamp = now_iso()
    conn.execute(
        """INSERT INTO nodes
           (id, project_id, parent_id, title, status, content, tags, position,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            node_id,
            project_id,
            parent_id,
            title,
            coerce_status(status),
            content,
            json.dumps(list(compute_tags(title, content))),
            position,
            created_at or stamp,
            updated_at or created_at or stamp,
        ),
    )
    conn.executemany(
        "INSERT OR IGNORE INTO work_dates (node_id, date, created_at) VALUES (?, ?, ?)",
        [(node_id, d, stamp) for d in sorted(set(worked_dates))],
    )


def _sync_dates(
    conn: sqlite3.Connection, node_id: str, have: set[str], wanted: frozenset[str]
) -> bool:
    added = sorted(wanted - have)
    removed = sorted(have - wanted)
    if added:
        stamp = now_iso()
        conn.executemany(
            "INSERT OR IGNORE INTO work_dates (node_id, date, created_at) VALUES (?, ?, ?)",
            [(node_id, d, stamp) for d in added],
        )
    if removed:
        conn.executemany(
            "DELETE FROM work_dates WHERE node_id = ? AND date = ?",
            [(node_id, d) for d in removed],
        )
    return bool(added or removed)


def _load_state(
    conn: sqlite3.Connection, project_id: int
) -> tuple[dict[str, tuple], dict[str, set[str]]]:
    rows = conn.execute(
        "SELECT id, parent_id, title, status, content, tags, position FROM nodes "
        "WHERE project_id = ?",
        (project_id,),
    ).fetchall()
    current = {r[0]: r[1:] for r in rows}
    dates: dict[str, set[str]] = {node_id: set() for node_id in current}
    for node_id, d in conn.execute(
        "SELECT w.node_id, w.date FROM work_dates w JOIN nodes n ON n.id = w.node_id "
        "WHERE n.project_id = ?",
        (project_id,),
    ):
        dates[node_id].add(d)
    return current, dates


def _apply(
    conn: sqlite3.Connection,
    project_id: int,
    planned: list[PlannedNode],
    current: dict[str, tuple],
    current_dates: dict[str, set[str]],
) -> tuple[int, int]:
    """Write the planned nodes; returns ``(inserted, updated)``."""
    inserted = updated = 0
    for p in planned:
        if p.is_new:
            insert_node(
                conn,
                node_id=p.id,
                project_id=project_id,
                parent_id=p.parent_id,
                title=p.title,
                status=p.status,
                content=p.content,
                position=p.position,
                worked_dates=p.dates,
            )
            inserted += 1
            continue

        tags = json.dumps(list(compute_tags(p.title, p.content)))
        row = (p.parent_id, p.title, p.status, p.content, tags, p.position)
        changed = current[p.id] != row
        if changed:
            conn.execute(
                """UPDATE nodes SET parent_id = ?, title = ?, status = ?, content = ?,
                   tags = ?, position = ? WHERE id = ?""",
                (*row, p.id),
            )
        if _sync_dates(conn, p.id, current_dates.get(p.id, set()), p.dates):
            changed = True
        if changed:
            conn.execute("UPDATE nodes SET updated_at = ? WHERE id = ?", (now_iso(), p.id))
            updated += 1
    return inserted, updated


def save_outline(conn: sqlite3.Connection, project_id: int, forest: Any) -> SaveResult:
    """Persist a submitted forest as the project's whole outline.

    Runs as one transaction: new nodes are inserted, known nodes updated,
    worked dates adjusted by difference, nodes missing from the forest
    deleted, and an autosave version recorded. Nothing is written when any
    step fails.

    Args:
        conn: Open database connection.
        project_id: Project whose outline is replaced.
        forest: List of node dicts with optional ``id``, ``title``,
            ``status``, ``content`` (or ``body``), worked dates and
            ``children``.

    Returns:
        SaveResult with the placeholder-to-id map and the deleted ids.
    """
    with transaction(conn):
        current, current_dates = _load_state(conn, project_id)
        planned, id_remap = plan_save(forest, current)
        inserted, updated = _apply(conn, project_id, planned, current, current_dates)

        seen = {p.id for p in planned}
        deleted = sorted(node_id for node_id in current if node_id not in seen)
        if deleted:
            conn.executemany("DELETE FROM work_dates WHERE node_id = ?", [(i,) for i in deleted])
            conn.executemany("DELETE FROM nodes WHERE id = ?", [(i,) for i in deleted])

        version = record_version_locked(conn, project_id, CAUSE_AUTOSAVE)

    logger.info(
        "Saved outline: {} inserted, {} updated, {} deleted", inserted, updated, len(deleted)
    )
    return SaveResult(
        id_remap=id_remap,
        deleted_ids=tuple(deleted),
        version_id=version.id,
        version_skipped=version.skipped,
        inserted=inserted,
        updated=updated,
    )


def load_outline(
    conn: sqlite3.Connection,
    project_id: int,
    store: ContentStoreProtocol | None = None,
) -> dict[str, list[dict]]:
    """Read the project's outline as ``{"roots": [...]}``.

    With a content store, inline ``data:`` images found in stored content
    are moved into the store and the rewritten content is written back.
    """
    nodes = load_nodes(conn, project_id)
    if store is not None:
        nodes = _sanitize_nodes(conn, nodes, store)
    return forest_to_dict(build_forest(nodes))


def _sanitize_nodes(conn: sqlite3.Connection, nodes: list, store: ContentStoreProtocol) -> list:
    changed = []
    out = []
    for n in nodes:
        content = sanitize_content(n.content, store, title=n.title)
        if content != n.content:
            n = replace(n, content=content)
            changed.append(n)
        out.append(n)
    if not changed:
        return out
    try:
        with transaction(conn):
            conn.executemany(
                "UPDATE nodes SET content = ?, tags = ? WHERE id = ?",
                [
                    (n.content, json.dumps(list(compute_tags(n.title, n.content))), n.id)
                    for n in changed
                ],
            )
    except StorageUnavailable as e:
        logger.warning("Could not persist sanitized content: {}", e)
    else:
        logger.info("Moved inline assets of {} node(s) into the content store", len(changed))
    return out
