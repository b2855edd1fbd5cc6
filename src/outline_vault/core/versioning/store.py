"""Append-only, hash-deduplicated outline history.

Each version holds the whole canonical forest of a project as JSON. Versions
form a per-project chain through ``parent_id`` and are never mutated.
"""

import hashlib
import json
import sqlite3
from typing import Any

from loguru import logger

from outline_vault.config import (
    CAUSE_AUTOSAVE,
    CAUSE_MANUAL,
    HISTORY_DEFAULT_LIMIT,
    HISTORY_MAX_LIMIT,
    VERSION_CAUSES,
)
from outline_vault.core.database.schema import now_iso, transaction
from outline_vault.core.tree.builder import forest_to_dict, load_forest
from outline_vault.errors import NotFoundError, ValidationError
from outline_vault.models.node import DiffResult, RecordResult, Version, VersionSummary

CURRENT = "current"

_SUMMARY_COLUMNS = "id, project_id, created_at, cause, parent_id, hash, size_bytes, meta"


def canonical_outline(conn: sqlite3.Connection, project_id: int) -> dict[str, list[dict]]:
    """The live forest of a project in snapshot form."""
    return forest_to_dict(load_forest(conn, project_id))


def hash_doc(doc: dict[str, Any]) -> tuple[str, int, str]:
    """Serialize a snapshot deterministically.

    Returns:
        ``(sha256 hex, size in bytes, json text)``.
    """
    text = json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    data = text.encode("utf-8")
    return hashlib.sha256(data).hexdigest(), len(data), text


def _flatten_doc(doc: dict[str, Any]) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    stack: list[tuple[dict[str, Any], str | None]] = [
        (n, None) for n in reversed(doc.get("roots") or [])
    ]
    while stack:
        node, parent_id = stack.pop()
        if not isinstance(node, dict):
            continue
        node_id = str(node.get("id"))
        if node_id in out:
            continue
        out[node_id] = {
            "id": node_id,
            "title": node.get("title") or "",
            "status": node.get("status") or "",
            "parent_id": node.get("parent_id", parent_id),
            "dates": sorted(set(node.get("ownWorkedOnDates") or [])),
        }
        stack.extend((c, node_id) for c in reversed(node.get("children") or []))
    return out


def diff_docs(old: dict[str, Any], new: dict[str, Any]) -> DiffResult:
    """Compare two snapshots by node id.

    Position is ignored; title, status, parent and own worked dates are
    compared.
    """
    before = _flatten_doc(old)
    after = _flatten_doc(new)
    added: list[dict[str, Any]] = []
    modified: list[dict[str, Any]] = []
    for node_id, b in after.items():
        a = before.get(node_id)
        if a is None:
            added.append({"id": node_id, "title": b["title"]})
            continue
        changes: dict[str, dict[str, Any]] = {}
        if a["title"] != b["title"]:
            changes["title"] = {"from": a["title"], "to": b["title"]}
        if a["status"] != b["status"]:
            changes["status"] = {"from": a["status"], "to": b["status"]}
        if (a["parent_id"] or None) != (b["parent_id"] or None):
            changes["parent"] = {"from": a["parent_id"], "to": b["parent_id"]}
        if a["dates"] != b["dates"]:
            changes["dates"] = {"from": a["dates"], "to": b["dates"]}
        if changes:
            modified.append({"id": node_id, "title": b["title"], "changes": changes})
    removed = [{"id": i, "title": a["title"]} for i, a in before.items() if i not in after]
    return DiffResult(added=tuple(added), removed=tuple(removed), modified=tuple(modified))


def _parse_meta(raw: str | None) -> dict[str, Any]:
    try:
        meta = json.loads(raw or "{}")
    except ValueError:
        return {}
    return meta if isinstance(meta, dict) else {}


def _row_to_summary(row: tuple) -> VersionSummary:
    return VersionSummary(
        id=row[0],
        project_id=row[1],
        created_at=row[2],
        cause=row[3],
        parent_id=row[4],
        hash=row[5],
        size_bytes=row[6],
        meta=_parse_meta(row[7]),
    )


def record_version_locked(
    conn: sqlite3.Connection,
    project_id: int,
    cause: str = CAUSE_AUTOSAVE,
    meta: dict[str, Any] | None = None,
) -> RecordResult:
    """Record a version on a connection that already holds the write lock."""
    if cause not in VERSION_CAUSES:
        msg = f"Unknown version cause {cause!r}"
        raise ValidationError(msg)
    doc = canonical_outline(conn, project_id)
    digest, size, text = hash_doc(doc)
    last = conn.execute(
        "SELECT id, hash, doc_json FROM outline_versions WHERE project_id = ? "
        "ORDER BY id DESC LIMIT 1",
        (project_id,),
    ).fetchone()
    if last is not None and last[1] == digest and cause == CAUSE_AUTOSAVE:
        logger.debug("Version skipped, outline unchanged since version {}", last[0])
        return RecordResult(id=last[0], skipped=True)

    meta_out = dict(meta or {})
    if last is not None:
        meta_out["diffSummary"] = diff_docs(json.loads(last[2]), doc).summary
    else:
        meta_out["diffSummary"] = {"added": 0, "removed": 0, "modified": 0}
    cur = conn.execute(
        """INSERT INTO outline_versions
           (project_id, created_at, cause, parent_id, hash, size_bytes, meta, doc_json)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            project_id,
            now_iso(),
            cause,
            last[0] if last is not None else None,
            digest,
            size,
            json.dumps(meta_out, ensure_ascii=False),
            text,
        ),
    )
    logger.info("Recorded {} version {} ({} bytes)", cause, cur.lastrowid, size)
    return RecordResult(id=cur.lastrowid, skipped=False)


def record_version(
    conn: sqlite3.Connection,
    project_id: int,
    cause: str = CAUSE_AUTOSAVE,
    meta: dict[str, Any] | None = None,
) -> RecordResult:
    """Snapshot the live outline of a project.

    An autosave identical to the latest version is skipped and the latest
    version id returned. Manual checkpoints and restores always write.
    """
    with transaction(conn):
        return record_version_locked(conn, project_id, cause, meta)


def create_checkpoint(
    conn: sqlite3.Connection, project_id: int, note: str | None = None
) -> RecordResult:
    meta = {"note": note.strip()} if note and note.strip() else {}
    return record_version(conn, project_id, CAUSE_MANUAL, meta)


def list_history(
    conn: sqlite3.Connection,
    project_id: int,
    limit: int = HISTORY_DEFAULT_LIMIT,
    offset: int = 0,
) -> list[VersionSummary]:
    """Newest-first page of version summaries."""
    limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))
    offset = max(0, int(offset))
    rows = conn.execute(
        f"SELECT {_SUMMARY_COLUMNS} FROM outline_versions WHERE project_id = ? "
        "ORDER BY id DESC LIMIT ? OFFSET ?",
        (project_id, limit, offset),
    ).fetchall()
    return [_row_to_summary(r) for r in rows]


def get_version(conn: sqlite3.Connection, project_id: int, version_id: int) -> Version | None:
    row = conn.execute(
        f"SELECT {_SUMMARY_COLUMNS}, doc_json FROM outline_versions "
        "WHERE project_id = ? AND id = ?",
        (project_id, version_id),
    ).fetchone()
    if row is None:
        return None
    return Version(summary=_row_to_summary(row[:8]), doc=json.loads(row[8]))


def _resolve_ref(conn: sqlite3.Connection, project_id: int, ref: int | str) -> dict[str, Any]:
    if isinstance(ref, str) and ref.strip().lower() == CURRENT:
        return canonical_outline(conn, project_id)
    try:
        version_id = int(ref)
    except (TypeError, ValueError) as e:
        msg = f"Invalid version reference {ref!r}"
        raise ValidationError(msg) from e
    version = get_version(conn, project_id, version_id)
    if version is None:
        msg = f"Version {version_id} not found"
        raise NotFoundError(msg)
    return version.doc


def diff_between(
    conn: sqlite3.Connection,
    project_id: int,
    from_ref: int | str,
    to_ref: int | str = CURRENT,
) -> DiffResult:
    """Diff two versions; either side may be ``"current"`` for the live outline."""
    return diff_docs(
        _resolve_ref(conn, project_id, from_ref),
        _resolve_ref(conn, project_id, to_ref),
    )
