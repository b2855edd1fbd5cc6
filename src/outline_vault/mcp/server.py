"""MCP server exposing outline read/write, history, export/import and file tools."""

import asyncio
import json
import mimetypes
import os
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from outline_vault.config import DATA_DIR_ENV, HISTORY_DEFAULT_LIMIT
from outline_vault.core.assets.serving import file_response
from outline_vault.core.assets.store import ContentStore
from outline_vault.core.database.schema import now_iso
from outline_vault.core.exchange.exporter import build_export_manifest, export_filename
from outline_vault.core.exchange.importer import import_manifest, load_manifest
from outline_vault.core.outline.nodes import get_node, update_node
from outline_vault.core.outline.reconciler import load_outline, save_outline
from outline_vault.core.projects import list_projects, resolve_project
from outline_vault.core.reminders.store import (
    complete_reminder,
    delete_reminder,
    dismiss_reminder,
    list_reminders,
    set_reminder,
)
from outline_vault.core.tree.builder import build_forest, load_nodes
from outline_vault.core.tree.markdown import render_forest_as_markdown
from outline_vault.core.tree.timeline import build_timeline, timeline_to_dict
from outline_vault.core.vault import open_vault
from outline_vault.core.versioning.restore import restore_version
from outline_vault.core.versioning.store import (
    CURRENT,
    create_checkpoint,
    diff_between,
    get_version,
    list_history,
)
from outline_vault.errors import OutlineVaultError, ValidationError


def _error(e: OutlineVaultError) -> dict[str, Any]:
    if isinstance(e, ValidationError):
        return e.to_dict()
    return {"error": str(e)}


# --- Core functions (testable without MCP context) ---


def vault_read_outline(
    conn: sqlite3.Connection,
    store: ContentStore | None = None,
    *,
    project: str | None = None,
    output_format: str = "json",
    max_depth: int | None = None,
) -> dict[str, Any]:
    """Read the whole outline as nested JSON or as a markdown checklist.

    Args:
        project: Project name (default project when omitted).
        output_format: "json" or "markdown".
        max_depth: Markdown only: max levels below the roots.
    """
    try:
        ctx = resolve_project(conn, project)
        doc = load_outline(conn, ctx.project_id, store)
        if output_format != "markdown":
            return doc
        roots = build_forest(load_nodes(conn, ctx.project_id))
    except OutlineVaultError as e:
        return _error(e)
    md = render_forest_as_markdown(roots, max_depth=max_depth)
    return {"content": md, "project": ctx.name, "estimated_tokens": len(md) // 4}


def vault_save_outline(
    conn: sqlite3.Connection, *, outline: Any, project: str | None = None
) -> dict[str, Any]:
    """Replace the outline with the submitted forest.

    Args:
        outline: List of nodes with optional id, title, status, content,
            dates and children. Nodes without a known id are created.
        project: Project name.
    """
    try:
        ctx = resolve_project(conn, project)
        return save_outline(conn, ctx.project_id, outline).to_dict()
    except OutlineVaultError as e:
        return _error(e)


def vault_get_node(
    conn: sqlite3.Connection, *, node_id: str, project: str | None = None
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        node = get_node(conn, ctx.project_id, node_id)
    except OutlineVaultError as e:
        return _error(e)
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "title": node.title,
        "status": node.status,
        "content": node.content,
        "tags": list(node.tags),
        "position": node.position,
        "created_at": node.created_at,
        "updated_at": node.updated_at,
        "workedOnDates": sorted(node.worked_dates, reverse=True),
    }


def vault_update_node(
    conn: sqlite3.Connection,
    *,
    node_id: str,
    title: str | None = None,
    status: str | None = None,
    content: str | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Update title, status and/or content of one node."""
    fields = (("title", title), ("status", status), ("content", content))
    changes = {k: v for k, v in fields if v is not None}
    try:
        ctx = resolve_project(conn, project)
        update_node(conn, ctx.project_id, node_id, changes)
    except OutlineVaultError as e:
        return _error(e)
    return vault_get_node(conn, node_id=node_id, project=project)


def vault_list_history(
    conn: sqlite3.Connection,
    *,
    limit: int = HISTORY_DEFAULT_LIMIT,
    offset: int = 0,
    project: str | None = None,
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        versions = list_history(conn, ctx.project_id, limit=limit, offset=offset)
    except OutlineVaultError as e:
        return _error(e)
    return {"versions": [v.to_dict() for v in versions], "count": len(versions)}


def vault_get_version(
    conn: sqlite3.Connection, *, version_id: int, project: str | None = None
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        version = get_version(conn, ctx.project_id, version_id)
    except OutlineVaultError as e:
        return _error(e)
    if version is None:
        return {"error": f"Version {version_id} not found"}
    return version.to_dict()


def vault_diff(
    conn: sqlite3.Connection,
    *,
    from_ref: str,
    to_ref: str = CURRENT,
    project: str | None = None,
) -> dict[str, Any]:
    """Diff two versions; "current" stands for the live outline."""
    try:
        ctx = resolve_project(conn, project)
        return diff_between(conn, ctx.project_id, from_ref, to_ref).to_dict()
    except OutlineVaultError as e:
        return _error(e)


def vault_restore(
    conn: sqlite3.Connection, *, version_id: int, project: str | None = None
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        result = restore_version(conn, ctx.project_id, version_id)
    except OutlineVaultError as e:
        return _error(e)
    return {"ok": True, "restoredTo": result.restored_to, "newVersionId": result.new_version_id}


def vault_checkpoint(
    conn: sqlite3.Connection, *, note: str | None = None, project: str | None = None
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        result = create_checkpoint(conn, ctx.project_id, note)
    except OutlineVaultError as e:
        return _error(e)
    return {"ok": True, "versionId": result.id}


def vault_export(
    conn: sqlite3.Connection,
    store: ContentStore,
    *,
    output_dir: str | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Build the export manifest; write it to ``output_dir`` when given."""
    try:
        ctx = resolve_project(conn, project)
        manifest = build_export_manifest(conn, ctx.project_id, store)
    except OutlineVaultError as e:
        return _error(e)
    filename = export_filename()
    if output_dir is None:
        return {"filename": filename, "manifest": manifest}
    path = Path(output_dir).expanduser() / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(manifest, indent=2, ensure_ascii=False), encoding="utf-8")
    return {"ok": True, "path": str(path), **manifest["meta"]}


def vault_import(
    conn: sqlite3.Connection,
    store: ContentStore,
    *,
    path: str | None = None,
    manifest: dict[str, Any] | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Import a manifest given inline or as a file path."""
    if (path is None) == (manifest is None):
        return {"error": "Provide exactly one of path or manifest."}
    try:
        data = manifest if manifest is not None else load_manifest(Path(path).expanduser())
        ctx = resolve_project(conn, project)
        return import_manifest(conn, ctx.project_id, store, data).to_dict()
    except OutlineVaultError as e:
        return _error(e)


def vault_upload_file(
    store: ContentStore,
    *,
    path: str,
    mime_type: str | None = None,
    original_name: str | None = None,
) -> dict[str, Any]:
    """Store a local file in the content store. The source file is kept."""
    src = Path(path).expanduser()
    guessed = mime_type or mimetypes.guess_type(src.name)[0]
    try:
        asset = store.put_file(
            src, mime_type=guessed, original_name=original_name or src.name, remove=False
        )
    except OutlineVaultError as e:
        return _error(e)
    return asset.to_dict()


def vault_file_info(
    store: ContentStore, *, file_id: int, download: bool = False
) -> dict[str, Any]:
    """Resolve a stored file for serving: record, blob path and headers."""
    try:
        resp = file_response(store, file_id, download=download)
    except OutlineVaultError as e:
        return _error(e)
    return {**resp.asset.to_dict(), "path": str(resp.path), "headers": resp.headers}


def vault_timeline(conn: sqlite3.Connection, *, project: str | None = None) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        days = build_timeline(conn, ctx.project_id)
    except OutlineVaultError as e:
        return _error(e)
    return timeline_to_dict(days)


def vault_list_projects(conn: sqlite3.Connection) -> dict[str, Any]:
    projects = list_projects(conn)
    return {"projects": [{"id": p.project_id, "name": p.name} for p in projects]}


def vault_set_reminder(
    conn: sqlite3.Connection,
    *,
    node_id: str,
    remind_at: str,
    message: str | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Schedule (or reschedule and reopen) the reminder of one node."""
    try:
        ctx = resolve_project(conn, project)
        reminder = set_reminder(conn, ctx.project_id, node_id, remind_at, message)
    except OutlineVaultError as e:
        return _error(e)
    return {"reminder": reminder.to_dict(now_iso())}


def vault_list_reminders(
    conn: sqlite3.Connection,
    *,
    status: str | None = None,
    pending: bool = False,
    project: str | None = None,
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        now = now_iso()
        reminders = list_reminders(conn, ctx.project_id, status=status, pending=pending, now=now)
    except OutlineVaultError as e:
        return _error(e)
    return {"reminders": [r.to_dict(now) for r in reminders], "count": len(reminders)}


def vault_dismiss_reminder(
    conn: sqlite3.Connection, *, reminder_id: int, project: str | None = None
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        reminder = dismiss_reminder(conn, ctx.project_id, reminder_id)
    except OutlineVaultError as e:
        return _error(e)
    return {"reminder": reminder.to_dict(now_iso())}


def vault_complete_reminder(
    conn: sqlite3.Connection, *, reminder_id: int, project: str | None = None
) -> dict[str, Any]:
    """Complete a reminder; its node is marked done."""
    try:
        ctx = resolve_project(conn, project)
        reminder = complete_reminder(conn, ctx.project_id, reminder_id)
    except OutlineVaultError as e:
        return _error(e)
    return {"reminder": reminder.to_dict(now_iso())}


def vault_delete_reminder(
    conn: sqlite3.Connection, *, reminder_id: int, project: str | None = None
) -> dict[str, Any]:
    try:
        ctx = resolve_project(conn, project)
        delete_reminder(conn, ctx.project_id, reminder_id)
    except OutlineVaultError as e:
        return _error(e)
    return {"ok": True, "deleted": reminder_id}


# --- MCP Server Setup ---


@dataclass
class ServerContext:
    """Shared resources for the MCP server lifetime."""

    conn: sqlite3.Connection
    store: ContentStore
    data_dir: Path
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@asynccontextmanager
async def server_lifespan(_server: FastMCP) -> AsyncIterator[ServerContext]:
    """Open the vault on startup, close on shutdown."""
    data_dir_env = os.environ.get(DATA_DIR_ENV)
    vault = open_vault(Path(data_dir_env) if data_dir_env else None)
    logger.info("Serving vault at {}", vault.data_dir)
    try:
        yield ServerContext(conn=vault.conn, store=vault.store, data_dir=vault.data_dir)
    finally:
        vault.close()


mcp_server = FastMCP(
    "outline-vault",
    instructions="""\
Outline Vault stores a hierarchical outline of notes and tasks with full history.

## Editing
- outline_read_tool returns the whole outline (nested JSON with node ids).
- outline_save_tool replaces the WHOLE outline: nodes you leave out are deleted.
  Always start from a fresh outline_read_tool result. New nodes get no id
  (or a "new-..." placeholder); the response maps placeholders to real ids.
- For small edits prefer node_update_tool, which touches one node only.

## History
Every save is versioned. Use history_list_tool, history_diff_tool (with
"current" for the live outline) and history_restore_tool to undo mistakes.
Create a history_checkpoint_tool before large rewrites.

## Reminders
A node can carry one reminder (reminder_set_tool). reminder_list_tool with
pending=true lists the ones due now; completing one marks its node done.
""",
    lifespan=server_lifespan,
)


def _ctx(mcp_ctx: Context) -> ServerContext:
    return mcp_ctx.request_context.lifespan_context  # type: ignore[return-value]


# --- MCP Tool Wrappers ---


@mcp_server.tool()
async def outline_read_tool(
    ctx: Context,
    output_format: str = "json",
    max_depth: int | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Read the whole outline.

    Args:
        output_format: "json" (nested nodes with ids, tags and worked dates)
            or "markdown" (indented checklist).
        max_depth: Markdown only: max levels below the roots.
        project: Project name (default project when omitted).
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_read_outline(
            c.conn, c.store, project=project, output_format=output_format, max_depth=max_depth
        )


@mcp_server.tool()
async def outline_save_tool(
    ctx: Context, outline: list[dict[str, Any]], project: str | None = None
) -> dict[str, Any]:
    """Replace the whole outline with the given forest.

    Nodes missing from the forest are DELETED. Each node may carry id,
    title, status ("", "todo", "in-progress", "done"), content, dates
    (YYYY-MM-DD list) and children.

    Args:
        outline: List of root nodes.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_save_outline(c.conn, outline=outline, project=project)


@mcp_server.tool()
async def node_get_tool(ctx: Context, node_id: str, project: str | None = None) -> dict[str, Any]:
    """Get one node with its tags and worked dates.

    Args:
        node_id: Node id.
        project: Project name.
    """
    return vault_get_node(_ctx(ctx).conn, node_id=node_id, project=project)


@mcp_server.tool()
async def node_update_tool(
    ctx: Context,
    node_id: str,
    title: str | None = None,
    status: str | None = None,
    content: str | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Update title, status and/or content of a single node.

    Args:
        node_id: Node id.
        title: New title.
        status: New status ("", "todo", "in-progress", "done").
        content: New content (serialized rich text or HTML).
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_update_node(
            c.conn, node_id=node_id, title=title, status=status, content=content, project=project
        )


@mcp_server.tool()
async def history_list_tool(
    ctx: Context,
    limit: int = HISTORY_DEFAULT_LIMIT,
    offset: int = 0,
    project: str | None = None,
) -> dict[str, Any]:
    """List outline versions, newest first.

    Args:
        limit: Max versions (1-200).
        offset: Pagination offset.
        project: Project name.
    """
    return vault_list_history(_ctx(ctx).conn, limit=limit, offset=offset, project=project)


@mcp_server.tool()
async def history_get_tool(
    ctx: Context, version_id: int, project: str | None = None
) -> dict[str, Any]:
    """Get one version including its full outline snapshot.

    Args:
        version_id: Version id from history_list_tool.
        project: Project name.
    """
    return vault_get_version(_ctx(ctx).conn, version_id=version_id, project=project)


@mcp_server.tool()
async def history_diff_tool(
    ctx: Context, from_ref: str, to_ref: str = CURRENT, project: str | None = None
) -> dict[str, Any]:
    """Diff two versions by node id.

    Args:
        from_ref: Version id or "current".
        to_ref: Version id or "current" (default).
        project: Project name.
    """
    return vault_diff(_ctx(ctx).conn, from_ref=from_ref, to_ref=to_ref, project=project)


@mcp_server.tool()
async def history_restore_tool(
    ctx: Context, version_id: int, project: str | None = None
) -> dict[str, Any]:
    """Replace the live outline with a historical version.

    The restore itself is recorded as a new version, so it can be undone.

    Args:
        version_id: Version to restore.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_restore(c.conn, version_id=version_id, project=project)


@mcp_server.tool()
async def history_checkpoint_tool(
    ctx: Context, note: str | None = None, project: str | None = None
) -> dict[str, Any]:
    """Record a manual checkpoint version, even if nothing changed.

    Args:
        note: Optional note stored with the checkpoint.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_checkpoint(c.conn, note=note, project=project)


@mcp_server.tool()
async def export_manifest_tool(
    ctx: Context, output_dir: str | None = None, project: str | None = None
) -> dict[str, Any]:
    """Export the outline and its embedded files as a portable manifest.

    Args:
        output_dir: Directory to write the manifest file to. When omitted
            the manifest is returned inline.
        project: Project name.
    """
    c = _ctx(ctx)
    return vault_export(c.conn, c.store, output_dir=output_dir, project=project)


@mcp_server.tool()
async def import_manifest_tool(
    ctx: Context, path: str, project: str | None = None
) -> dict[str, Any]:
    """Import a manifest file; notes are appended after existing roots.

    Args:
        path: Path to the manifest JSON file.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_import(c.conn, c.store, path=path, project=project)


@mcp_server.tool()
async def file_upload_tool(
    ctx: Context,
    path: str,
    mime_type: str | None = None,
    original_name: str | None = None,
) -> dict[str, Any]:
    """Store a local file; identical bytes are stored once.

    Args:
        path: Local file path.
        mime_type: MIME type (guessed from the name when omitted).
        original_name: Name to record (defaults to the file name).
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_upload_file(
            c.store, path=path, mime_type=mime_type, original_name=original_name
        )


@mcp_server.tool()
async def file_info_tool(ctx: Context, file_id: int, download: bool = False) -> dict[str, Any]:
    """Resolve a stored file id to its record, blob path and serving headers.

    Args:
        file_id: File id (the number in /files/<id>/...).
        download: Use an attachment Content-Disposition.
    """
    return vault_file_info(_ctx(ctx).store, file_id=file_id, download=download)


@mcp_server.tool()
async def timeline_tool(ctx: Context, project: str | None = None) -> dict[str, Any]:
    """List worked dates, newest first, with the nodes worked on each day.

    Args:
        project: Project name.
    """
    return vault_timeline(_ctx(ctx).conn, project=project)


@mcp_server.tool()
async def projects_list_tool(ctx: Context) -> dict[str, Any]:
    """List the projects (workspaces) stored in the vault."""
    return vault_list_projects(_ctx(ctx).conn)


@mcp_server.tool()
async def reminder_set_tool(
    ctx: Context,
    node_id: str,
    remind_at: str,
    message: str | None = None,
    project: str | None = None,
) -> dict[str, Any]:
    """Schedule a node's reminder. A node has at most one; setting it again reopens it.

    Args:
        node_id: Node id.
        remind_at: ISO 8601 time; without an offset it is taken as UTC.
        message: Optional reminder text.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_set_reminder(
            c.conn, node_id=node_id, remind_at=remind_at, message=message, project=project
        )


@mcp_server.tool()
async def reminder_list_tool(
    ctx: Context,
    status: str | None = None,
    pending: bool = False,
    project: str | None = None,
) -> dict[str, Any]:
    """List reminders, earliest first.

    Args:
        status: "incomplete" or "completed".
        pending: Only open, undismissed reminders that are due now.
        project: Project name.
    """
    return vault_list_reminders(_ctx(ctx).conn, status=status, pending=pending, project=project)


@mcp_server.tool()
async def reminder_dismiss_tool(
    ctx: Context, reminder_id: int, project: str | None = None
) -> dict[str, Any]:
    """Dismiss a reminder without completing it.

    Args:
        reminder_id: Reminder id.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_dismiss_reminder(c.conn, reminder_id=reminder_id, project=project)


@mcp_server.tool()
async def reminder_complete_tool(
    ctx: Context, reminder_id: int, project: str | None = None
) -> dict[str, Any]:
    """Complete a reminder and mark its node done.

    Args:
        reminder_id: Reminder id.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_complete_reminder(c.conn, reminder_id=reminder_id, project=project)


@mcp_server.tool()
async def reminder_delete_tool(
    ctx: Context, reminder_id: int, project: str | None = None
) -> dict[str, Any]:
    """Delete a reminder.

    Args:
        reminder_id: Reminder id.
        project: Project name.
    """
    c = _ctx(ctx)
    async with c.write_lock:
        return vault_delete_reminder(c.conn, reminder_id=reminder_id, project=project)


def run_mcp_server(data_dir: Path | None = None, *, configure_log: bool = True) -> None:
    """Run the MCP server with stdio transport.

    Args:
        data_dir: Vault directory; overrides the environment for this process.
        configure_log: Install the default log sinks. Callers that already
            configured logging pass False.
    """
    if configure_log:
        from outline_vault.logging_config import configure_logging

        configure_logging(verbose=False)
    if data_dir is not None:
        os.environ[DATA_DIR_ENV] = str(data_dir)
    mcp_server.run(transport="stdio")
