"""CLI for outline-vault (outline, history, export/import, files, reminders, MCP server)."""

import json
import mimetypes
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from outline_vault.core.assets.serving import file_response
from outline_vault.core.database.schema import now_iso
from outline_vault.core.exchange.exporter import build_export_manifest, export_filename
from outline_vault.core.exchange.importer import import_manifest, load_manifest
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
from outline_vault.core.vault import Vault, open_vault
from outline_vault.core.versioning.restore import restore_version
from outline_vault.core.versioning.store import (
    CURRENT,
    create_checkpoint,
    diff_between,
    get_version,
    list_history,
)
from outline_vault.errors import NotFoundError, OutlineVaultError
from outline_vault.logging_config import configure_logging
from outline_vault.models.node import ProjectContext, Reminder

app = typer.Typer(help="Outline vault: versioned outline storage with embedded files.")
reminder_app = typer.Typer(name="reminder", help="Schedule and track per-node reminders.")
app.add_typer(reminder_app)

DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", "-d", help="Vault directory (database and uploads)"),
]
ProjectOption = Annotated[
    str | None,
    typer.Option("--project", "-p", help="Project name (default: Workspace)"),
]
JsonOption = Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")]


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write debug logs to this file"),
    ] = None,
) -> None:
    configure_logging(verbose=verbose, log_file=log_file)


@contextmanager
def _session(
    data_dir: Path | None, project: str | None
) -> Iterator[tuple[Vault, ProjectContext]]:
    """Open the vault and resolve the project; engine errors exit with status 1."""
    try:
        vault = open_vault(data_dir)
    except OutlineVaultError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e
    try:
        yield vault, resolve_project(vault.conn, project)
    except OutlineVaultError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e
    finally:
        vault.close()


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _read_outline_file(path: Path) -> Any:
    """Accept a bare node list, ``{"outline": [...]}`` or ``{"roots": [...]}``."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        for key in ("outline", "roots"):
            if key in data:
                return data[key]
    return data


@app.command()
def init(data_dir: DataDirOption = None, project: ProjectOption = None) -> None:
    """Create the vault database and project if missing."""
    with _session(data_dir, project) as (vault, ctx):
        typer.echo(f"Vault ready at {vault.data_dir} (project {ctx.name!r})")


@app.command()
def show(
    max_depth: Annotated[
        int | None,
        typer.Option("--max-depth", "-m", help="Max depth levels to render"),
    ] = None,
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """Print the outline as markdown (or nested JSON)."""
    with _session(data_dir, project) as (vault, ctx):
        doc = load_outline(vault.conn, ctx.project_id, vault.store)
        if output_json:
            _echo_json(doc)
            return
        roots = build_forest(load_nodes(vault.conn, ctx.project_id))
        md = render_forest_as_markdown(roots, max_depth=max_depth)
        typer.echo(md if md else "(empty outline)")


@app.command()
def save(
    path: Path = typer.Argument(..., help="JSON file with the outline forest"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """Replace the outline with the forest in a JSON file."""
    try:
        forest = _read_outline_file(path)
    except (OSError, ValueError) as e:
        logger.error("Cannot read outline file {}: {}", path, e)
        raise typer.Exit(1) from e
    with _session(data_dir, project) as (vault, ctx):
        result = save_outline(vault.conn, ctx.project_id, forest)
        if output_json:
            _echo_json(result.to_dict())
            return
        typer.echo(
            f"Saved: {result.inserted} new, {result.updated} updated, "
            f"{len(result.deleted_ids)} deleted"
        )
        if result.version_skipped:
            typer.echo(f"Outline unchanged (version {result.version_id})")
        else:
            typer.echo(f"Recorded version {result.version_id}")


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Max versions"),
    offset: int = typer.Option(0, "--offset", help="Pagination offset"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """List outline versions, newest first."""
    with _session(data_dir, project) as (vault, ctx):
        versions = list_history(vault.conn, ctx.project_id, limit=limit, offset=offset)
        if output_json:
            _echo_json([v.to_dict() for v in versions])
            return
        typer.echo(f"{len(versions)} versions:\n")
        for v in versions:
            s = v.meta.get("diffSummary", {})
            note = f"  {v.meta['note']}" if v.meta.get("note") else ""
            typer.echo(
                f"  #{v.id}  {v.created_at}  {v.cause:<8}  "
                f"+{s.get('added', 0)} -{s.get('removed', 0)} ~{s.get('modified', 0)}{note}"
            )


@app.command()
def version(
    version_id: int = typer.Argument(..., help="Version id"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """Show one version."""
    with _session(data_dir, project) as (vault, ctx):
        v = get_version(vault.conn, ctx.project_id, version_id)
        if v is None:
            msg = f"Version {version_id} not found"
            raise NotFoundError(msg)
        if output_json:
            _echo_json(v.to_dict())
            return
        typer.echo(f"Version #{v.id} ({v.summary.cause}, {v.summary.created_at})")
        typer.echo(f"  hash={v.summary.hash}  size={v.summary.size_bytes}")
        typer.echo(f"  roots={len(v.doc.get('roots', []))}  meta={json.dumps(v.summary.meta)}")


@app.command()
def diff(
    from_ref: str = typer.Argument(..., help="Version id or 'current'"),
    to_ref: str = typer.Argument(CURRENT, help="Version id or 'current'"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """Diff two versions by node id."""
    with _session(data_dir, project) as (vault, ctx):
        result = diff_between(vault.conn, ctx.project_id, from_ref, to_ref)
        if output_json:
            _echo_json(result.to_dict())
            return
        s = result.summary
        typer.echo(f"{s['added']} added, {s['removed']} removed, {s['modified']} modified")
        for item in result.added:
            typer.echo(f"  + {item['title']}  [{item['id']}]")
        for item in result.removed:
            typer.echo(f"  - {item['title']}  [{item['id']}]")
        for item in result.modified:
            fields = ", ".join(sorted(item["changes"]))
            typer.echo(f"  ~ {item['title']}  ({fields})  [{item['id']}]")


@app.command()
def restore(
    version_id: int = typer.Argument(..., help="Version id to restore"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
) -> None:
    """Replace the live outline with a historical version."""
    with _session(data_dir, project) as (vault, ctx):
        result = restore_version(vault.conn, ctx.project_id, version_id)
        typer.echo(f"Restored version {result.restored_to} as version {result.new_version_id}")


@app.command()
def checkpoint(
    note: Annotated[str | None, typer.Option("--note", "-m", help="Checkpoint note")] = None,
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
) -> None:
    """Record a manual checkpoint version."""
    with _session(data_dir, project) as (vault, ctx):
        result = create_checkpoint(vault.conn, ctx.project_id, note)
        typer.echo(f"Recorded checkpoint {result.id}")


@app.command()
def export(
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Manifest file (default: timestamped name)"),
    ] = None,
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
) -> None:
    """Export the outline and its files as a portable manifest."""
    with _session(data_dir, project) as (vault, ctx):
        manifest = build_export_manifest(vault.conn, ctx.project_id, vault.store)
    dest = output or Path(export_filename())
    dest.write_text(json.dumps(manifest, indent=2, ensure_ascii=False), encoding="utf-8")
    meta = manifest["meta"]
    typer.echo(f"Exported {meta['notesCount']} notes, {meta['assetsCount']} assets to {dest}")


@app.command(name="import")
def import_cmd(
    path: Path = typer.Argument(..., help="Manifest JSON file"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """Import a manifest; notes are appended after existing roots."""
    with _session(data_dir, project) as (vault, ctx):
        stats = import_manifest(vault.conn, ctx.project_id, vault.store, load_manifest(path))
        if output_json:
            _echo_json(stats.to_dict())
            return
        typer.echo(f"Imported {stats.notes_imported} notes, {stats.assets_processed} assets")


@app.command()
def upload(
    path: Path = typer.Argument(..., help="File to store"),
    mime_type: Annotated[
        str | None, typer.Option("--mime-type", help="MIME type (guessed when omitted)")
    ] = None,
    name: Annotated[str | None, typer.Option("--name", help="Original name to record")] = None,
    data_dir: DataDirOption = None,
    output_json: JsonOption = False,
) -> None:
    """Store a file in the content store (identical bytes are stored once)."""
    with _session(data_dir, None) as (vault, _ctx):
        asset = vault.store.put_file(
            path,
            mime_type=mime_type or mimetypes.guess_type(path.name)[0],
            original_name=name or path.name,
            remove=False,
        )
        if output_json:
            _echo_json(asset.to_dict())
            return
        typer.echo(f"Stored file {asset.id} at {asset.url} ({asset.size_bytes} bytes)")


@app.command(name="file")
def file_cmd(
    file_id: int = typer.Argument(..., help="File id"),
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Copy the file contents here")
    ] = None,
    data_dir: DataDirOption = None,
) -> None:
    """Show a stored file's record, or copy its contents out."""
    with _session(data_dir, None) as (vault, _ctx):
        resp = file_response(vault.store, file_id, download=output is not None)
        if output is not None:
            shutil.copyfile(resp.path, output)
            typer.echo(f"Wrote {resp.asset.size_bytes} bytes to {output}")
            return
        a = resp.asset
        typer.echo(f"File {a.id}: {a.original_name or a.stored_name}")
        typer.echo(f"  {a.mime_type}, {a.size_bytes} bytes, sha256={a.digest}")
        typer.echo(f"  url={a.url}  path={resp.path}")


@app.command()
def timeline(
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """List worked dates with the nodes worked on each day."""
    with _session(data_dir, project) as (vault, ctx):
        days = build_timeline(vault.conn, ctx.project_id)
        if output_json:
            _echo_json(timeline_to_dict(days))
            return
        for day in days:
            typer.echo(day.date)
            for item in day.items:
                typer.echo("  " + " > ".join(b.title for b in item.path))



@app.command()
def projects(data_dir: DataDirOption = None, output_json: JsonOption = False) -> None:
    """List the projects stored in the vault."""
    with _session(data_dir, None) as (vault, _ctx):
        found = list_projects(vault.conn)
        if output_json:
            _echo_json([{"id": p.project_id, "name": p.name} for p in found])
            return
        for p in found:
            typer.echo(f"  {p.project_id}  {p.name}")


def _echo_reminder(reminder: Reminder, now: str) -> None:
    flags = []
    if reminder.is_due(now):
        flags.append("due")
    if reminder.dismissed_at:
        flags.append("dismissed")
    note = f"  {reminder.message}" if reminder.message else ""
    suffix = f"  ({', '.join(flags)})" if flags else ""
    typer.echo(
        f"  #{reminder.id}  {reminder.remind_at}  {reminder.status:<10}  "
        f"{reminder.node_title}{note}{suffix}"
    )


@reminder_app.command("set")
def reminder_set(
    node_id: str = typer.Argument(..., help="Node id"),
    remind_at: str = typer.Argument(..., help="ISO 8601 time (UTC when no offset is given)"),
    message: Annotated[str | None, typer.Option("--message", "-m", help="Reminder text")] = None,
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """Schedule a node's reminder; setting it again reopens it."""
    with _session(data_dir, project) as (vault, ctx):
        reminder = set_reminder(vault.conn, ctx.project_id, node_id, remind_at, message)
        if output_json:
            _echo_json(reminder.to_dict(now_iso()))
            return
        typer.echo(f"Reminder {reminder.id} for {reminder.node_title!r} at {reminder.remind_at}")


@reminder_app.command("list")
def reminder_list(
    status: Annotated[
        str | None, typer.Option("--status", "-s", help="incomplete or completed")
    ] = None,
    pending: Annotated[bool, typer.Option("--pending", help="Only reminders due now")] = False,
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
    output_json: JsonOption = False,
) -> None:
    """List reminders, earliest first."""
    with _session(data_dir, project) as (vault, ctx):
        now = now_iso()
        found = list_reminders(vault.conn, ctx.project_id, status=status, pending=pending, now=now)
        if output_json:
            _echo_json([r.to_dict(now) for r in found])
            return
        typer.echo(f"{len(found)} reminders:\n")
        for r in found:
            _echo_reminder(r, now)


@reminder_app.command("dismiss")
def reminder_dismiss(
    reminder_id: int = typer.Argument(..., help="Reminder id"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
) -> None:
    """Dismiss a reminder without completing it."""
    with _session(data_dir, project) as (vault, ctx):
        dismiss_reminder(vault.conn, ctx.project_id, reminder_id)
        typer.echo(f"Dismissed reminder {reminder_id}")


@reminder_app.command("complete")
def reminder_complete(
    reminder_id: int = typer.Argument(..., help="Reminder id"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
) -> None:
    """Complete a reminder and mark its node done."""
    with _session(data_dir, project) as (vault, ctx):
        reminder = complete_reminder(vault.conn, ctx.project_id, reminder_id)
        typer.echo(f"Completed reminder {reminder_id}; {reminder.node_title!r} is done")


@reminder_app.command("delete")
def reminder_delete(
    reminder_id: int = typer.Argument(..., help="Reminder id"),
    data_dir: DataDirOption = None,
    project: ProjectOption = None,
) -> None:
    """Delete a reminder."""
    with _session(data_dir, project) as (vault, ctx):
        delete_reminder(vault.conn, ctx.project_id, reminder_id)
        typer.echo(f"Deleted reminder {reminder_id}")


@app.command()
def serve(data_dir: DataDirOption = None) -> None:
    """Start the MCP server (stdio transport)."""
    from outline_vault.mcp.server import run_mcp_server

    run_mcp_server(data_dir, configure_log=False)
