"""Tests for MCP tool core functions."""

import json
import os
import sqlite3
from pathlib import Path

import pytest

from outline_vault.config import DATA_DIR_ENV
from outline_vault.core.assets.store import ContentStore
from outline_vault.mcp import server
from outline_vault.mcp.server import (
    vault_checkpoint,
    vault_complete_reminder,
    vault_delete_reminder,
    vault_diff,
    vault_dismiss_reminder,
    vault_export,
    vault_file_info,
    vault_get_node,
    vault_get_version,
    vault_import,
    vault_list_history,
    vault_list_projects,
    vault_list_reminders,
    vault_read_outline,
    vault_restore,
    vault_save_outline,
    vault_set_reminder,
    vault_timeline,
    vault_update_node,
    vault_upload_file,
)
from tests.unit.helpers import SAMPLE_OUTLINE


def test_save_then_read_json(conn: sqlite3.Connection, store: ContentStore) -> None:
    saved = vault_save_outline(conn, outline=SAMPLE_OUTLINE)
    assert saved["ok"] is True
    assert set(saved["newIdMap"]) == {
        "new-project",
        "new-design",
        "new-review",
        "new-build",
        "new-inbox",
    }
    doc = vault_read_outline(conn, store)
    assert [r["title"] for r in doc["roots"]] == ["Project #work", "Inbox"]


def test_read_markdown(conn: sqlite3.Connection) -> None:
    vault_save_outline(conn, outline=SAMPLE_OUTLINE)
    result = vault_read_outline(conn, output_format="markdown", max_depth=0)
    assert result["project"] == "Workspace"
    assert "- [ ] Project #work (2024-03-01)" in result["content"]
    assert "Design" not in result["content"]
    assert "... (2 more children" in result["content"]


def test_save_validation_error_names_node(conn: sqlite3.Connection) -> None:
    result = vault_save_outline(conn, outline=[{"id": "new-1", "dates": ["1 May"]}])
    assert result["node_id"] == "new-1"
    assert "error" in result


def test_get_and_update_node(conn: sqlite3.Connection) -> None:
    saved = vault_save_outline(conn, outline=SAMPLE_OUTLINE)
    node_id = saved["newIdMap"]["new-build"]

    node = vault_get_node(conn, node_id=node_id)
    assert node["status"] == "in-progress"

    updated = vault_update_node(conn, node_id=node_id, status="done", title="Build #release")
    assert updated["status"] == "done"
    assert updated["tags"] == ["release"]
    assert "error" in vault_get_node(conn, node_id="missing")
    assert "error" in vault_update_node(conn, node_id="missing", title="x")


def test_history_diff_restore_and_checkpoint(conn: sqlite3.Connection) -> None:
    saved = vault_save_outline(conn, outline=SAMPLE_OUTLINE)
    first = saved["versionId"]
    vault_save_outline(conn, outline=[{"title": "Only"}])

    diff = vault_diff(conn, from_ref=str(first))
    assert diff["summary"] == {"added": 1, "removed": 5, "modified": 0}
    assert "error" in vault_diff(conn, from_ref="soon")

    restored = vault_restore(conn, version_id=first)
    assert restored["ok"] is True
    assert restored["restoredTo"] == first

    checkpoint = vault_checkpoint(conn, note="after restore")
    history = vault_list_history(conn, limit=10)
    assert history["count"] == 4
    assert history["versions"][0]["id"] == checkpoint["versionId"]
    assert history["versions"][0]["meta"]["note"] == "after restore"
    assert history["versions"][1]["cause"] == "restore"

    version = vault_get_version(conn, version_id=first)
    assert version["doc"]["roots"][0]["title"] == "Project #work"
    assert "error" in vault_get_version(conn, version_id=999)
    assert "error" in vault_restore(conn, version_id=999)


def test_export_and_import(conn: sqlite3.Connection, store: ContentStore, tmp_path: Path) -> None:
    vault_save_outline(conn, outline=SAMPLE_OUTLINE)
    inline = vault_export(conn, store)
    assert inline["filename"].startswith("outline-export-")
    assert inline["manifest"]["meta"]["notesCount"] == 5

    written = vault_export(conn, store, output_dir=str(tmp_path / "exports"))
    assert written["ok"] is True
    path = Path(written["path"])
    assert json.loads(path.read_text())["meta"]["notesCount"] == 5

    imported = vault_import(conn, store, path=str(path), project="Copy")
    assert imported == {"ok": True, "notesImported": 5, "assetsProcessed": 0}
    again = vault_import(conn, store, manifest=inline["manifest"], project="Copy")
    assert again["notesImported"] == 5

    assert "error" in vault_import(conn, store)
    assert "error" in vault_import(conn, store, path=str(tmp_path / "none.json"))


def test_upload_and_file_info(store: ContentStore, tmp_path: Path) -> None:
    src = tmp_path / "photo.png"
    src.write_bytes(b"png bytes")
    asset = vault_upload_file(store, path=str(src))
    assert asset["mime_type"] == "image/png"
    assert src.exists()

    info = vault_file_info(store, file_id=asset["id"], download=True)
    assert info["headers"]["Content-Type"] == "image/png"
    assert info["headers"]["Content-Disposition"].startswith("attachment;")
    assert Path(info["path"]).read_bytes() == b"png bytes"
    assert "error" in vault_file_info(store, file_id=999)
    assert "error" in vault_upload_file(store, path=str(tmp_path / "missing.png"))


def test_timeline(conn: sqlite3.Connection) -> None:
    vault_save_outline(conn, outline=SAMPLE_OUTLINE)
    days = vault_timeline(conn)["days"]
    assert [d["date"] for d in days] == ["2024-03-02", "2024-03-01"]
    assert days[0]["reminderIds"] == []


def test_list_projects(conn: sqlite3.Connection) -> None:
    vault_save_outline(conn, outline=[{"title": "A"}])
    vault_save_outline(conn, outline=[{"title": "B"}], project="Side")
    assert [p["name"] for p in vault_list_projects(conn)["projects"]] == ["Workspace", "Side"]


def test_reminder_lifecycle(conn: sqlite3.Connection) -> None:
    ids = vault_save_outline(conn, outline=SAMPLE_OUTLINE)["newIdMap"]
    build = ids["new-build"]

    created = vault_set_reminder(
        conn, node_id=build, remind_at="2000-01-01T09:00:00Z", message="overdue"
    )["reminder"]
    assert created["nodeId"] == build
    assert created["remindAt"] == "2000-01-01T09:00:00.000+00:00"
    assert created["due"] is True

    pending = vault_list_reminders(conn, pending=True)
    assert pending["count"] == 1
    assert pending["reminders"][0]["message"] == "overdue"

    dismissed = vault_dismiss_reminder(conn, reminder_id=created["id"])["reminder"]
    assert dismissed["due"] is False
    assert vault_list_reminders(conn, pending=True)["count"] == 0

    completed = vault_complete_reminder(conn, reminder_id=created["id"])["reminder"]
    assert completed["status"] == "completed"
    assert vault_get_node(conn, node_id=build)["status"] == "done"
    assert vault_list_reminders(conn, status="completed")["count"] == 1

    assert vault_delete_reminder(conn, reminder_id=created["id"]) == {
        "ok": True,
        "deleted": created["id"],
    }
    assert vault_list_reminders(conn)["reminders"] == []


def test_reminder_errors(conn: sqlite3.Connection) -> None:
    ids = vault_save_outline(conn, outline=SAMPLE_OUTLINE)["newIdMap"]
    assert "error" in vault_set_reminder(conn, node_id="ghost", remind_at="2024-01-01")
    assert "error" in vault_set_reminder(conn, node_id=ids["new-inbox"], remind_at="later")
    assert "error" in vault_list_reminders(conn, status="someday")
    assert "error" in vault_dismiss_reminder(conn, reminder_id=5)
    assert "error" in vault_complete_reminder(conn, reminder_id=5)
    assert "error" in vault_delete_reminder(conn, reminder_id=5)


def test_run_mcp_server_uses_given_data_dir(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls = []
    monkeypatch.setenv(DATA_DIR_ENV, "/elsewhere")
    monkeypatch.setattr(server.mcp_server, "run", lambda transport: calls.append(transport))
    monkeypatch.setattr(
        "outline_vault.logging_config.configure_logging",
        lambda **kwargs: pytest.fail("logging reconfigured"),
    )

    server.run_mcp_server(tmp_path / "vault", configure_log=False)

    assert calls == ["stdio"]
    assert os.environ[DATA_DIR_ENV] == str(tmp_path / "vault")
