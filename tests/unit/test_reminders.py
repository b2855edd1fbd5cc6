"""Tests for per-node reminders."""

import sqlite3
from datetime import UTC, datetime, timedelta, timezone

import pytest

from outline_vault.core.outline.nodes import get_node
from outline_vault.core.outline.reconciler import load_outline, save_outline
from outline_vault.core.projects import resolve_project
from outline_vault.core.reminders.store import (
    complete_reminder,
    delete_reminder,
    dismiss_reminder,
    get_reminder,
    list_reminders,
    parse_remind_at,
    set_reminder,
)
from outline_vault.core.tree.timeline import build_timeline, timeline_to_dict
from outline_vault.core.versioning.restore import restore_version
from outline_vault.core.versioning.store import list_history
from outline_vault.errors import NotFoundError, ValidationError
from outline_vault.models.node import SaveResult
from tests.unit.helpers import ids_by_title, version_count

NOW = "2024-06-01T12:00:00.000+00:00"


def test_parse_remind_at_normalizes_to_utc() -> None:
    assert parse_remind_at("2024-06-01T14:30:00+02:00") == "2024-06-01T12:30:00.000+00:00"
    assert parse_remind_at("2024-06-01T09:00:00Z") == "2024-06-01T09:00:00.000+00:00"
    assert parse_remind_at("2024-06-01") == "2024-06-01T00:00:00.000+00:00"
    local = datetime(2024, 6, 1, 8, 0, tzinfo=timezone(timedelta(hours=-4)))
    assert parse_remind_at(local) == "2024-06-01T12:00:00.000+00:00"
    for bad in ("tomorrow", "", None, 12):
        with pytest.raises(ValidationError):
            parse_remind_at(bad)


def test_set_reminder_upserts_and_reopens(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    first = set_reminder(conn, project_id, ids["Build"], "2024-06-01T09:00:00Z", "ship it")
    assert first.node_title == "Build"
    assert first.node_status == "in-progress"
    assert first.status == "incomplete"
    assert first.message == "ship it"

    dismiss_reminder(conn, project_id, first.id)
    again = set_reminder(conn, project_id, ids["Build"], "2024-06-02T09:00:00Z")
    assert again.id == first.id
    assert again.remind_at == "2024-06-02T09:00:00.000+00:00"
    assert again.dismissed_at is None
    assert again.message is None
    assert len(list_reminders(conn, project_id)) == 1


def test_set_reminder_requires_node_in_project(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    other = resolve_project(conn, "Other").project_id
    with pytest.raises(NotFoundError):
        set_reminder(conn, other, ids["Build"], "2024-06-01")
    with pytest.raises(NotFoundError):
        set_reminder(conn, project_id, "ghost", "2024-06-01")
    with pytest.raises(ValidationError):
        set_reminder(conn, project_id, ids["Build"], "soon")
    assert list_reminders(conn, project_id) == []


def test_list_reminders_filters(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    late = set_reminder(conn, project_id, ids["Inbox"], "2024-07-01T00:00:00Z")
    due = set_reminder(conn, project_id, ids["Build"], "2024-05-01T00:00:00Z")
    hidden = set_reminder(conn, project_id, ids["Review"], "2024-05-02T00:00:00Z")
    done = set_reminder(conn, project_id, ids["Design"], "2024-04-01T00:00:00Z")
    dismiss_reminder(conn, project_id, hidden.id)
    complete_reminder(conn, project_id, done.id)

    everything = list_reminders(conn, project_id)
    assert [r.id for r in everything] == [done.id, due.id, hidden.id, late.id]
    assert [r.id for r in list_reminders(conn, project_id, pending=True, now=NOW)] == [due.id]
    assert [r.id for r in list_reminders(conn, project_id, status="completed")] == [done.id]
    assert [r.id for r in list_reminders(conn, project_id, status="incomplete")] == [
        due.id,
        hidden.id,
        late.id,
    ]
    with pytest.raises(ValidationError):
        list_reminders(conn, project_id, status="snoozed")

    assert due.to_dict(NOW)["due"] is True
    assert late.to_dict(NOW)["due"] is False
    assert get_reminder(conn, project_id, hidden.id).to_dict(NOW)["due"] is False


def test_complete_reminder_marks_node_done_and_records_version(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    reminder = set_reminder(conn, project_id, ids["Build"], "2024-05-01")
    before = version_count(conn, project_id)

    completed = complete_reminder(conn, project_id, reminder.id)
    assert completed.status == "completed"
    assert completed.completed_at is not None
    assert completed.node_status == "done"
    assert get_node(conn, project_id, ids["Build"]).status == "done"
    assert version_count(conn, project_id) == before + 1
    assert list_history(conn, project_id)[0].meta["reminderId"] == reminder.id

    complete_reminder(conn, project_id, reminder.id)
    assert version_count(conn, project_id) == before + 1


def test_missing_reminder_raises_not_found(conn: sqlite3.Connection, project_id: int) -> None:
    for action in (get_reminder, dismiss_reminder, complete_reminder, delete_reminder):
        with pytest.raises(NotFoundError):
            action(conn, project_id, 99)


def test_delete_reminder(conn: sqlite3.Connection, project_id: int, saved: SaveResult) -> None:
    ids = ids_by_title(conn, project_id)
    reminder = set_reminder(conn, project_id, ids["Inbox"], "2024-05-01")
    delete_reminder(conn, project_id, reminder.id)
    assert list_reminders(conn, project_id) == []
    with pytest.raises(NotFoundError):
        delete_reminder(conn, project_id, reminder.id)


def test_reminder_is_removed_with_its_node(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    set_reminder(conn, project_id, ids["Inbox"], "2024-05-01")
    roots = load_outline(conn, project_id)["roots"]
    save_outline(conn, project_id, roots[:1])
    assert list_reminders(conn, project_id) == []


def test_restore_keeps_reminders_of_restored_nodes(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    kept = set_reminder(conn, project_id, ids["Inbox"], "2024-05-01", "check mail")
    roots = load_outline(conn, project_id)["roots"]
    added = save_outline(conn, project_id, [*roots, {"id": "new-x", "title": "X"}])
    set_reminder(conn, project_id, added.id_remap["new-x"], "2024-05-02")

    restore_version(conn, project_id, saved.version_id)

    (reminder,) = list_reminders(conn, project_id)
    assert reminder == kept


def test_timeline_includes_open_reminder_days(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    set_reminder(conn, project_id, ids["Design"], "2024-04-10T23:30:00-02:00")
    set_reminder(conn, project_id, ids["Inbox"], "2024-03-02T08:00:00Z")
    closed = set_reminder(conn, project_id, ids["Build"], "2024-04-20")
    dismiss_reminder(conn, project_id, closed.id)

    days = build_timeline(conn, project_id)
    assert [d.date for d in days] == ["2024-04-11", "2024-03-02", "2024-03-01"]
    reminder_day = days[0]
    assert reminder_day.seed_ids == ()
    assert reminder_day.reminder_ids == (ids["Design"],)
    assert [i.node_id for i in reminder_day.items] == [ids["Design"], ids["Review"]]

    worked_and_reminded = days[1]
    assert worked_and_reminded.reminder_ids == (ids["Inbox"],)
    assert [i.node_id for i in worked_and_reminded.items].count(ids["Inbox"]) == 1
    assert timeline_to_dict(days)["days"][0]["reminderIds"] == [ids["Design"]]


def test_reminder_times_compare_in_utc() -> None:
    now = datetime.now(tz=UTC)
    earlier = parse_remind_at(now - timedelta(minutes=1))
    later = parse_remind_at((now + timedelta(hours=1)).astimezone(timezone(timedelta(hours=5))))
    assert earlier < parse_remind_at(now) < later
