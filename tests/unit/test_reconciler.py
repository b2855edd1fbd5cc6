"""Tests for saving and loading whole outlines."""

import json
import sqlite3

import pytest

from outline_vault.core.outline.reconciler import (
    OutlineNodeIn,
    coerce_status,
    load_outline,
    normalize_dates,
    parse_forest,
    plan_save,
    save_outline,
)
from outline_vault.core.projects import resolve_project
from outline_vault.errors import ValidationError
from outline_vault.models.node import SaveResult
from tests.unit.fakes import FakeContentStore
from tests.unit.helpers import ids_by_title, node_count, version_count, work_dates

PNG_DATA_URI = "data:image/png;base64,aGVsbG8="


def test_placeholders_are_mapped_to_new_ids(conn: sqlite3.Connection, project_id: int) -> None:
    result = save_outline(
        conn,
        project_id,
        [
            {"id": "new-1", "title": "A", "children": []},
            {"id": "new-2", "title": "B", "children": [{"id": "new-3", "title": "C"}]},
        ],
    )
    assert set(result.id_remap) == {"new-1", "new-2", "new-3"}
    assert len(set(result.id_remap.values())) == 3

    roots = load_outline(conn, project_id)["roots"]
    assert [r["title"] for r in roots] == ["A", "B"]
    assert [r["id"] for r in roots] == [result.id_remap["new-1"], result.id_remap["new-2"]]
    c = roots[1]["children"][0]
    assert c["title"] == "C"
    assert c["parent_id"] == result.id_remap["new-2"]


def test_nodes_without_or_with_unknown_id_are_created(
    conn: sqlite3.Connection, project_id: int
) -> None:
    result = save_outline(conn, project_id, [{"title": "No id"}, {"id": "ghost", "title": "X"}])
    assert set(result.id_remap) == {"ghost"}
    assert result.inserted == 2
    assert node_count(conn, project_id) == 2


def test_missing_title_defaults_to_untitled(conn: sqlite3.Connection, project_id: int) -> None:
    save_outline(conn, project_id, [{"id": "new-1"}, {"id": "new-2", "title": ""}])
    assert [r["title"] for r in load_outline(conn, project_id)["roots"]] == [
        "Untitled",
        "Untitled",
    ]


def test_resaving_loaded_outline_changes_nothing(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    before = load_outline(conn, project_id)
    again = save_outline(conn, project_id, before["roots"])
    assert again.version_skipped
    assert again.version_id == saved.version_id
    assert (again.inserted, again.updated, again.deleted_ids) == (0, 0, ())
    assert load_outline(conn, project_id) == before
    assert version_count(conn, project_id) == 1


def test_omitted_subtree_is_deleted(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    result = save_outline(
        conn,
        project_id,
        [{"id": ids["Project #work"], "title": "Project #work"}],
    )
    assert set(result.deleted_ids) == {ids["Design"], ids["Review"], ids["Build"], ids["Inbox"]}
    assert node_count(conn, project_id) == 1
    assert work_dates(conn, ids["Inbox"]) == set()


def test_reparented_child_survives_parent_deletion(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    ids = ids_by_title(conn, project_id)
    result = save_outline(
        conn,
        project_id,
        [
            {"id": ids["Project #work"], "title": "Project #work"},
            {"id": ids["Review"], "title": "Review"},
        ],
    )
    assert ids["Review"] not in result.deleted_ids
    assert ids["Design"] in result.deleted_ids
    roots = load_outline(conn, project_id)["roots"]
    assert [r["title"] for r in roots] == ["Project #work", "Review"]
    assert roots[1]["parent_id"] is None


def test_worked_dates_are_reconciled_by_difference(
    conn: sqlite3.Connection, project_id: int
) -> None:
    first = save_outline(
        conn, project_id, [{"id": "new-1", "title": "T", "dates": ["2024-01-02", "2024-01-01"]}]
    )
    node_id = first.id_remap["new-1"]
    kept_stamp = conn.execute(
        "SELECT created_at FROM work_dates WHERE node_id = ? AND date = '2024-01-02'", (node_id,)
    ).fetchone()[0]

    second = save_outline(
        conn,
        project_id,
        [{"id": node_id, "title": "T", "workedDates": ["2024-01-02", "2024-01-03"]}],
    )
    assert second.updated == 1
    assert work_dates(conn, node_id) == {"2024-01-02", "2024-01-03"}
    assert (
        conn.execute(
            "SELECT created_at FROM work_dates WHERE node_id = ? AND date = '2024-01-02'",
            (node_id,),
        ).fetchone()[0]
        == kept_stamp
    )


def test_missing_date_field_clears_dates(conn: sqlite3.Connection, project_id: int) -> None:
    first = save_outline(
        conn, project_id, [{"id": "new-1", "title": "T", "dates": ["2024-01-01"]}]
    )
    node_id = first.id_remap["new-1"]
    save_outline(conn, project_id, [{"id": node_id, "title": "T"}])
    assert work_dates(conn, node_id) == set()


def test_unchanged_sibling_keeps_updated_at(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    doc = load_outline(conn, project_id)
    inbox = doc["roots"][1]
    doc["roots"][0]["title"] = "Project #work #renamed"
    result = save_outline(conn, project_id, doc["roots"])
    assert result.updated == 1
    after = load_outline(conn, project_id)["roots"]
    assert after[1]["updated_at"] == inbox["updated_at"]
    assert after[0]["tags"] == ["renamed", "work"]


def test_tags_and_status_are_derived_on_save(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult
) -> None:
    roots = load_outline(conn, project_id)["roots"]
    project = roots[0]
    design = project["children"][0]
    assert project["tags"] == ["work"]
    assert project["status"] == "todo"
    assert design["tags"] == ["ui"]
    assert design["status"] == "done"
    assert json.loads(design["content"])[0]["type"] == "paragraph"
    assert project["workedOnDates"] == ["2024-03-02", "2024-03-01"]
    assert project["ownWorkedOnDates"] == ["2024-03-01"]


def test_body_field_takes_precedence_over_content(
    conn: sqlite3.Connection, project_id: int
) -> None:
    body = [{"type": "paragraph", "content": [{"type": "text", "text": "from body"}]}]
    save_outline(conn, project_id, [{"title": "T", "body": body, "content": "<p>html</p>"}])
    stored = load_outline(conn, project_id)["roots"][0]["content"]
    assert json.loads(stored) == body


def test_coerce_status() -> None:
    assert coerce_status(" DONE ") == "done"
    assert coerce_status("in-progress") == "in-progress"
    assert coerce_status("Blocked") == ""
    assert coerce_status(None) == ""


def test_normalize_dates() -> None:
    assert normalize_dates(["2024-01-01", "2024-01-01", ""]) == frozenset({"2024-01-01"})
    assert normalize_dates(None) == frozenset()
    with pytest.raises(ValidationError) as exc:
        normalize_dates(["2024-02-30"], node_id="n1")
    assert exc.value.node_id == "n1"
    with pytest.raises(ValidationError):
        normalize_dates(["24-1-1"])
    with pytest.raises(ValidationError):
        normalize_dates("2024-01-01")


def test_plan_save_orders_parents_before_children() -> None:
    planned, remap = plan_save(
        [{"id": "a", "children": [{"id": "new-b", "children": [{"id": "new-c"}]}]}],
        existing_ids={"a"},
    )
    assert [p.client_id for p in planned] == ["a", "new-b", "new-c"]
    assert planned[0].is_new is False
    assert planned[1].parent_id == "a"
    assert planned[2].parent_id == remap["new-b"]


@pytest.mark.parametrize(
    "forest",
    [
        {"id": "not-a-list"},
        [{"id": "dup", "title": "A"}, {"id": "dup", "title": "B"}],
        [{"title": "bad date", "dates": ["2024-13-01"]}],
        [{"title": "bad children", "children": "nope"}],
        [{"title": 42}],
        ["just a string"],
    ],
)
def test_invalid_save_writes_nothing(
    conn: sqlite3.Connection, project_id: int, saved: SaveResult, forest: object
) -> None:
    before = load_outline(conn, project_id)
    with pytest.raises(ValidationError):
        save_outline(conn, project_id, forest)
    assert load_outline(conn, project_id) == before
    assert version_count(conn, project_id) == 1


def test_validation_error_names_the_node(conn: sqlite3.Connection, project_id: int) -> None:
    with pytest.raises(ValidationError) as exc:
        save_outline(conn, project_id, [{"id": "new-x", "dates": ["nope"]}])
    assert exc.value.node_id == "new-x"


@pytest.mark.parametrize(
    ("forest", "node_id"),
    [
        ([{"id": "a", "children": [{"id": "b", "workedDates": ["2024-02-30"]}]}], "b"),
        ([{"id": "a", "children": [{"id": "b"}, {"id": "c", "title": ["x"]}]}], "c"),
        ([{"id": "a", "children": [{"id": "b", "content": 7}]}], "b"),
        ([{"id": "a", "children": ["not a node"]}], "a"),
        ([{"id": "a", "children": [{"children": {"id": "x"}}]}], None),
    ],
)
def test_nested_validation_error_names_the_node(forest: list, node_id: str | None) -> None:
    with pytest.raises(ValidationError) as exc:
        parse_forest(forest)
    assert exc.value.node_id == node_id
    assert str(exc.value).startswith("Outline validation failed: 0.children.")


def test_incoming_node_model_normalizes_fields() -> None:
    node = OutlineNodeIn.model_validate(
        {
            "id": 12,
            "status": " Done ",
            "ownWorkedOnDates": ["2024-01-02", "2024-01-01", "2024-01-02", ""],
            "workedOnDates": ["1999-01-01"],
            "tags": ["ignored"],
            "children": None,
        }
    )
    assert node.id == "12"
    assert node.status == "done"
    assert node.dates == ["2024-01-01", "2024-01-02"]
    assert node.children == []
    assert node.stored_content() == "[]"

    assert OutlineNodeIn.model_validate({"status": "blocked"}).status == ""
    assert OutlineNodeIn.model_validate({"worked_dates": ["2024-05-06"]}).dates == ["2024-05-06"]
    assert OutlineNodeIn(content="<p>x</p>").stored_content() == "<p>x</p>"
    assert OutlineNodeIn(content=[{"type": "paragraph"}]).stored_content() == (
        '[{"type":"paragraph"}]'
    )


def test_projects_are_isolated(conn: sqlite3.Connection, project_id: int) -> None:
    other = resolve_project(conn, "Other").project_id
    first = save_outline(conn, project_id, [{"id": "new-1", "title": "Mine"}])
    node_id = first.id_remap["new-1"]
    result = save_outline(conn, other, [{"id": node_id, "title": "Theirs"}])
    assert node_id in result.id_remap
    assert load_outline(conn, project_id)["roots"][0]["title"] == "Mine"
    assert node_count(conn, other) == 1


def test_load_outline_moves_inline_images_into_store(
    conn: sqlite3.Connection, project_id: int
) -> None:
    content = [{"type": "image", "attrs": {"src": PNG_DATA_URI, "alt": "pic"}}]
    save_outline(conn, project_id, [{"id": "new-1", "title": "Img", "content": content}])
    fake = FakeContentStore()

    doc = load_outline(conn, project_id, fake)
    attrs = json.loads(doc["roots"][0]["content"])[0]["attrs"]
    assert attrs["src"] == "/files/1/blob-1.bin"
    assert attrs["data-file-id"] == "1"
    assert fake.puts == [b"hello"]

    stored = conn.execute("SELECT content FROM nodes").fetchone()[0]
    assert "data:" not in stored
    load_outline(conn, project_id, fake)
    assert len(fake.puts) == 1
