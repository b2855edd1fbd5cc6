"""Assemble flat node rows into a rooted forest with worked-date rollups."""

import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import replace

from loguru import logger

from outline_vault.core.tags.extractor import parse_tags_field
from outline_vault.models.node import Node, TreeNode

NODE_COLUMNS = (
    "id, project_id, parent_id, title, status, content, tags, position, created_at, updated_at"
)


def row_to_node(row: tuple, worked_dates: Iterable[str] = ()) -> Node:
    return Node(
        id=row[0],
        project_id=row[1],
        parent_id=row[2],
        title=row[3],
        status=row[4],
        content=row[5],
        tags=parse_tags_field(row[6]),
        position=row[7],
        created_at=row[8],
        updated_at=row[9],
        worked_dates=tuple(sorted(set(worked_dates))),
    )


def _sort_key(node: Node) -> tuple[int, str]:
    return (node.position or 0, str(node.id))


def build_forest(
    nodes: Iterable[Node],
    worked_dates_by_node_id: Mapping[str, Iterable[str]] | None = None,
) -> list[TreeNode]:
    """Build the forest of root TreeNodes from flat nodes.

    Args:
        nodes: Flat node rows of one project. Not modified.
        worked_dates_by_node_id: Own worked dates per node id. Falls back to
            each node's ``worked_dates`` when a node has no entry.

    Returns:
        Root TreeNodes. Siblings are ordered by ``(position, id)``. A node
        whose parent is not in the set becomes a root; a parent cycle is
        broken by promoting its first node (in sibling order) to a root.
    """
    dates_map = worked_dates_by_node_id or {}
    by_id: dict[str, Node] = {}
    for n in nodes:
        by_id[n.id] = n
    ordered = sorted(by_id.values(), key=_sort_key)

    children: dict[str, list[str]] = {node_id: [] for node_id in by_id}
    roots: list[str] = []
    for n in ordered:
        if n.parent_id is not None and n.parent_id in by_id and n.parent_id != n.id:
            children[n.parent_id].append(n.id)
        else:
            roots.append(n.id)

    reachable: set[str] = set()
    for root_id in roots:
        _mark_reachable(root_id, children, reachable)
    for n in ordered:
        if n.id in reachable:
            continue
        # Only members of a parent cycle (or their descendants) get here.
        logger.warning("Parent cycle at node {}, promoting it to root", n.id)
        children[n.parent_id].remove(n.id)  # type: ignore[index]
        roots.append(n.id)
        _mark_reachable(n.id, children, reachable)
    roots.sort(key=lambda node_id: _sort_key(by_id[node_id]))

    own_dates: dict[str, set[str]] = {}
    for node_id, n in by_id.items():
        own_dates[node_id] = set(dates_map.get(node_id, n.worked_dates))

    aggregated: dict[str, set[str]] = {}
    for root_id in roots:
        _aggregate(root_id, children, own_dates, aggregated, visited=set())

    return [_freeze(root_id, by_id, children, own_dates, aggregated) for root_id in roots]


def _mark_reachable(start: str, children: Mapping[str, list[str]], reachable: set[str]) -> None:
    stack = [start]
    while stack:
        node_id = stack.pop()
        if node_id in reachable:
            continue
        reachable.add(node_id)
        stack.extend(children[node_id])


def _aggregate(
    node_id: str,
    children: Mapping[str, list[str]],
    own_dates: Mapping[str, set[str]],
    aggregated: dict[str, set[str]],
    *,
    visited: set[str],
) -> set[str]:
    """Union of a node's own dates and all its descendants' dates.

    ``visited`` holds the ids on the current path; a node already on it
    contributes nothing a second time.
    """
    if node_id in aggregated:
        return aggregated[node_id]
    if node_id in visited:
        return set()
    visited.add(node_id)
    dates = set(own_dates[node_id])
    for child_id in children[node_id]:
        dates |= _aggregate(child_id, children, own_dates, aggregated, visited=visited)
    visited.discard(node_id)
    aggregated[node_id] = dates
    return dates


def _freeze(
    node_id: str,
    by_id: Mapping[str, Node],
    children: Mapping[str, list[str]],
    own_dates: Mapping[str, set[str]],
    aggregated: Mapping[str, set[str]],
) -> TreeNode:
    own = tuple(sorted(own_dates[node_id]))
    node = by_id[node_id]
    if node.worked_dates != own:
        node = replace(node, worked_dates=own)
    kids = sorted(children[node_id], key=lambda c: _sort_key(by_id[c]))
    return TreeNode(
        node=node,
        children=tuple(_freeze(c, by_id, children, own_dates, aggregated) for c in kids),
        own_worked_on_dates=own,
        worked_on_dates=tuple(sorted(aggregated[node_id], reverse=True)),
    )


def flatten_forest(roots: Iterable[TreeNode]) -> list[Node]:
    """Inverse of build_forest: the flat node list, parents before children."""
    out: list[Node] = []
    stack = list(reversed(list(roots)))
    while stack:
        tree = stack.pop()
        out.append(tree.node)
        stack.extend(reversed(tree.children))
    return out


def forest_to_dict(roots: Iterable[TreeNode]) -> dict[str, list[dict]]:
    return {"roots": [r.to_dict() for r in roots]}


def load_nodes(conn: sqlite3.Connection, project_id: int) -> list[Node]:
    """Read all node rows of a project, with their own worked dates."""
    rows = conn.execute(
        f"SELECT {NODE_COLUMNS} FROM nodes WHERE project_id = ? "
        "ORDER BY position ASC, created_at ASC, id ASC",
        (project_id,),
    ).fetchall()
    dates = load_worked_dates(conn, project_id)
    return [row_to_node(r, dates.get(r[0], ())) for r in rows]


def load_worked_dates(conn: sqlite3.Connection, project_id: int) -> dict[str, list[str]]:
    rows = conn.execute(
        "SELECT w.node_id, w.date FROM work_dates w "
        "JOIN nodes n ON n.id = w.node_id WHERE n.project_id = ?",
        (project_id,),
    ).fetchall()
    out: dict[str, list[str]] = {}
    for node_id, date in rows:
        out.setdefault(node_id, []).append(date)
    return out


def load_forest(conn: sqlite3.Connection, project_id: int) -> list[TreeNode]:
    """Build the live forest of a project."""
    return build_forest(load_nodes(conn, project_id))
