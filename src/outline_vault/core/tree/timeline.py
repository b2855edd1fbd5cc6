"""Per-day timeline of worked and reminded nodes with breadcrumb paths."""

import sqlite3
from collections.abc import Mapping

from outline_vault.config import REMINDER_INCOMPLETE
from outline_vault.core.reminders.store import list_reminders
from outline_vault.core.tree.builder import load_nodes
from outline_vault.models.node import Breadcrumb, Node, TimelineDay, TimelineItem


def breadcrumbs(node: Node, by_id: Mapping[str, Node]) -> tuple[Breadcrumb, ...]:
    """Path from the root down to ``node``, inclusive. Stops at a parent cycle."""
    path: list[Breadcrumb] = []
    seen: set[str] = set()
    cur: Node | None = node
    while cur is not None and cur.id not in seen:
        seen.add(cur.id)
        path.append(Breadcrumb(node_id=cur.id, title=cur.title, status=cur.status))
        cur = by_id.get(cur.parent_id) if cur.parent_id else None
    path.reverse()
    return tuple(path)


def build_timeline(conn: sqlite3.Connection, project_id: int) -> list[TimelineDay]:
    """Every worked or reminder date, newest first, with the nodes of that day.

    A day lists each seed node (one with that date of its own), then each
    node with an open reminder on that (UTC) date, each followed by its
    descendants. Every node appears once per day.
    """
    nodes = load_nodes(conn, project_id)
    by_id = {n.id: n for n in nodes}
    children: dict[str, list[Node]] = {}
    for n in nodes:
        if n.parent_id and n.parent_id in by_id:
            children.setdefault(n.parent_id, []).append(n)
    for kids in children.values():
        kids.sort(key=lambda n: (n.position, n.id))

    seeds_by_date: dict[str, list[Node]] = {}
    for n in sorted(nodes, key=lambda n: (n.created_at, n.id)):
        for d in n.worked_dates:
            seeds_by_date.setdefault(d, []).append(n)

    reminded_by_date: dict[str, list[Node]] = {}
    for r in list_reminders(conn, project_id, status=REMINDER_INCOMPLETE):
        if r.dismissed_at is None and r.node_id in by_id:
            reminded_by_date.setdefault(r.remind_at[:10], []).append(by_id[r.node_id])

    days: list[TimelineDay] = []
    for d in sorted(seeds_by_date.keys() | reminded_by_date.keys(), reverse=True):
        seeds = seeds_by_date.get(d, [])
        reminded = reminded_by_date.get(d, [])
        included: set[str] = set()
        items: list[TimelineItem] = []
        for start in [*seeds, *reminded]:
            stack = [start]
            while stack:
                cur = stack.pop()
                if cur.id in included:
                    continue
                included.add(cur.id)
                items.append(TimelineItem(node_id=cur.id, path=breadcrumbs(cur, by_id)))
                stack.extend(reversed(children.get(cur.id, [])))
        days.append(
            TimelineDay(
                date=d,
                seed_ids=tuple(s.id for s in seeds),
                items=tuple(items),
                reminder_ids=tuple(r.id for r in reminded),
            )
        )
    return days


def timeline_to_dict(days: list[TimelineDay]) -> dict[str, list[dict]]:
    return {
        "days": [
            {
                "date": day.date,
                "seedIds": list(day.seed_ids),
                "reminderIds": list(day.reminder_ids),
                "items": [
                    {
                        "id": item.node_id,
                        "path": [
                            {"id": b.node_id, "title": b.title, "status": b.status}
                            for b in item.path
                        ],
                    }
                    for item in day.items
                ],
            }
            for day in days
        ]
    }
