"""Domain models for the outline engine."""

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote


@dataclass(frozen=True)
class ProjectContext:
    """The logical workspace an engine call operates on."""

    project_id: int
    name: str


@dataclass(frozen=True)
class Node:
    """A single outline item as stored in the nodes table."""

    id: str
    project_id: int
    parent_id: str | None
    title: str
    status: str
    content: str
    tags: tuple[str, ...]
    position: int
    created_at: str
    updated_at: str
    worked_dates: tuple[str, ...] = ()


@dataclass(frozen=True)
class TreeNode:
    """A node with its children and aggregated worked dates."""

    node: Node
    children: tuple["TreeNode", ...]
    own_worked_on_dates: tuple[str, ...]
    worked_on_dates: tuple[str, ...]

    @property
    def id(self) -> str:
        return self.node.id

    def to_dict(self) -> dict[str, Any]:
        """JSON projection used by the outline read and version snapshots."""
        n = self.node
        return {
            "id": n.id,
            "parent_id": n.parent_id,
            "title": n.title,
            "status": n.status,
            "content": n.content,
            "tags": list(n.tags),
            "position": n.position,
            "created_at": n.created_at,
            "updated_at": n.updated_at,
            "ownWorkedOnDates": list(self.own_worked_on_dates),
            "workedOnDates": list(self.worked_on_dates),
            "children": [c.to_dict() for c in self.children],
        }


@dataclass(frozen=True)
class SaveResult:
    """Outcome of reconciling a submitted outline."""

    id_remap: dict[str, str]
    deleted_ids: tuple[str, ...]
    version_id: int | None = None
    version_skipped: bool = False
    inserted: int = 0
    updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "newIdMap": dict(self.id_remap),
            "deleted": list(self.deleted_ids),
            "versionId": self.version_id,
        }


@dataclass(frozen=True)
class RecordResult:
    """Outcome of recording a version."""

    id: int
    skipped: bool


@dataclass(frozen=True)
class VersionSummary:
    """A history entry without its snapshot body."""

    id: int
    project_id: int
    created_at: str
    cause: str
    parent_id: int | None
    hash: str
    size_bytes: int
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "cause": self.cause,
            "parent_id": self.parent_id,
            "hash": self.hash,
            "size_bytes": self.size_bytes,
            "meta": self.meta,
        }


@dataclass(frozen=True)
class Version:
    """An immutable snapshot of a project's whole outline."""

    summary: VersionSummary
    doc: dict[str, Any]

    @property
    def id(self) -> int:
        return self.summary.id

    def to_dict(self) -> dict[str, Any]:
        return {**self.summary.to_dict(), "doc": self.doc}


@dataclass(frozen=True)
class DiffResult:
    """Structural difference between two outline snapshots."""

    added: tuple[dict[str, Any], ...]
    removed: tuple[dict[str, Any], ...]
    modified: tuple[dict[str, Any], ...]

    @property
    def summary(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": len(self.modified),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "modified": list(self.modified),
            "summary": self.summary,
        }


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of restoring a historical version."""

    restored_to: int
    new_version_id: int


@dataclass(frozen=True)
class Asset:
    """A content-addressed binary blob."""

    id: int
    stored_name: str
    original_name: str | None
    mime_type: str
    size_bytes: int
    digest: str
    created_at: str

    @property
    def url(self) -> str:
        return f"/files/{self.id}/{quote(self.stored_name)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "stored_name": self.stored_name,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "digest": self.digest,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ImportStats:
    """Summary of a manifest import."""

    notes_imported: int
    assets_processed: int
    id_map: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "notesImported": self.notes_imported,
            "assetsProcessed": self.assets_processed,
        }


@dataclass(frozen=True)
class Breadcrumb:
    """A single ancestor in a breadcrumb trail."""

    node_id: str
    title: str
    status: str


@dataclass(frozen=True)
class TimelineItem:
    """A node shown under a worked date, with its ancestor path."""

    node_id: str
    path: tuple[Breadcrumb, ...]


@dataclass(frozen=True)
class TimelineDay:
    """All nodes worked on, or with an open reminder, on a given date."""

    date: str
    seed_ids: tuple[str, ...]
    items: tuple[TimelineItem, ...]
    reminder_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Reminder:
    """A scheduled reminder attached to one node (at most one per node)."""

    id: int
    project_id: int
    node_id: str
    remind_at: str
    status: str
    message: str | None
    created_at: str
    updated_at: str
    dismissed_at: str | None = None
    completed_at: str | None = None
    node_title: str = ""
    node_status: str = ""

    def is_due(self, now: str) -> bool:
        """Open, not dismissed and scheduled at or before ``now`` (UTC ISO)."""
        return (
            self.status != "completed"
            and self.dismissed_at is None
            and self.remind_at <= now
        )

    def to_dict(self, now: str) -> dict[str, Any]:
        return {
            "id": self.id,
            "nodeId": self.node_id,
            "projectId": self.project_id,
            "remindAt": self.remind_at,
            "status": self.status,
            "message": self.message,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "dismissedAt": self.dismissed_at,
            "completedAt": self.completed_at,
            "nodeTitle": self.node_title,
            "nodeStatus": self.node_status,
            "due": self.is_due(now),
        }
