"""Build a portable manifest of a project's notes and embedded assets.

Live ``/files/<id>/...`` references inside note content are replaced with
``asset://<assetId>`` and the referenced bytes are inlined once per digest.
"""

import base64
import hashlib
import sqlite3
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from outline_vault.config import ASSET_SCHEME, MANIFEST_FORMAT, MANIFEST_VERSION
from outline_vault.core.assets.richtext import (
    extract_file_id,
    is_node_list,
    parse_maybe_json,
    rewrite_html_refs,
    rewrite_images,
    stringify_nodes,
)
from outline_vault.core.tree.builder import load_forest
from outline_vault.errors import NotFoundError
from outline_vault.models.node import Asset, Node, TreeNode
from outline_vault.protocols import ContentStoreProtocol


def manifest_asset_id(digest: str) -> str:
    return f"asset_{digest[:16]}"


class _AssetCollector:
    """Per-build cache of manifest assets, keyed by live id and by digest."""

    def __init__(self, store: ContentStoreProtocol) -> None:
        self.store = store
        self.assets: list[dict[str, Any]] = []
        self._by_file_id: dict[int, dict[str, Any] | None] = {}
        self._by_digest: dict[str, dict[str, Any]] = {}

    def resolve(self, file_id: int) -> dict[str, Any] | None:
        if file_id in self._by_file_id:
            return self._by_file_id[file_id]
        entry = self._load(file_id)
        self._by_file_id[file_id] = entry
        return entry

    def _load(self, file_id: int) -> dict[str, Any] | None:
        asset = self.store.get(file_id)
        if asset is None:
            logger.warning("Export: file {} referenced but not found, keeping live URL", file_id)
            return None
        if asset.digest in self._by_digest:
            return self._by_digest[asset.digest]
        try:
            data = self.store.read_bytes(asset)
        except NotFoundError:
            logger.warning("Export: blob for file {} missing, keeping live URL", file_id)
            return None
        if len(data) != asset.size_bytes or hashlib.sha256(data).hexdigest() != asset.digest:
            logger.warning("Export: blob for file {} is corrupt, keeping live URL", file_id)
            return None
        entry = _manifest_asset(asset, data)
        self._by_digest[asset.digest] = entry
        self.assets.append(entry)
        return entry


def _manifest_asset(asset: Asset, data: bytes) -> dict[str, Any]:
    return {
        "id": manifest_asset_id(asset.digest),
        "filename": asset.original_name or asset.stored_name,
        "mimeType": asset.mime_type,
        "bytes": len(data),
        "sha256": asset.digest,
        "dataBase64": base64.b64encode(data).decode("ascii"),
    }


def _export_rich_text(nodes: list[Any], collector: _AssetCollector) -> list[Any]:
    def _rewrite(attrs: dict[str, Any]) -> dict[str, Any]:
        raw_id = str(attrs.get("data-file-id") or "")
        file_id = int(raw_id) if raw_id.isdigit() else None
        file_id = (
            file_id
            or extract_file_id(attrs.get("src"))
            or extract_file_id(attrs.get("data-file-path"))
        )
        if not file_id:
            return attrs
        entry = collector.resolve(file_id)
        if entry is None:
            return attrs
        attrs["src"] = f"{ASSET_SCHEME}{entry['id']}"
        attrs["data-asset-id"] = entry["id"]
        attrs.pop("data-file-id", None)
        attrs.pop("data-file-path", None)
        return attrs

    return rewrite_images(nodes, _rewrite)


def _export_html(html: str, collector: _AssetCollector) -> str:
    def _rewrite(attr: str, value: str) -> str | None:
        file_id = extract_file_id(value)
        if not file_id:
            return None
        entry = collector.resolve(file_id)
        return f"{ASSET_SCHEME}{entry['id']}" if entry else None

    return rewrite_html_refs(html, _rewrite)


def _walk(roots: list[TreeNode]) -> list[tuple[Node, str | None]]:
    """Nodes parents-first, each with the parent it has in the forest."""
    out: list[tuple[Node, str | None]] = []
    stack: list[tuple[TreeNode, str | None]] = [(r, None) for r in reversed(roots)]
    while stack:
        tree, parent_id = stack.pop()
        out.append((tree.node, parent_id))
        stack.extend((c, tree.id) for c in reversed(tree.children))
    return out


def build_export_manifest(
    conn: sqlite3.Connection, project_id: int, store: ContentStoreProtocol
) -> dict[str, Any]:
    """Build the manifest for every note of a project.

    Notes come out flat, parents before children, with ``parentId`` and
    ``position`` describing the tree. Two notes embedding the same bytes
    share one manifest asset.
    """
    collector = _AssetCollector(store)
    notes: list[dict[str, Any]] = []
    tag_names: set[str] = set()

    for n, parent_id in _walk(load_forest(conn, project_id)):
        tag_names.update(n.tags)
        if is_node_list(n.content):
            content = stringify_nodes(_export_rich_text(parse_maybe_json(n.content), collector))
            content_format = "json"
        else:
            content = _export_html(n.content, collector)
            content_format = "html"
        notes.append(
            {
                "id": n.id,
                "title": n.title,
                "contentFormat": content_format,
                "content": content,
                "tags": list(n.tags),
                "status": n.status,
                "parentId": parent_id,
                "position": n.position,
                "workedDates": list(n.worked_dates),
                "createdAt": n.created_at,
                "updatedAt": n.updated_at,
            }
        )

    manifest = {
        "format": MANIFEST_FORMAT,
        "version": MANIFEST_VERSION,
        "exportedAt": datetime.now(tz=UTC).isoformat(timespec="milliseconds"),
        "entities": {
            "notes": notes,
            "tags": [{"id": f"tag_{name}", "name": name} for name in sorted(tag_names)],
        },
        "assets": collector.assets,
        "meta": {
            "projectId": project_id,
            "notesCount": len(notes),
            "assetsCount": len(collector.assets),
        },
    }
    logger.info("Built export manifest: {} notes, {} assets", len(notes), len(collector.assets))
    return manifest


def export_filename(now: datetime | None = None) -> str:
    """Suggested download filename for a manifest."""
    stamp = (now or datetime.now(tz=UTC)).strftime("%Y%m%d-%H%M%S")
    return f"outline-export-{stamp}.json"
