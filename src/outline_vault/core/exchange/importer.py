"""Import a portable manifest into a project.

Everything that can be checked without writing is checked first: the
manifest structure, note ids, the parent graph, asset references and every
asset's length and SHA-256. Only then are assets stored and notes inserted.
"""

import base64
import binascii
import hashlib
import json
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pydantic
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from outline_vault.config import ASSET_SCHEME, CAUSE_AUTOSAVE, DEFAULT_TITLE
from outline_vault.core.assets.richtext import (
    is_node_list,
    parse_maybe_json,
    rewrite_html_refs,
    rewrite_images,
    stringify_nodes,
)
from outline_vault.core.database.schema import transaction
from outline_vault.core.outline.reconciler import insert_node, new_node_id, normalize_dates
from outline_vault.core.versioning.store import record_version_locked
from outline_vault.errors import NotFoundError, ValidationError
from outline_vault.models.node import Asset, ImportStats
from outline_vault.protocols import ContentStoreProtocol

_ASSET_REF_RE = re.compile(re.escape(ASSET_SCHEME) + r"([A-Za-z0-9_\-]+)")


class ManifestAsset(BaseModel):
    """An inlined binary asset."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    filename: str = "asset"
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    size: int | None = Field(default=None, alias="bytes", ge=0)
    sha256: str | None = None
    data_base64: str = Field(alias="dataBase64", min_length=1)


class ManifestNote(BaseModel):
    """A flattened note; ``parent_id`` and ``position`` place it in the tree."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    title: str = ""
    content_format: str = Field(default="json", alias="contentFormat")
    content: str | list[Any] = ""
    tags: list[str] = Field(default_factory=list)
    status: str = ""
    parent_id: str | None = Field(default=None, alias="parentId")
    position: int | None = None
    worked_dates: list[str] = Field(default_factory=list, alias="workedDates")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    @field_validator("content_format")
    @classmethod
    def _normalize_format(cls, value: str) -> str:
        value = (value or "").lower()
        return value if value in ("json", "html", "markdown", "plaintext") else "json"


class ManifestEntities(BaseModel):
    notes: list[ManifestNote] = Field(default_factory=list)
    tags: list[dict[str, Any]] = Field(default_factory=list)


class Manifest(BaseModel):
    """Top-level manifest document."""

    model_config = ConfigDict(populate_by_name=True)

    format: str | None = None
    version: str
    exported_at: str | None = Field(default=None, alias="exportedAt")
    entities: ManifestEntities
    assets: list[ManifestAsset] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def _supported_version(cls, value: str) -> str:
        if value.split(".")[0] != "1":
            msg = f"unsupported manifest version {value!r}"
            raise ValueError(msg)
        return value


@dataclass(frozen=True)
class _DecodedAsset:
    entry: ManifestAsset
    data: bytes


def load_manifest(path: str | Path) -> dict[str, Any]:
    """Read a manifest JSON file."""
    src = Path(path)
    try:
        text = src.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        msg = f"Manifest not found: {str(src)!r}"
        raise NotFoundError(msg) from e
    try:
        return json.loads(text)
    except ValueError as e:
        msg = f"Manifest is not valid JSON: {e}"
        raise ValidationError(msg) from e


def parse_manifest(data: Any) -> Manifest:
    """Structural validation; raises ValidationError with the first problems."""
    try:
        return Manifest.model_validate(data)
    except pydantic.ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:3]
        ]
        msg = f"Manifest validation failed: {'; '.join(problems)}"
        raise ValidationError(msg) from e


def _decode_asset(entry: ManifestAsset) -> _DecodedAsset:
    try:
        data = base64.b64decode(entry.data_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        msg = f"Asset {entry.id} failed base64 decode: {e}"
        raise ValidationError(msg, asset_id=entry.id) from e
    if entry.size is not None and entry.size != len(data):
        msg = f"Asset {entry.id} byte length mismatch: declared {entry.size}, got {len(data)}"
        raise ValidationError(msg, asset_id=entry.id)
    if entry.sha256:
        digest = hashlib.sha256(data).hexdigest()
        if digest != entry.sha256.lower():
            msg = f"Asset {entry.id} sha256 mismatch"
            raise ValidationError(msg, asset_id=entry.id)
    return _DecodedAsset(entry=entry, data=data)


def _raw_content(note: ManifestNote) -> str:
    if isinstance(note.content, list):
        return stringify_nodes(note.content)
    return note.content


def _asset_refs(note: ManifestNote) -> set[str]:
    text = _raw_content(note)
    refs = set(_ASSET_REF_RE.findall(text))
    if note.content_format == "json" and is_node_list(text):

        def _collect(attrs: dict[str, Any]) -> dict[str, Any]:
            if isinstance(attrs.get("data-asset-id"), str):
                refs.add(attrs["data-asset-id"])
            return attrs

        rewrite_images(parse_maybe_json(text), _collect)
    return refs


def _children_map(notes: list[ManifestNote]) -> dict[str | None, list[ManifestNote]]:
    """Group notes by parent; an unknown or self parent makes a note a root."""
    ids = {n.id for n in notes}
    children: dict[str | None, list[ManifestNote]] = {}
    for note in notes:
        parent = note.parent_id if note.parent_id in ids and note.parent_id != note.id else None
        children.setdefault(parent, []).append(note)
    for siblings in children.values():
        siblings.sort(key=lambda n: (n.position if n.position is not None else 0, n.id))
    return children


def _check_notes(notes: list[ManifestNote]) -> dict[str | None, list[ManifestNote]]:
    seen: set[str] = set()
    for note in notes:
        if note.id in seen:
            msg = f"Duplicate note id {note.id!r} in manifest"
            raise ValidationError(msg, node_id=note.id)
        seen.add(note.id)
        normalize_dates(note.worked_dates, node_id=note.id)

    children = _children_map(notes)
    reachable: set[str] = set()
    stack = [n.id for n in children.get(None, [])]
    while stack:
        node_id = stack.pop()
        reachable.add(node_id)
        stack.extend(c.id for c in children.get(node_id, []))
    for note in notes:
        if note.id not in reachable:
            msg = f"Note {note.id} is part of a parent cycle"
            raise ValidationError(msg, node_id=note.id)
    return children


def _import_content(note: ManifestNote, stored: dict[str, Asset]) -> str:
    text = _raw_content(note)
    if note.content_format == "json" and is_node_list(text):

        def _rewrite(attrs: dict[str, Any]) -> dict[str, Any]:
            src = attrs.get("src")
            asset_id = None
            if isinstance(src, str) and src.startswith(ASSET_SCHEME):
                asset_id = src[len(ASSET_SCHEME) :]
            elif isinstance(attrs.get("data-asset-id"), str):
                asset_id = attrs["data-asset-id"]
            if asset_id is None or asset_id not in stored:
                return attrs
            asset = stored[asset_id]
            attrs["src"] = asset.url
            attrs["data-file-id"] = str(asset.id)
            attrs["data-file-path"] = asset.url
            attrs.pop("data-asset-id", None)
            return attrs

        return stringify_nodes(rewrite_images(parse_maybe_json(text), _rewrite))

    def _rewrite_html(attr: str, value: str) -> str | None:
        if not value.startswith(ASSET_SCHEME):
            return None
        asset = stored.get(value[len(ASSET_SCHEME) :])
        return asset.url if asset else None

    return rewrite_html_refs(text, _rewrite_html)


def _max_root_position(conn: sqlite3.Connection, project_id: int) -> int:
    row = conn.execute(
        "SELECT MAX(position) FROM nodes WHERE project_id = ? AND parent_id IS NULL",
        (project_id,),
    ).fetchone()
    return row[0] if row and row[0] is not None else -1


def import_manifest(
    conn: sqlite3.Connection,
    project_id: int,
    store: ContentStoreProtocol,
    manifest: Any,
) -> ImportStats:
    """Import a manifest's notes and assets into a project.

    Notes get fresh ids and keep their tree; imported roots are appended
    after the project's existing roots. Asset bytes go through the content
    store, so bytes already present are not stored twice.

    Raises:
        ValidationError: Invalid structure, duplicate or cyclic notes, an
            unknown asset reference, or an asset whose length or digest does
            not match. Nothing has been written when this is raised.
    """
    parsed = parse_manifest(manifest)
    notes = parsed.entities.notes
    children = _check_notes(notes)

    decoded: dict[str, _DecodedAsset] = {}
    for entry in parsed.assets:
        if entry.id in decoded:
            msg = f"Duplicate asset id {entry.id!r} in manifest"
            raise ValidationError(msg, asset_id=entry.id)
        decoded[entry.id] = _decode_asset(entry)

    referenced: set[str] = set()
    for note in notes:
        for ref in _asset_refs(note):
            if ref not in decoded:
                msg = f"Note {note.id} references unknown asset {ref!r}"
                raise ValidationError(msg, node_id=note.id, asset_id=ref)
            referenced.add(ref)

    stored: dict[str, Asset] = {}
    for asset_id in sorted(referenced):
        item = decoded[asset_id]
        stored[asset_id] = store.put(
            item.data, mime_type=item.entry.mime_type, original_name=item.entry.filename
        )

    id_map: dict[str, str] = {}
    with transaction(conn):
        root_base = _max_root_position(conn, project_id) + 1
        stack: list[tuple[ManifestNote, str | None, int]] = [
            (root, None, root_base + idx)
            for idx, root in reversed(list(enumerate(children.get(None, []))))
        ]
        while stack:
            note, parent_id, position = stack.pop()
            node_id = new_node_id()
            id_map[note.id] = node_id
            insert_node(
                conn,
                node_id=node_id,
                project_id=project_id,
                parent_id=parent_id,
                title=note.title or DEFAULT_TITLE,
                status=note.status,
                content=_import_content(note, stored),
                position=position,
                worked_dates=normalize_dates(note.worked_dates, node_id=note.id),
                created_at=note.created_at,
                updated_at=note.updated_at,
            )
            kids = children.get(note.id, [])
            stack.extend(
                (kid, node_id, kid.position if kid.position is not None else idx)
                for idx, kid in reversed(list(enumerate(kids)))
            )
        record_version_locked(conn, project_id, CAUSE_AUTOSAVE, {"source": "import"})

    logger.info("Imported {} notes and {} assets", len(id_map), len(stored))
    return ImportStats(notes_imported=len(id_map), assets_processed=len(stored), id_map=id_map)
