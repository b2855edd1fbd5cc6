"""Content-addressed blob storage for embedded assets.

Blobs are deduplicated by SHA-256 digest: storing the same bytes twice, via
any path (inline paste, upload, manifest import), yields one ``files`` row
and one blob on disk. A repeated put also repairs a missing or truncated
blob.
"""

import base64
import binascii
import hashlib
import os
import re
import secrets
import sqlite3
import time
from pathlib import Path

from loguru import logger

from outline_vault.core.assets.richtext import DATA_URI_RE
from outline_vault.core.database.schema import now_iso
from outline_vault.errors import (
    BlobMissingError,
    ConflictError,
    NotFoundError,
    StorageUnavailable,
    ValidationError,
)
from outline_vault.models.node import Asset

DEFAULT_MIME_TYPE = "application/octet-stream"

EXTENSION_MAP: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/svg+xml": "svg",
    "image/avif": "avif",
    "image/heic": "heic",
    "image/heif": "heif",
    "application/pdf": "pdf",
    "application/json": "json",
    "application/zip": "zip",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/msword": "doc",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/csv": "csv",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
}

_SELECT_COLUMNS = "id, stored_name, original_name, mime_type, size_bytes, digest, created_at"


def sanitize_original_name(name: str | None) -> str | None:
    """Reduce a client-supplied filename to a safe basename."""
    if not name:
        return None
    base = Path(name.replace("\\", "/")).name
    return re.sub(r"[^a-zA-Z0-9._\-]", "_", base) or None


def extension_for(mime_type: str | None, original_name: str | None = None) -> str:
    """Pick a file extension from the MIME type, else from the original filename."""
    ext = EXTENSION_MAP.get((mime_type or "").lower())
    if ext:
        return ext
    return Path(original_name or "").suffix.lstrip(".").lower()


def generate_stored_name(extension: str) -> str:
    stamp = int(time.time() * 1000)
    suffix = f".{extension}" if extension else ""
    return f"{stamp}_{secrets.token_hex(6)}{suffix}"


def _row_to_asset(row: tuple) -> Asset:
    return Asset(
        id=row[0],
        stored_name=row[1],
        original_name=row[2],
        mime_type=row[3],
        size_bytes=row[4],
        digest=row[5],
        created_at=row[6],
    )


class ContentStore:
    """SQLite-indexed, content-addressed blob store.

    Blob writes happen outside any database transaction. They are idempotent,
    so a blob written without its row (or a row whose blob went missing) is
    repaired by the next put of the same bytes.
    """

    def __init__(self, conn: sqlite3.Connection, upload_dir: str | Path) -> None:
        self.conn = conn
        self.upload_dir = Path(upload_dir)

    def ensure_upload_dir(self) -> Path:
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Cannot create upload directory {str(self.upload_dir)!r}: {e}"
            raise StorageUnavailable(msg) from e
        return self.upload_dir

    def disk_path(self, asset: Asset) -> Path:
        return self.upload_dir / asset.stored_name

    def get(self, asset_id: int) -> Asset | None:
        row = self.conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM files WHERE id = ?", (asset_id,)
        ).fetchone()
        return _row_to_asset(row) if row else None

    def get_by_digest(self, digest: str) -> Asset | None:
        row = self.conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM files WHERE digest = ?", (digest,)
        ).fetchone()
        return _row_to_asset(row) if row else None

    def put(
        self,
        data: bytes,
        *,
        mime_type: str | None = None,
        original_name: str | None = None,
    ) -> Asset:
        """Store bytes and return their asset record.

        Identical bytes always resolve to the same record.
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            msg = f"Asset payload must be bytes, got {type(data).__name__}"
            raise ValidationError(msg)
        data = bytes(data)
        if not data:
            msg = "Asset payload is empty"
            raise ValidationError(msg)

        digest = hashlib.sha256(data).hexdigest()
        existing = self.get_by_digest(digest)
        if existing is not None:
            self._ensure_blob(existing, data)
            logger.debug("Asset {} deduplicated (digest {})", existing.id, digest[:12])
            return existing

        safe_name = sanitize_original_name(original_name)
        stored_name = generate_stored_name(extension_for(mime_type, safe_name))
        # Blob first: a failed write must not leave a row without a blob.
        self._write_blob(stored_name, data)
        try:
            asset = self._insert(
                stored_name=stored_name,
                original_name=safe_name,
                mime_type=mime_type or DEFAULT_MIME_TYPE,
                size_bytes=len(data),
                digest=digest,
            )
        except ConflictError:
            winner = self.get_by_digest(digest)
            if winner is None:
                raise
            logger.debug("Lost digest race for {}, using asset {}", digest[:12], winner.id)
            self._discard_blob(stored_name)
            self._ensure_blob(winner, data)
            return winner
        logger.info("Stored asset {} ({}, {} bytes)", asset.id, asset.mime_type, asset.size_bytes)
        return asset

    def put_data_uri(self, uri: str, *, original_name: str | None = None) -> Asset | None:
        """Store the payload of a ``data:<mime>;base64,...`` URI.

        Returns None when the value is not a base64 data URI.
        """
        m = DATA_URI_RE.match(uri or "")
        if not m:
            return None
        try:
            data = base64.b64decode(m.group(2), validate=False)
        except (binascii.Error, ValueError) as e:
            msg = f"Cannot decode data URI: {e}"
            raise ValidationError(msg) from e
        return self.put(data, mime_type=m.group(1), original_name=original_name)

    def put_file(
        self,
        path: str | Path,
        *,
        mime_type: str | None = None,
        original_name: str | None = None,
        remove: bool = True,
    ) -> Asset:
        """Store an uploaded temp file and (by default) remove it afterwards."""
        src = Path(path)
        try:
            data = src.read_bytes()
        except FileNotFoundError as e:
            msg = f"Upload not found: {str(src)!r}"
            raise ValidationError(msg) from e
        except OSError as e:
            msg = f"Cannot read upload {str(src)!r}: {e}"
            raise StorageUnavailable(msg) from e
        asset = self.put(data, mime_type=mime_type, original_name=original_name or src.name)
        if remove:
            src.unlink(missing_ok=True)
        return asset

    def read_bytes(self, asset: Asset) -> bytes:
        path = self.disk_path(asset)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            msg = f"Blob for asset {asset.id} missing on disk: {str(path)!r}"
            raise BlobMissingError(msg) from e
        except OSError as e:
            msg = f"Cannot read blob for asset {asset.id}: {e}"
            raise StorageUnavailable(msg) from e

    def open_file(self, asset_id: int) -> tuple[Asset, Path]:
        """Resolve an asset id to its record and blob path for serving.

        A missing record and a missing blob raise different errors.
        """
        asset = self.get(asset_id)
        if asset is None:
            msg = f"File {asset_id} not found"
            raise NotFoundError(msg)
        path = self.disk_path(asset)
        if not path.is_file():
            logger.error("File {} missing on disk: {}", asset_id, path)
            msg = f"File {asset_id} missing on disk"
            raise BlobMissingError(msg)
        return asset, path

    def _insert(
        self,
        *,
        stored_name: str,
        original_name: str | None,
        mime_type: str,
        size_bytes: int,
        digest: str,
    ) -> Asset:
        try:
            cur = self.conn.execute(
                """INSERT INTO files
                   (stored_name, original_name, mime_type, size_bytes, digest, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (stored_name, original_name, mime_type, size_bytes, digest, now_iso()),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(digest) from e
        except sqlite3.Error as e:
            msg = f"Cannot record asset: {e}"
            raise StorageUnavailable(msg) from e
        asset = self.get(cur.lastrowid)
        if asset is None:
            msg = f"Asset row {cur.lastrowid} vanished after insert"
            raise StorageUnavailable(msg)
        return asset

    def _ensure_blob(self, asset: Asset, data: bytes) -> None:
        path = self.disk_path(asset)
        try:
            if path.stat().st_size == asset.size_bytes:
                return
            logger.warning("Blob for asset {} has wrong size, rewriting", asset.id)
        except FileNotFoundError:
            logger.warning("Blob for asset {} missing, rewriting", asset.id)
        self._write_blob(asset.stored_name, data)

    def _write_blob(self, stored_name: str, data: bytes) -> Path:
        self.ensure_upload_dir()
        path = self.upload_dir / stored_name
        tmp = path.with_name(f".{stored_name}.{secrets.token_hex(4)}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            msg = f"Cannot write blob {stored_name!r}: {e}"
            raise StorageUnavailable(msg) from e
        return path

    def _discard_blob(self, stored_name: str) -> None:
        (self.upload_dir / stored_name).unlink(missing_ok=True)
