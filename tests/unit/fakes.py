"""Fake implementations for testing the outline engine."""

import base64
import hashlib
from pathlib import Path

from outline_vault.core.assets.richtext import DATA_URI_RE
from outline_vault.errors import BlobMissingError
from outline_vault.models.node import Asset


class FakeContentStore:
    """In-memory fake for ContentStore.

    Deduplicates by digest like the real store and records every put so
    tests can assert how often bytes were stored.
    """

    def __init__(self) -> None:
        self.assets: dict[int, Asset] = {}
        self.blobs: dict[int, bytes] = {}
        self.puts: list[bytes] = []
        self.missing: set[int] = set()

    def put(
        self,
        data: bytes,
        *,
        mime_type: str | None = None,
        original_name: str | None = None,
    ) -> Asset:
        self.puts.append(data)
        digest = hashlib.sha256(data).hexdigest()
        for asset in self.assets.values():
            if asset.digest == digest:
                return asset
        asset_id = len(self.assets) + 1
        asset = Asset(
            id=asset_id,
            stored_name=f"blob-{asset_id}.bin",
            original_name=original_name,
            mime_type=mime_type or "application/octet-stream",
            size_bytes=len(data),
            digest=digest,
            created_at="2024-01-01T00:00:00.000+00:00",
        )
        self.assets[asset_id] = asset
        self.blobs[asset_id] = data
        return asset

    def put_data_uri(self, uri: str, *, original_name: str | None = None) -> Asset | None:
        m = DATA_URI_RE.match(uri or "")
        if not m:
            return None
        data = base64.b64decode(m.group(2))
        return self.put(data, mime_type=m.group(1), original_name=original_name)

    def get(self, asset_id: int) -> Asset | None:
        return self.assets.get(asset_id)

    def read_bytes(self, asset: Asset) -> bytes:
        if asset.id in self.missing:
            msg = f"Blob for asset {asset.id} missing"
            raise BlobMissingError(msg)
        return self.blobs[asset.id]

    def disk_path(self, asset: Asset) -> Path:
        return Path("/fake") / asset.stored_name
