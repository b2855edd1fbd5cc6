"""Resolve stored assets for the file-serving endpoint."""

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from outline_vault.core.assets.store import ContentStore
from outline_vault.models.node import Asset


@dataclass(frozen=True)
class FileResponse:
    """What an HTTP layer needs to stream an asset."""

    asset: Asset
    path: Path
    media_type: str
    headers: dict[str, str]


def content_disposition(filename: str, *, download: bool) -> str:
    kind = "attachment" if download else "inline"
    ascii_name = filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    return f"{kind}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def file_response(store: ContentStore, asset_id: int, *, download: bool = False) -> FileResponse:
    """Resolve an asset id for serving.

    Raises:
        NotFoundError: No such asset.
        BlobMissingError: The record exists but the blob is gone.
    """
    asset, path = store.open_file(asset_id)
    filename = asset.original_name or asset.stored_name
    return FileResponse(
        asset=asset,
        path=path,
        media_type=asset.mime_type,
        headers={
            "Content-Type": asset.mime_type,
            "Content-Length": str(asset.size_bytes),
            "Content-Disposition": content_disposition(filename, download=download),
        },
    )
