"""Protocols for dependency injection in the outline engine."""

from pathlib import Path
from typing import Protocol, runtime_checkable

from outline_vault.models.node import Asset


@runtime_checkable
class ContentStoreProtocol(Protocol):
    """Protocol for content-addressed asset stores."""

    def put(
        self,
        data: bytes,
        *,
        mime_type: str | None = None,
        original_name: str | None = None,
    ) -> Asset:
        """Store bytes, returning the (possibly pre-existing) asset."""
        ...

    def put_data_uri(self, uri: str, *, original_name: str | None = None) -> Asset | None:
        """Store a base64 data URI, returning None if it is not one."""
        ...

    def get(self, asset_id: int) -> Asset | None:
        """Look up an asset by id."""
        ...

    def read_bytes(self, asset: Asset) -> bytes:
        """Read the blob of an asset."""
        ...

    def disk_path(self, asset: Asset) -> Path:
        """Return where the blob of an asset lives."""
        ...
