"""Outline persistence, history and asset storage engine."""

from outline_vault.core.assets.store import ContentStore
from outline_vault.core.outline.reconciler import load_outline, save_outline
from outline_vault.core.versioning.restore import restore_version
from outline_vault.core.versioning.store import diff_between, list_history, record_version
from outline_vault.errors import (
    BlobMissingError,
    ConflictError,
    NotFoundError,
    OutlineVaultError,
    StorageUnavailable,
    ValidationError,
)

__all__ = [
    "BlobMissingError",
    "ConflictError",
    "ContentStore",
    "NotFoundError",
    "OutlineVaultError",
    "StorageUnavailable",
    "ValidationError",
    "diff_between",
    "list_history",
    "load_outline",
    "record_version",
    "restore_version",
    "save_outline",
]
