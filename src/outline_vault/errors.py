"""Exception taxonomy for the outline engine."""


class OutlineVaultError(Exception):
    """Base class for all engine errors."""


class ValidationError(OutlineVaultError):
    """Rejected input: malformed outline, invalid manifest, bad asset payload.

    Raised before anything is written, so the caller can fix the input and
    resubmit.
    """

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        asset_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.asset_id = asset_id

    def to_dict(self) -> dict[str, str]:
        out = {"error": str(self)}
        if self.node_id is not None:
            out["node_id"] = self.node_id
        if self.asset_id is not None:
            out["asset_id"] = self.asset_id
        return out


class NotFoundError(OutlineVaultError):
    """Unknown version, asset, or node outside the project."""


class BlobMissingError(NotFoundError):
    """The asset record exists but its blob is missing on disk."""


class ConflictError(OutlineVaultError):
    """Digest uniqueness race while inserting an asset row.

    Handled inside the content store; never surfaced to callers.
    """

    def __init__(self, digest: str) -> None:
        super().__init__(f"Asset with digest {digest} already exists")
        self.digest = digest


class StorageUnavailable(OutlineVaultError):
    """Disk or database failure. The transaction was rolled back."""
