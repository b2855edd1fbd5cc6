"""Tests for domain models and error types."""

import pytest

from outline_vault.errors import BlobMissingError, NotFoundError, ValidationError
from outline_vault.models.node import Asset, DiffResult, SaveResult


def test_asset_is_frozen_and_has_quoted_url() -> None:
    asset = Asset(
        id=3,
        stored_name="1_ab cd.png",
        original_name=None,
        mime_type="image/png",
        size_bytes=1,
        digest="0" * 64,
        created_at="t",
    )
    assert asset.url == "/files/3/1_ab%20cd.png"
    with pytest.raises(AttributeError):
        asset.id = 4  # type: ignore[misc]


def test_save_result_to_dict() -> None:
    result = SaveResult(id_remap={"new-1": "u1"}, deleted_ids=("x",), version_id=7)
    assert result.to_dict() == {
        "ok": True,
        "newIdMap": {"new-1": "u1"},
        "deleted": ["x"],
        "versionId": 7,
    }


def test_diff_result_summary() -> None:
    diff = DiffResult(added=({"id": "a", "title": "A"},), removed=(), modified=())
    assert diff.to_dict()["summary"] == {"added": 1, "removed": 0, "modified": 0}


def test_validation_error_to_dict() -> None:
    err = ValidationError("bad", node_id="n1")
    assert err.to_dict() == {"error": "bad", "node_id": "n1"}
    assert ValidationError("bad asset", asset_id="a1").to_dict() == {
        "error": "bad asset",
        "asset_id": "a1",
    }


def test_blob_missing_is_not_found() -> None:
    assert issubclass(BlobMissingError, NotFoundError)
