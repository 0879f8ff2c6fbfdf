from __future__ import annotations

import pytest


def test_upload_round_trip_and_delete(storage):
    stored = storage.put_upload(file_id="abc", blob=b"%PDF-1.7")
    assert stored.uri.startswith("file://")
    assert storage.get_bytes(uri=stored.uri) == b"%PDF-1.7"

    storage.delete_upload(file_id="abc")
    assert not (storage.root / "uploads" / "abc").exists()
    storage.delete_upload(file_id="abc")


def test_get_bytes_rejects_other_schemes(storage):
    with pytest.raises(ValueError):
        storage.get_bytes(uri="s3://bucket/key")


def test_json_state_is_written_atomically(storage):
    assert storage.get_json_if_exists(name="history.json") is None
    storage.put_json_atomic(name="history.json", obj=[{"a": 1}])
    assert storage.get_json_if_exists(name="history.json") == [{"a": 1}]
    assert not (storage.root / "state" / "history.json.tmp").exists()


def test_archive_path_refuses_traversal(storage):
    storage.put_archive(name="smart_split_batch_x.zip", blob=b"PK")
    assert storage.archive_path("smart_split_batch_x.zip").read_bytes() == b"PK"
    with pytest.raises(ValueError):
        storage.archive_path("../state/history.json")
