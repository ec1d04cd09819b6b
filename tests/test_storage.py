from __future__ import annotations

import hashlib

import pytest

from reportflow.core.storage import LocalObjectStorage, ObjectNotFound, StorageError


def test_local_put_reports_checksum_and_content_type(tmp_path):
    storage = LocalObjectStorage(tmp_path)
    stored = storage.put(
        key="reports/r1/files/a.csv", body=b"Amount\n10\n", content_type="text/csv"
    )

    assert stored.byte_size == 10
    assert stored.sha256 == hashlib.sha256(b"Amount\n10\n").hexdigest()
    assert stored.content_type == "text/csv"
    assert storage.get(key="reports/r1/files/a.csv") == b"Amount\n10\n"


def test_local_get_of_missing_key_raises_object_not_found(tmp_path):
    storage = LocalObjectStorage(tmp_path)
    with pytest.raises(ObjectNotFound):
        storage.get(key="reports/r1/proofs/missing.png")


def test_keys_escaping_the_root_are_rejected(tmp_path):
    storage = LocalObjectStorage(tmp_path / "root")
    with pytest.raises(StorageError):
        storage.put(key="../outside.txt", body=b"x")


def test_delete_many_removes_existing_and_ignores_missing_keys(tmp_path):
    storage = LocalObjectStorage(tmp_path)
    storage.put(key="reports/r1/proofs/a.png", body=b"a")
    storage.put(key="reports/r1/proofs/b.pdf", body=b"b")

    failed = storage.delete_many(
        keys=["reports/r1/proofs/a.png", "reports/r1/proofs/b.pdf", "reports/r1/proofs/c.jpg"]
    )

    assert failed == []
    assert not (tmp_path / "reports/r1/proofs/a.png").exists()
    assert not (tmp_path / "reports/r1/proofs/b.pdf").exists()
