"""Tests for local receipt storage."""

import pytest

from bursar.services.exceptions import ResourceNotFound, ValidationError
from bursar.services.file_storage import LocalReceiptStorage


class TestLocalReceiptStorage:

    def test_existing_file(self, tmp_path):
        (tmp_path / "receipts").mkdir()
        (tmp_path / "receipts" / "r1.jpg").write_bytes(b"\xff\xd8jpeg")
        storage = LocalReceiptStorage(tmp_path)
        assert storage.exists("receipts/r1.jpg") is True
        with storage.open("receipts/r1.jpg") as fh:
            assert fh.read() == b"\xff\xd8jpeg"

    def test_missing_file(self, tmp_path):
        storage = LocalReceiptStorage(tmp_path)
        assert storage.exists("nope.pdf") is False
        with pytest.raises(ResourceNotFound):
            storage.open("nope.pdf")

    def test_directory_is_not_a_receipt(self, tmp_path):
        (tmp_path / "receipts").mkdir()
        assert LocalReceiptStorage(tmp_path).exists("receipts") is False

    @pytest.mark.parametrize("path", ["../secret.txt", "a/../../etc/passwd"])
    def test_path_traversal_rejected(self, tmp_path, path):
        with pytest.raises(ValidationError, match="escapes"):
            LocalReceiptStorage(tmp_path / "uploads").exists(path)

    @pytest.mark.parametrize("path", ["", "bad\x00name"])
    def test_malformed_path(self, tmp_path, path):
        with pytest.raises(ValidationError, match="empty or malformed"):
            LocalReceiptStorage(tmp_path).exists(path)
