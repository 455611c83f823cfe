"""Tests for blob storage and signed download references."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from settlement.errors import NotFound, StorageUnavailable
from settlement.storage.files import batch_csv_path, upload_path
from tests.conftest import NOW


class TestFileStore:
    def test_save_and_load(self, files):
        files.save_text("a/b.csv", "x,y\n")
        assert files.exists("a/b.csv")
        assert files.load_text("a/b.csv") == "x,y\n"

    def test_missing_file(self, files):
        with pytest.raises(NotFound):
            files.load_bytes("nope.csv")

    def test_signed_url_round_trip(self, files):
        files.save_text("a/b.csv", "x")
        signed = files.signed_url("a/b.csv", now=NOW)
        assert signed.expires_at == NOW + timedelta(seconds=600)
        assert signed.url.startswith("https://files.test/a/b.csv?")
        query = parse_qs(urlparse(signed.url).query)
        expires = int(query["expires"][0])
        signature = query["signature"][0]
        assert files.verify_signature("a/b.csv", expires, signature, now=NOW)
        assert not files.verify_signature("a/other.csv", expires, signature, now=NOW)
        assert not files.verify_signature("a/b.csv", expires, signature, now=NOW + timedelta(hours=1))

    def test_signed_url_requires_file(self, files):
        with pytest.raises(NotFound) as exc_info:
            files.signed_url("missing.csv", now=NOW)
        assert exc_info.value.code == "FILE_NOT_FOUND"

    def test_outage(self, files):
        files.available = False
        with pytest.raises(StorageUnavailable):
            files.save_text("a.csv", "x")


class TestPaths:
    def test_batch_path(self):
        assert batch_csv_path("biz-1", 2026, 9, "b1") == "biz-1/2026-W09/b1/batch.csv"

    def test_upload_path(self):
        assert upload_path("biz-1", "s1", "u1") == "biz-1/sessions/s1/uploads/u1.csv"
