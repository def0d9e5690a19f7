"""MinIO storage service tests (in-memory client)."""

from datetime import datetime, timedelta, timezone

import pytest
from minio.sse import SseS3

from cleandoc_export.services.artifacts import Artifact, sha256_hex
from cleandoc_export.services.storage_service import StorageService

NOW = datetime(2024, 3, 16, 3, 0, 0, tzinfo=timezone.utc)


@pytest.mark.unit
class TestUpload:
    """upload / upload_daily_export"""

    def test_upload_tags_hash_and_encrypts(self, storage, fake_minio):
        result = storage.upload("exports/t/2024/03/15/a.csv", b"hello", "text/csv")
        stored = fake_minio.objects["exports/t/2024/03/15/a.csv"]

        assert result["hash"] == sha256_hex(b"hello")
        assert result["size"] == 5
        assert result["uploaded_at"].endswith("Z")
        assert stored["metadata"]["sha256-hash"] == result["hash"]
        assert stored["metadata"]["system"] == "cleanidoc-export"
        assert "upload-timestamp" in stored["metadata"]
        assert isinstance(stored["sse"], SseS3)

    def test_sse_disabled(self, fake_minio):
        storage = StorageService(client=fake_minio, bucket="b", sse_enabled=False)
        storage.upload("k", b"x", "text/plain")
        assert fake_minio.objects["k"]["sse"] is None

    def test_export_key_layout(self):
        assert StorageService.export_key("tenant-1", "2024-03-15", "f.zip") == "exports/tenant-1/2024/03/15/f.zip"

    def test_upload_daily_export(self, storage, fake_minio):
        artifacts = {
            "csv_logs": Artifact("cleandoc_logs_2024-03-15_v1.csv", b"a;b\n", "text/csv"),
            "zip": Artifact("cleandoc_export_2024-03-15.zip", b"PK", "application/zip"),
        }
        uploads = storage.upload_daily_export("tenant-1", "2024-03-15", artifacts)

        assert "test-exports" in fake_minio.buckets
        assert uploads["zip"]["key"] == "exports/tenant-1/2024/03/15/cleandoc_export_2024-03-15.zip"
        assert uploads["zip"]["filename"] == "cleandoc_export_2024-03-15.zip"
        assert fake_minio.objects[uploads["csv_logs"]["key"]]["metadata"]["file-type"] == "csv_logs"


@pytest.mark.unit
class TestPresign:
    """presign / generate_download_urls"""

    def test_presign_sets_ttl_and_filename(self, storage, fake_minio):
        link = storage.presign("exports/t/x.pdf", 3600, download_filename="x.pdf")
        call = fake_minio.presign_calls[0]
        assert call["expires"] == timedelta(seconds=3600)
        assert call["response_headers"]["response-content-disposition"] == 'attachment; filename="x.pdf"'
        assert "X-Amz-Expires=3600" in link["url"]
        assert link["expires_at"].endswith("Z")

    def test_download_urls_default_24h(self, storage, fake_minio):
        uploads = {"pdf": {"key": "exports/t/r.pdf", "filename": "r.pdf"}}
        urls = storage.generate_download_urls(uploads)
        assert urls["pdf"]["filename"] == "r.pdf"
        assert "X-Amz-Expires=86400" in urls["pdf"]["download_url"]


@pytest.mark.unit
class TestRetentionCleanup:
    """cleanup_expired"""

    def test_old_objects_deleted_recent_kept(self, storage, fake_minio):
        fake_minio.put_raw("exports/tenant-1/2022/01/01/old.zip", b"old", NOW - timedelta(days=800))
        fake_minio.put_raw("exports/tenant-1/2022/04/01/recent.zip", b"new", NOW - timedelta(days=700))
        fake_minio.put_raw("exports/tenant-2/2022/01/01/other.zip", b"other", NOW - timedelta(days=800))

        result = storage.cleanup_expired("tenant-1", 730, now=NOW)

        assert result == {"deleted_count": 1, "errors": []}
        assert "exports/tenant-1/2022/01/01/old.zip" not in fake_minio.objects
        assert "exports/tenant-1/2022/04/01/recent.zip" in fake_minio.objects
        assert "exports/tenant-2/2022/01/01/other.zip" in fake_minio.objects

    def test_deletes_in_batches_of_1000(self, storage, fake_minio):
        for i in range(1500):
            fake_minio.put_raw(f"exports/tenant-1/old/{i:04d}.csv", b"x", NOW - timedelta(days=900))

        result = storage.cleanup_expired("tenant-1", 730, now=NOW)

        assert result["deleted_count"] == 1500
        assert [len(b) for b in fake_minio.delete_batches] == [1000, 500]

    def test_nothing_expired(self, storage, fake_minio):
        fake_minio.put_raw("exports/tenant-1/new.csv", b"x", NOW)
        assert storage.cleanup_expired("tenant-1", 730, now=NOW) == {"deleted_count": 0, "errors": []}
        assert fake_minio.delete_batches == []


@pytest.mark.unit
class TestStorageStats:
    """storage_stats"""

    def test_counts_tenant_objects_only(self, storage, fake_minio):
        fake_minio.put_raw("exports/tenant-a/2024/03/14/a.zip", b"abc", NOW - timedelta(days=2))
        fake_minio.put_raw("exports/tenant-a/2024/03/15/b.zip", b"defgh", NOW - timedelta(days=1))
        fake_minio.put_raw("exports/tenant-b/2024/03/15/c.zip", b"x" * 100, NOW)

        stats = storage.storage_stats("tenant-a")

        assert stats == {
            "total_objects": 2,
            "total_size_bytes": 8,
            "oldest_file": "2024-03-14T03:00:00.000Z",
            "newest_file": "2024-03-15T03:00:00.000Z",
        }

    def test_empty_prefix(self, storage):
        assert storage.storage_stats("nobody") == {
            "total_objects": 0, "total_size_bytes": 0, "oldest_file": None, "newest_file": None,
        }


@pytest.mark.unit
class TestVerify:
    """verify_object / health_check"""

    def test_intact_object(self, storage):
        storage.upload("exports/t/a.csv", b"payload", "text/csv")
        result = storage.verify_object("exports/t/a.csv")
        assert result["valid"] is True
        assert result["actual"] == sha256_hex(b"payload")

    def test_tampered_object(self, storage, fake_minio):
        storage.upload("exports/t/a.csv", b"payload", "text/csv")
        fake_minio.objects["exports/t/a.csv"]["data"] = b"changed"
        assert storage.verify_object("exports/t/a.csv")["valid"] is False

    def test_health_check(self, storage):
        assert storage.health_check() is True
