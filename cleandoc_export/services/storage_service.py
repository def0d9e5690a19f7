"""Storage service — export artifacts in MinIO with hash metadata and presigned links."""

import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error
from minio.sse import SseS3

from cleandoc_export.core.config import settings
from cleandoc_export.core.exceptions import StorageError
from cleandoc_export.services.artifacts import Artifact, sha256_hex
from cleandoc_export.services.csv_export_service import format_iso8601

logger = logging.getLogger("cleandoc_export")

SYSTEM_TAG = "cleanidoc-export"
DELETE_BATCH_SIZE = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageService:
    """Uploads, presigns, verifies and expires export objects in MinIO."""

    def __init__(
        self,
        client: Optional[Minio] = None,
        bucket: Optional[str] = None,
        sse_enabled: Optional[bool] = None,
    ):
        self._client = client
        self.bucket = bucket or settings.MINIO_BUCKET
        self.sse_enabled = settings.STORAGE_SSE_ENABLED if sse_enabled is None else sse_enabled

    @property
    def client(self) -> Minio:
        if self._client is None:
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=settings.MINIO_SECURE,
            )
        return self._client

    def ensure_bucket(self) -> None:
        """Create the export bucket if it doesn't exist."""
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
        except S3Error as e:
            raise StorageError(f"Failed to ensure bucket {self.bucket}: {e}")

    @staticmethod
    def export_key(tenant_id: str, report_date: str, filename: str) -> str:
        year, month, day = report_date.split("-")
        return f"exports/{tenant_id}/{year}/{month}/{day}/{filename}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Upload bytes encrypted at rest, tagged with their SHA-256 and upload time."""
        digest = sha256_hex(data)
        uploaded_at = format_iso8601(_utcnow())
        object_metadata = {
            "sha256-hash": digest,
            "upload-timestamp": uploaded_at,
            "system": SYSTEM_TAG,
        }
        if metadata:
            object_metadata.update({k: str(v) for k, v in metadata.items()})

        try:
            self.client.put_object(
                self.bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=object_metadata,
                sse=SseS3() if self.sse_enabled else None,
            )
        except S3Error as e:
            raise StorageError(f"Upload of {key} failed: {e}")

        return {"key": key, "hash": digest, "size": len(data), "uploaded_at": uploaded_at}

    def presign(
        self,
        key: str,
        ttl_seconds: int = 86400,
        download_filename: Optional[str] = None,
    ) -> Dict[str, str]:
        """Generate a time-limited GET link for one object."""
        response_headers = None
        if download_filename:
            response_headers = {
                "response-content-disposition": f'attachment; filename="{download_filename}"'
            }
        try:
            url = self.client.presigned_get_object(
                self.bucket,
                key,
                expires=timedelta(seconds=ttl_seconds),
                response_headers=response_headers,
            )
        except S3Error as e:
            raise StorageError(f"Failed to generate presigned URL for {key}: {e}")
        expires_at = format_iso8601(_utcnow() + timedelta(seconds=ttl_seconds))
        return {"url": url, "expires_at": expires_at}

    def cleanup_expired(
        self,
        tenant_id: str,
        retention_days: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Delete every object under ``exports/<tenant>/`` older than the retention window.

        Deletion is batched; per-object failures are collected in ``errors``.
        """
        cutoff = (now or _utcnow()) - timedelta(days=retention_days)
        prefix = f"exports/{tenant_id}/"

        try:
            expired = [
                obj.object_name
                for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True)
                if obj.last_modified is not None and obj.last_modified < cutoff
            ]
        except S3Error as e:
            raise StorageError(f"Failed to list objects under {prefix}: {e}")

        errors = self.delete_objects(expired)
        deleted_count = len(expired) - len(errors)
        if expired:
            logger.info(
                "Retention cleanup for %s: %d deleted, %d errors", tenant_id, deleted_count, len(errors)
            )
        return {"deleted_count": deleted_count, "errors": errors}

    def delete_objects(self, keys: List[str]) -> List[Dict[str, str]]:
        """Remove objects in batches of ``DELETE_BATCH_SIZE``; returns per-object failures."""
        errors: List[Dict[str, str]] = []
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                for error in self.client.remove_objects(
                    self.bucket, [DeleteObject(name) for name in batch]
                ):
                    errors.append({"key": error.name, "error": error.message or error.code})
            except S3Error as e:
                errors.extend({"key": name, "error": str(e)} for name in batch)
        return errors

    def storage_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Object count, stored bytes and oldest/newest object time under ``exports/<tenant>/``."""
        prefix = f"exports/{tenant_id}/"
        stats = {"total_objects": 0, "total_size_bytes": 0, "oldest_file": None, "newest_file": None}
        try:
            for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True):
                stats["total_objects"] += 1
                stats["total_size_bytes"] += obj.size or 0
                modified = obj.last_modified
                if modified is None:
                    continue
                if stats["oldest_file"] is None or modified < stats["oldest_file"]:
                    stats["oldest_file"] = modified
                if stats["newest_file"] is None or modified > stats["newest_file"]:
                    stats["newest_file"] = modified
        except S3Error as e:
            raise StorageError(f"Failed to get storage stats for {prefix}: {e}")

        for field in ("oldest_file", "newest_file"):
            if stats[field] is not None:
                stats[field] = format_iso8601(stats[field])
        return stats

    # ------------------------------------------------------------------
    # Export helpers
    # ------------------------------------------------------------------

    def upload_daily_export(
        self, tenant_id: str, report_date: str, artifacts: Dict[str, Artifact]
    ) -> Dict[str, Dict[str, Any]]:
        """Upload every artifact under the tenant/date prefix, keyed by artifact type."""
        self.ensure_bucket()
        uploads = {}
        for artifact_type, artifact in artifacts.items():
            key = self.export_key(tenant_id, report_date, artifact.filename)
            result = self.upload(
                key,
                artifact.content,
                artifact.content_type,
                metadata={"tenant-id": tenant_id, "report-date": report_date, "file-type": artifact_type},
            )
            result["filename"] = artifact.filename
            uploads[artifact_type] = result
        return uploads

    def generate_download_urls(
        self, uploads: Dict[str, Dict[str, Any]], ttl_seconds: Optional[int] = None
    ) -> Dict[str, Dict[str, str]]:
        ttl = ttl_seconds or settings.PRESIGNED_URL_TTL_SECONDS
        urls = {}
        for artifact_type, upload in uploads.items():
            link = self.presign(upload["key"], ttl, download_filename=upload.get("filename"))
            urls[artifact_type] = {
                "download_url": link["url"],
                "expires_at": link["expires_at"],
                "filename": upload.get("filename"),
            }
        return urls

    def verify_object(self, key: str) -> Dict[str, Any]:
        """Re-hash a stored object and compare against its ``sha256-hash`` metadata."""
        try:
            stat = self.client.stat_object(self.bucket, key)
            response = self.client.get_object(self.bucket, key)
            try:
                data = response.read()
            finally:
                response.close()
                response.release_conn()
        except S3Error as e:
            raise StorageError(f"Failed to read {key}: {e}")

        metadata = stat.metadata or {}
        expected = metadata.get("x-amz-meta-sha256-hash") or metadata.get("sha256-hash")
        actual = sha256_hex(data)
        return {"key": key, "valid": expected == actual, "expected": expected, "actual": actual}

    def health_check(self) -> bool:
        """Check if MinIO is reachable."""
        try:
            self.client.bucket_exists(self.bucket)
            return True
        except Exception:
            return False


storage_service = StorageService()
