"""Daily export lifecycle record."""

import enum
import json

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime, Enum, UniqueConstraint, func,
)
from cleandoc_export.db.base import Base


class ExportStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Artifact types tracked per export; each gets <type>_s3_key/_sha256/_size_bytes.
ARTIFACT_TYPES = ("pdf", "csv_logs", "csv_steps", "csv_photos", "manifest", "checksums", "zip")


class ExportRecord(Base):
    """One daily export run for a (tenant, report date) pair.

    Only the export orchestrator writes this row. Once the status is terminal
    the artifact columns are frozen; delivery columns may still be filled in.
    """
    __tablename__ = "daily_exports"
    __table_args__ = (
        UniqueConstraint("tenant_id", "report_date", name="uq_daily_exports_tenant_date"),
    )

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    report_date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    status = Column(Enum(ExportStatus), nullable=False, default=ExportStatus.PENDING, index=True)
    status_message = Column(String(255), nullable=True)
    triggered_by = Column(String(64), nullable=True)

    pdf_s3_key = Column(String(1000), nullable=True)
    pdf_sha256 = Column(String(64), nullable=True)
    pdf_size_bytes = Column(BigInteger, nullable=True)
    csv_logs_s3_key = Column(String(1000), nullable=True)
    csv_logs_sha256 = Column(String(64), nullable=True)
    csv_logs_size_bytes = Column(BigInteger, nullable=True)
    csv_steps_s3_key = Column(String(1000), nullable=True)
    csv_steps_sha256 = Column(String(64), nullable=True)
    csv_steps_size_bytes = Column(BigInteger, nullable=True)
    csv_photos_s3_key = Column(String(1000), nullable=True)
    csv_photos_sha256 = Column(String(64), nullable=True)
    csv_photos_size_bytes = Column(BigInteger, nullable=True)
    manifest_s3_key = Column(String(1000), nullable=True)
    manifest_sha256 = Column(String(64), nullable=True)
    manifest_size_bytes = Column(BigInteger, nullable=True)
    checksums_s3_key = Column(String(1000), nullable=True)
    checksums_sha256 = Column(String(64), nullable=True)
    checksums_size_bytes = Column(BigInteger, nullable=True)
    zip_s3_key = Column(String(1000), nullable=True)
    zip_sha256 = Column(String(64), nullable=True)
    zip_size_bytes = Column(BigInteger, nullable=True)

    total_logs = Column(Integer, default=0, nullable=False)
    completed_logs = Column(Integer, default=0, nullable=False)
    failed_logs = Column(Integer, default=0, nullable=False)
    total_steps = Column(Integer, default=0, nullable=False)
    total_photos = Column(Integer, default=0, nullable=False)
    total_size_bytes = Column(BigInteger, default=0, nullable=False)
    processing_time_ms = Column(Integer, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)

    email_sent_at = Column(DateTime, nullable=True)
    email_recipients_json = Column(Text, nullable=True)
    sftp_uploaded_at = Column(DateTime, nullable=True)
    webhook_sent_at = Column(DateTime, nullable=True)
    webhook_response_code = Column(Integer, nullable=True)
    delivery_results_json = Column(Text, nullable=True)
    download_urls_json = Column(Text, nullable=True)

    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExportStatus.COMPLETED, ExportStatus.FAILED)

    @property
    def delivery_results(self):
        return json.loads(self.delivery_results_json) if self.delivery_results_json else None

    @property
    def download_urls(self):
        return json.loads(self.download_urls_json) if self.download_urls_json else None

    def artifact(self, artifact_type: str) -> dict:
        """Storage key, hash and size for one artifact type."""
        if artifact_type not in ARTIFACT_TYPES:
            raise KeyError(artifact_type)
        return {
            "s3_key": getattr(self, f"{artifact_type}_s3_key"),
            "sha256": getattr(self, f"{artifact_type}_sha256"),
            "size_bytes": getattr(self, f"{artifact_type}_size_bytes"),
        }
