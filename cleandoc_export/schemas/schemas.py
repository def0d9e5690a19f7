"""Pydantic schemas for export options and API request/response serialization."""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from cleandoc_export.models.export_record import ExportStatus, ARTIFACT_TYPES

DELIVERY_CHANNELS = ("email", "sftp", "webhook")


# ---- Export options ----
class ExportOptions(BaseModel):
    """Options for one export run. ``None`` report flags fall back to tenant settings."""
    include_pdf: Optional[bool] = None
    include_csv: Optional[bool] = None
    delivery_channels: Optional[List[str]] = None  # None = every configured channel
    skip_delivery: bool = False
    triggered_by: Optional[str] = None

    @field_validator("delivery_channels")
    @classmethod
    def _known_channels(cls, value):
        if value is None:
            return value
        unknown = [c for c in value if c not in DELIVERY_CHANNELS]
        if unknown:
            raise ValueError(f"Unknown delivery channel(s): {', '.join(unknown)}")
        return value


# ---- Export ----
class ExportOut(BaseModel):
    id: str
    tenant_id: str
    report_date: str
    status: ExportStatus
    status_message: Optional[str] = None
    total_logs: int = 0
    completed_logs: int = 0
    failed_logs: int = 0
    total_steps: int = 0
    total_photos: int = 0
    total_size_bytes: int = 0
    processing_time_ms: Optional[int] = None
    email_sent_at: Optional[datetime] = None
    sftp_uploaded_at: Optional[datetime] = None
    webhook_sent_at: Optional[datetime] = None
    webhook_response_code: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class ExportDetailOut(ExportOut):
    pdf_sha256: Optional[str] = None
    csv_logs_sha256: Optional[str] = None
    csv_steps_sha256: Optional[str] = None
    csv_photos_sha256: Optional[str] = None
    manifest_sha256: Optional[str] = None
    checksums_sha256: Optional[str] = None
    zip_sha256: Optional[str] = None
    delivery_results: Optional[Dict[str, Any]] = None

class ExportListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    items: List[ExportOut] = []

class ExportRunResponse(BaseModel):
    export_id: str
    download_urls: Dict[str, Any]
    stats: Dict[str, int]
    processing_time_ms: int

class StorageStats(BaseModel):
    total_objects: int
    total_size_bytes: int
    oldest_file: Optional[str] = None
    newest_file: Optional[str] = None

class ExportStatsResponse(BaseModel):
    total_exports: int
    by_status: Dict[str, int]
    total_size_bytes: int
    last_export: Optional[ExportOut] = None
    storage: Optional[StorageStats] = None

class DownloadUrlRequest(BaseModel):
    file_type: str
    expires_in: int = Field(default=86400, ge=300, le=86400)

    @field_validator("file_type")
    @classmethod
    def _known_file_type(cls, value: str) -> str:
        if value not in ARTIFACT_TYPES:
            raise ValueError(f"file_type must be one of: {', '.join(ARTIFACT_TYPES)}")
        return value

class DownloadUrlResponse(BaseModel):
    download_url: str
    expires_at: str
    file_type: str
    filename: str


# ---- Audit ----
class AuditEventOut(BaseModel):
    id: int
    actor_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    timestamp: str
    previous_hash: Optional[str] = None
    current_hash: str
    ip_address: Optional[str] = None
    status: str

    class Config:
        from_attributes = True

class IntegrityReport(BaseModel):
    valid: bool
    checked: int = 0
    errors: List[Dict[str, Any]] = []


# ---- Generic ----
class MessageResponse(BaseModel):
    message: str
    detail: Optional[Any] = None
