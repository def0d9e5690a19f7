"""Models package — import all models so metadata.create_all can discover them."""

from cleandoc_export.models.tenant import TenantExportSettings
from cleandoc_export.models.activity import (
    CleaningLog, CleaningLogStep, LogStepPhoto, LogSignature
)
from cleandoc_export.models.export_record import ExportRecord, ExportStatus, ARTIFACT_TYPES
from cleandoc_export.models.audit_event import AuditEvent
from cleandoc_export.models.smtp_config import SmtpConfig

__all__ = [
    "TenantExportSettings",
    "CleaningLog", "CleaningLogStep", "LogStepPhoto", "LogSignature",
    "ExportRecord", "ExportStatus", "ARTIFACT_TYPES",
    "AuditEvent", "SmtpConfig",
]
