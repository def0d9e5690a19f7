"""Data access for tenant settings, daily activity records and export records."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from cleandoc_export.core.config import settings
from cleandoc_export.core.exceptions import ResourceNotFoundError, ValidationError
from cleandoc_export.models.activity import CleaningLog
from cleandoc_export.models.export_record import ExportRecord, ExportStatus
from cleandoc_export.models.tenant import TenantExportSettings


def parse_report_date(report_date: str) -> date:
    """Validate a ``YYYY-MM-DD`` report date."""
    try:
        parsed = date.fromisoformat(report_date)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid report date '{report_date}', expected YYYY-MM-DD")
    if parsed.isoformat() != report_date:
        raise ValidationError(f"Invalid report date '{report_date}', expected YYYY-MM-DD")
    return parsed


class DataService:
    """Read side of the pipeline plus export-record queries."""

    # ---- Tenants ----

    @staticmethod
    def get_tenant_settings(db: Session, tenant_id: str) -> TenantExportSettings:
        """Stored settings, or transient defaults when the tenant has none."""
        tenant = db.query(TenantExportSettings).filter(
            TenantExportSettings.tenant_id == tenant_id
        ).first()
        if tenant is None:
            return TenantExportSettings.defaults_for(tenant_id, settings.DEFAULT_RETENTION_DAYS)
        return tenant

    @staticmethod
    def list_export_tenants(db: Session) -> List[TenantExportSettings]:
        """Active tenants with exports enabled, in stable order."""
        return (
            db.query(TenantExportSettings)
            .filter(TenantExportSettings.active.is_(True))
            .filter(TenantExportSettings.export_enabled.is_(True))
            .order_by(TenantExportSettings.tenant_id)
            .all()
        )

    @staticmethod
    def list_active_tenants(db: Session) -> List[TenantExportSettings]:
        return (
            db.query(TenantExportSettings)
            .filter(TenantExportSettings.active.is_(True))
            .order_by(TenantExportSettings.tenant_id)
            .all()
        )

    # ---- Activity records ----

    @staticmethod
    def load_daily_records(
        db: Session, tenant: TenantExportSettings, report_date: str
    ) -> List[Dict[str, Any]]:
        """Cleaning logs started on ``report_date`` (UTC), as plain dicts."""
        day = parse_report_date(report_date)
        start = datetime(day.year, day.month, day.day)
        end = start + timedelta(days=1)
        logs = (
            db.query(CleaningLog)
            .filter(CleaningLog.tenant_id == tenant.tenant_id)
            .filter(CleaningLog.started_at >= start, CleaningLog.started_at < end)
            .order_by(CleaningLog.started_at.asc(), CleaningLog.id.asc())
            .all()
        )
        customer = {"name": tenant.company_name or "", "location": tenant.company_location or ""}
        return [DataService.record_to_dict(log, customer) for log in logs]

    @staticmethod
    def record_to_dict(log: CleaningLog, customer: Dict[str, str]) -> Dict[str, Any]:
        return {
            "id": log.id,
            "cleaning_plan_id": log.cleaning_plan_id,
            "customer": customer,
            "site_name": log.site_name,
            "area_name": log.area_name,
            "status": log.status,
            "started_at": log.started_at,
            "completed_at": log.completed_at,
            "created_by": log.created_by,
            "worker_name": log.worker_name,
            "approved_by": log.approved_by,
            "pdf_s3_key": log.pdf_s3_key,
            "pdf_sha256": log.pdf_sha256,
            "steps": [
                {
                    "id": step.id,
                    "sequence": step.sequence,
                    "name": step.name,
                    "chemical": step.chemical,
                    "dwell_time": step.dwell_time_seconds,
                    "status": step.status,
                    "notes": step.notes,
                    "completed_at": step.completed_at,
                    "completed_by": step.completed_by,
                    "worker_name": step.worker_name,
                    "photos": [
                        {
                            "id": photo.id,
                            "s3_key": photo.s3_key,
                            "sha256": photo.sha256_hash,
                            "width": photo.width,
                            "height": photo.height,
                            "content_type": photo.content_type,
                            "taken_at": photo.taken_at,
                            "uploaded_by": photo.uploaded_by,
                        }
                        for photo in step.photos
                    ],
                }
                for step in log.steps
            ],
            "signatures": [
                {
                    "role": sig.signed_role,
                    "signer_name": sig.signer_name,
                    "signed_by_user_id": sig.signed_by_user_id,
                    "signed_at": sig.signed_at,
                }
                for sig in log.signatures
            ],
        }

    # ---- Export records ----

    @staticmethod
    def find_export(db: Session, tenant_id: str, report_date: str) -> Optional[ExportRecord]:
        return db.query(ExportRecord).filter(
            ExportRecord.tenant_id == tenant_id,
            ExportRecord.report_date == report_date,
        ).first()

    @staticmethod
    def get_export(db: Session, export_id: str, tenant_id: Optional[str] = None) -> ExportRecord:
        query = db.query(ExportRecord).filter(ExportRecord.id == export_id)
        if tenant_id is not None:
            query = query.filter(ExportRecord.tenant_id == tenant_id)
        record = query.first()
        if not record:
            raise ResourceNotFoundError(f"Export {export_id} not found")
        return record

    @staticmethod
    def list_exports(
        db: Session,
        tenant_id: str,
        status: Optional[ExportStatus] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        limit: int = 30,
        offset: int = 0,
    ) -> Dict[str, Any]:
        query = db.query(ExportRecord).filter(ExportRecord.tenant_id == tenant_id)
        if status:
            query = query.filter(ExportRecord.status == status)
        if from_date:
            query = query.filter(ExportRecord.report_date >= parse_report_date(from_date).isoformat())
        if to_date:
            query = query.filter(ExportRecord.report_date <= parse_report_date(to_date).isoformat())

        total = query.count()
        items = (
            query.order_by(ExportRecord.report_date.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {"total": total, "limit": limit, "offset": offset, "items": items}

    @staticmethod
    def export_stats(db: Session, tenant_id: str) -> Dict[str, Any]:
        rows = (
            db.query(ExportRecord.status, func.count(ExportRecord.id), func.sum(ExportRecord.total_size_bytes))
            .filter(ExportRecord.tenant_id == tenant_id)
            .group_by(ExportRecord.status)
            .all()
        )
        by_status = {status.value: 0 for status in ExportStatus}
        total_bytes = 0
        for status, count, size in rows:
            by_status[ExportStatus(status).value] = count
            total_bytes += size or 0
        last_export = (
            db.query(ExportRecord)
            .filter(ExportRecord.tenant_id == tenant_id)
            .order_by(ExportRecord.report_date.desc())
            .first()
        )
        return {
            "total_exports": sum(by_status.values()),
            "by_status": by_status,
            "total_size_bytes": total_bytes,
            "last_export": last_export,
        }

    @staticmethod
    def delete_export(db: Session, record: ExportRecord) -> None:
        db.delete(record)
        db.commit()

    @staticmethod
    def delete_expired_exports(
        db: Session, tenant_id: str, retention_days: int, now: Optional[datetime] = None
    ) -> int:
        """Remove export records whose report date is past the retention window."""
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        cutoff = (now - timedelta(days=retention_days)).date().isoformat()
        deleted = (
            db.query(ExportRecord)
            .filter(ExportRecord.tenant_id == tenant_id, ExportRecord.report_date < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


data_service = DataService()
