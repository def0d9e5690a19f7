"""Scheduler — daily per-tenant exports and the weekly retention sweep.

Tenants are processed one after another with a fixed pause in between. The
existence check against ``daily_exports`` (not the orchestrator's in-process
registry) is what keeps scheduled runs idempotent across restarts.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from celery.schedules import crontab, ParseException
from sqlalchemy.orm import Session

from cleandoc_export.core.config import settings
from cleandoc_export.core.exceptions import ValidationError
from cleandoc_export.db.session import SessionLocal
from cleandoc_export.schemas.schemas import ExportOptions
from cleandoc_export.services.audit_service import (
    audit_service, AuditService,
    SCHEDULED_EXPORT_FAILED, RETENTION_CLEANUP_COMPLETED, RETENTION_CLEANUP_FAILED,
)
from cleandoc_export.services.data_service import data_service, parse_report_date
from cleandoc_export.services.storage_service import storage_service, StorageService

logger = logging.getLogger("cleandoc_export")


def build_crontab(expression: str) -> crontab:
    """Turn a five- or six-field cron string into a Celery ``crontab``.

    A six-field expression carries a leading seconds field, which is dropped.
    """
    fields = (expression or "").split()
    if len(fields) == 6:
        fields = fields[1:]
    if len(fields) != 5:
        raise ValidationError(f"Invalid cron expression '{expression}': expected 5 or 6 fields")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ValueError, ParseException) as e:
        raise ValidationError(f"Invalid cron expression '{expression}': {e}")


class ExportScheduler:
    """Drives the orchestrator for every exporting tenant."""

    def __init__(
        self,
        orchestrator=None,
        session_factory: Callable[[], Session] = SessionLocal,
        storage: Optional[StorageService] = None,
        audit: Optional[AuditService] = None,
        pacing_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        timezone_name: Optional[str] = None,
    ):
        self._orchestrator = orchestrator
        self.session_factory = session_factory
        self.storage = storage or storage_service
        self.audit = audit or audit_service
        self.pacing_seconds = settings.TENANT_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        self.sleep = sleep
        self.timezone_name = timezone_name or settings.SCHEDULER_TIMEZONE

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from cleandoc_export.executor.orchestrator import export_orchestrator
            self._orchestrator = export_orchestrator
        return self._orchestrator

    def default_report_date(self, now: Optional[datetime] = None) -> str:
        """Yesterday in the scheduler timezone."""
        try:
            tz = ZoneInfo(self.timezone_name)
        except ZoneInfoNotFoundError:
            raise ValidationError(f"Unknown scheduler timezone '{self.timezone_name}'")
        local_now = now.astimezone(tz) if now else datetime.now(tz)
        return (local_now.date() - timedelta(days=1)).isoformat()

    # ------------------------------------------------------------------
    # Daily exports
    # ------------------------------------------------------------------

    def run_daily_exports(self, report_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Export ``report_date`` (default: yesterday) for every exporting tenant."""
        report_date = report_date or self.default_report_date()
        parse_report_date(report_date)

        db = self.session_factory()
        try:
            tenant_ids = [t.tenant_id for t in data_service.list_export_tenants(db)]
        finally:
            db.close()

        logger.info("📅 Daily export run for %s: %d tenant(s)", report_date, len(tenant_ids))
        results = []
        for index, tenant_id in enumerate(tenant_ids):
            if index > 0 and self.pacing_seconds > 0:
                self.sleep(self.pacing_seconds)
            results.append(self._export_tenant(tenant_id, report_date))
        return results

    def _export_tenant(self, tenant_id: str, report_date: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            existing = data_service.find_export(db, tenant_id, report_date)
            if existing is not None:
                logger.info("Skipping %s/%s: export %s is %s", tenant_id, report_date,
                            existing.id, existing.status.value)
                return {"tenant_id": tenant_id, "status": "skipped", "export_id": existing.id}
        finally:
            db.close()

        try:
            result = self.orchestrator.generate_daily_export(
                tenant_id, report_date, ExportOptions(triggered_by=None)
            )
        except Exception as e:
            logger.error("Scheduled export failed for %s/%s: %s", tenant_id, report_date, e)
            self._audit(
                SCHEDULED_EXPORT_FAILED, tenant_id,
                {"tenant_id": tenant_id, "report_date": report_date, "error": str(e)},
                status="failure",
            )
            return {"tenant_id": tenant_id, "status": "failed", "error": str(e)}

        return {"tenant_id": tenant_id, "status": "completed", "export_id": result["export_id"]}

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def run_retention_cleanup(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Expire stored artifacts and export records past each tenant's retention window."""
        db = self.session_factory()
        try:
            tenants = [(t.tenant_id, t.retention_days or settings.DEFAULT_RETENTION_DAYS)
                       for t in data_service.list_active_tenants(db)]
            results = []
            for tenant_id, retention_days in tenants:
                try:
                    storage_result = self.storage.cleanup_expired(tenant_id, retention_days, now=now)
                    deleted_records = data_service.delete_expired_exports(db, tenant_id, retention_days, now=now)
                except Exception as e:
                    db.rollback()
                    logger.error("Retention cleanup failed for %s: %s", tenant_id, e)
                    self._audit(RETENTION_CLEANUP_FAILED, tenant_id,
                                {"tenant_id": tenant_id, "error": str(e)}, status="failure")
                    results.append({"tenant_id": tenant_id, "success": False, "error": str(e)})
                    continue

                summary = {
                    "tenant_id": tenant_id,
                    "success": True,
                    "retention_days": retention_days,
                    "deleted_objects": storage_result["deleted_count"],
                    "delete_errors": len(storage_result["errors"]),
                    "deleted_records": deleted_records,
                }
                self._audit(RETENTION_CLEANUP_COMPLETED, tenant_id, summary)
                results.append(summary)
            return results
        finally:
            db.close()

    def _audit(self, action: str, tenant_id: str, values: Dict[str, Any], status: str = "success") -> None:
        db = self.session_factory()
        try:
            self.audit.log_action(
                db, action, "tenant", resource_id=tenant_id, new_values=values, status=status
            )
        finally:
            db.close()


export_scheduler = ExportScheduler()
