"""Export orchestrator — runs one daily export for a (tenant, report date) pair.

Stages run strictly in sequence: load, validate, CSV, PDF, manifest and
checksums, archive, upload, presign, complete, deliver, audit. The export
record moves PENDING -> PROCESSING -> COMPLETED, or to FAILED on any error,
in which case the error is re-raised to the caller.

Regenerating a COMPLETED export leaves its record untouched until the new run
completes; progress is only published to the cache, and a failed regeneration
keeps the previous result.
"""

import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cleandoc_export.core.exceptions import ExportInProgressError
from cleandoc_export.db.session import SessionLocal
from cleandoc_export.models.export_record import ExportRecord, ExportStatus, ARTIFACT_TYPES
from cleandoc_export.schemas.schemas import ExportOptions
from cleandoc_export.services.archive_service import archive_service, ArchiveService
from cleandoc_export.services.artifacts import ExportBundle
from cleandoc_export.services.audit_service import (
    audit_service, AuditService, EXPORT_COMPLETED, EXPORT_FAILED,
)
from cleandoc_export.services.cache_service import cache_service, CacheService
from cleandoc_export.services.csv_export_service import csv_export_service, CSVExportService
from cleandoc_export.services.data_service import data_service, parse_report_date
from cleandoc_export.services.delivery_service import delivery_service, DeliveryService
from cleandoc_export.services.manifest_service import manifest_service, ManifestService
from cleandoc_export.services.pdf_report_service import pdf_report_service, PDFReportService
from cleandoc_export.services.storage_service import storage_service, StorageService

logger = logging.getLogger("cleandoc_export")


class SingleFlightRegistry:
    """Keyed in-process lock table: at most one run per key, contenders fail fast."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, str] = {}

    @contextmanager
    def acquire(self, key: str, owner: str):
        with self._lock:
            if key in self._active:
                raise ExportInProgressError(f"Export {key} is already in progress")
            self._active[key] = owner
        try:
            yield
        finally:
            with self._lock:
                self._active.pop(key, None)

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active

    def active_keys(self) -> List[str]:
        with self._lock:
            return list(self._active)


class ExportOrchestrator:
    """Sequences generators, storage, delivery and audit for one export run."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        storage: Optional[StorageService] = None,
        delivery: Optional[DeliveryService] = None,
        audit: Optional[AuditService] = None,
        cache: Optional[CacheService] = cache_service,
        csv: Optional[CSVExportService] = None,
        pdf: Optional[PDFReportService] = None,
        manifest: Optional[ManifestService] = None,
        archive: Optional[ArchiveService] = None,
        registry: Optional[SingleFlightRegistry] = None,
    ):
        self.session_factory = session_factory
        self.storage = storage or storage_service
        self.delivery = delivery or delivery_service
        self.audit = audit or audit_service
        self.cache = cache
        self.csv = csv or csv_export_service
        self.pdf = pdf or pdf_report_service
        self.manifest = manifest or manifest_service
        self.archive = archive or archive_service
        self.registry = registry or SingleFlightRegistry()

    @staticmethod
    def flight_key(tenant_id: str, report_date: str) -> str:
        return f"{tenant_id}-{report_date}"

    def generate_daily_export(
        self,
        tenant_id: str,
        report_date: str,
        options: Optional[ExportOptions] = None,
    ) -> Dict[str, Any]:
        """Run the full export.

        Returns ``{export_id, download_urls, stats, processing_time_ms}``.
        Raises ``ExportInProgressError`` at once when the same key is running;
        a completed export for the same key is regenerated, not skipped.
        """
        options = options or ExportOptions()
        parse_report_date(report_date)

        with self.registry.acquire(self.flight_key(tenant_id, report_date), str(uuid.uuid4())):
            db = self.session_factory()
            try:
                return self._run(db, tenant_id, report_date, options)
            finally:
                db.close()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _run(self, db: Session, tenant_id: str, report_date: str, options: ExportOptions) -> Dict[str, Any]:
        record, regenerating = self._create_record(db, tenant_id, report_date, options.triggered_by)
        export_id = record.id
        started = time.monotonic()
        started_at = datetime.now(timezone.utc)
        logger.info("🚀 Export %s started for %s/%s", export_id, tenant_id, report_date)

        try:
            tenant = data_service.get_tenant_settings(db, tenant_id)
            records = data_service.load_daily_records(db, tenant, report_date)
            self.csv.validate_export_data(records)
            stats = self.csv.generate_export_stats(records)

            include_csv = tenant.include_csv if options.include_csv is None else options.include_csv
            include_pdf = tenant.include_pdf if options.include_pdf is None else options.include_pdf

            content = {}
            if include_csv:
                self._set_status(db, record, "Generating CSV exports...", regenerating)
                content.update(self.csv.generate_daily_csv_export(tenant_id, report_date, records))
            if include_pdf:
                self._set_status(db, record, "Generating PDF report...", regenerating)
                content["pdf"] = self.pdf.generate_pdf_report(
                    tenant_id, report_date, records, tenant_settings=tenant, stats=stats
                )

            self._set_status(db, record, "Building manifest and archive...", regenerating)
            manifest = self.manifest.build_manifest(
                tenant_id, report_date, content, tenant.retention_days,
                encryption_at_rest=self.storage.sse_enabled,
            )
            checksums = self.manifest.build_checksums(report_date, content, manifest)
            csvs = {k: v for k, v in content.items() if k.startswith("csv_")}
            archive = self.archive.create_zip_archive(
                report_date, [*csvs.values(), manifest, checksums], retention_days=tenant.retention_days
            )
            bundle = ExportBundle(
                export_id=export_id,
                tenant_id=tenant_id,
                report_date=report_date,
                stats=stats,
                csvs=csvs,
                pdf=content.get("pdf"),
                manifest=manifest,
                checksums=checksums,
                archive=archive,
                signature_count=sum(len(r.get("signatures") or []) for r in records),
            )

            self._set_status(db, record, "Uploading to cloud storage...", regenerating)
            uploads = self.storage.upload_daily_export(tenant_id, report_date, bundle.by_type())
            download_urls = self.storage.generate_download_urls(uploads)

            processing_time_ms = int((time.monotonic() - started) * 1000)
            bundle.processing_time_ms = processing_time_ms
            self._complete(
                db, record, uploads, stats, processing_time_ms, download_urls,
                triggered_by=options.triggered_by, started_at=started_at,
            )
        except Exception as e:
            self._fail(db, export_id, e, started, regenerating)
            self.audit.log_action(
                db, EXPORT_FAILED, "daily_exports",
                resource_id=export_id,
                resource_name=f"{tenant_id}/{report_date}",
                new_values={"tenant_id": tenant_id, "report_date": report_date, "error": str(e)},
                actor_id=options.triggered_by,
                status="failure",
            )
            raise

        delivery_results = None
        if not options.skip_delivery:
            delivery_results = self._deliver(db, record, bundle, tenant, download_urls, options)

        self.audit.log_action(
            db, EXPORT_COMPLETED, "daily_exports",
            resource_id=export_id,
            resource_name=f"{tenant_id}/{report_date}",
            new_values={
                "tenant_id": tenant_id,
                "report_date": report_date,
                "processing_time_ms": processing_time_ms,
                "total_logs": stats["total_logs"],
                "delivery": self.delivery.summarize(delivery_results) if delivery_results else None,
            },
            actor_id=options.triggered_by,
        )
        logger.info("✅ Export %s completed in %dms", export_id, processing_time_ms)

        return {
            "export_id": export_id,
            "download_urls": download_urls,
            "stats": stats,
            "processing_time_ms": processing_time_ms,
        }

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def _create_record(
        self, db: Session, tenant_id: str, report_date: str, triggered_by: Optional[str]
    ):
        """Create the PENDING record, or reuse an earlier one for the same key.

        Returns ``(record, regenerating)``. A COMPLETED record is left as it is
        (``regenerating`` is True) and only overwritten by ``_complete``; any
        other earlier record is reset to PENDING.
        """
        record = data_service.find_export(db, tenant_id, report_date)
        if record is not None and record.status == ExportStatus.COMPLETED:
            self._publish(record, ExportStatus.PENDING, "Queued for regeneration")
            return record, True

        if record is None:
            record = ExportRecord(id=str(uuid.uuid4()), tenant_id=tenant_id, report_date=report_date)
            db.add(record)
        else:
            self._reset(record)

        record.status = ExportStatus.PENDING
        record.status_message = "Queued"
        record.triggered_by = triggered_by
        record.processing_started_at = datetime.now(timezone.utc)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ExportInProgressError(
                f"Export {self.flight_key(tenant_id, report_date)} is being created by another worker"
            )
        db.refresh(record)
        self._publish(record)
        return record, False

    @staticmethod
    def _reset(record: ExportRecord) -> None:
        for artifact_type in ARTIFACT_TYPES:
            setattr(record, f"{artifact_type}_s3_key", None)
            setattr(record, f"{artifact_type}_sha256", None)
            setattr(record, f"{artifact_type}_size_bytes", None)
        for counter in ("total_logs", "completed_logs", "failed_logs", "total_steps",
                        "total_photos", "total_size_bytes"):
            setattr(record, counter, 0)
        for field in ("processing_time_ms", "processing_completed_at", "email_sent_at",
                      "email_recipients_json", "sftp_uploaded_at", "webhook_sent_at",
                      "webhook_response_code", "delivery_results_json", "download_urls_json",
                      "error_message"):
            setattr(record, field, None)

    def _set_status(self, db: Session, record: ExportRecord, message: str, regenerating: bool = False) -> None:
        if regenerating:
            self._publish(record, ExportStatus.PROCESSING, message)
            return
        record.status = ExportStatus.PROCESSING
        record.status_message = message
        db.commit()
        self._publish(record)

    def _complete(
        self,
        db: Session,
        record: ExportRecord,
        uploads: Dict[str, Dict[str, Any]],
        stats: Dict[str, int],
        processing_time_ms: int,
        download_urls: Dict[str, Any],
        triggered_by: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        # Replaces whatever an earlier run left, including artifacts this run skipped
        self._reset(record)
        for artifact_type, upload in uploads.items():
            setattr(record, f"{artifact_type}_s3_key", upload["key"])
            setattr(record, f"{artifact_type}_sha256", upload["hash"])
            setattr(record, f"{artifact_type}_size_bytes", upload["size"])
        for name, value in stats.items():
            setattr(record, name, value)
        record.triggered_by = triggered_by
        if started_at is not None:
            record.processing_started_at = started_at
        record.total_size_bytes = sum(u["size"] for u in uploads.values())
        record.processing_time_ms = processing_time_ms
        record.processing_completed_at = datetime.now(timezone.utc)
        record.download_urls_json = json.dumps(download_urls)
        record.status = ExportStatus.COMPLETED
        record.status_message = "Export completed"
        db.commit()
        self._publish(record)

    def _fail(
        self, db: Session, export_id: str, error: Exception, started: float, regenerating: bool = False
    ) -> None:
        logger.error("❌ Export %s failed: %s", export_id, error)
        try:
            db.rollback()
            record = db.query(ExportRecord).filter(ExportRecord.id == export_id).first()
            if record is None:
                return
            if regenerating:
                logger.warning("⚠️ Regeneration of export %s failed; keeping the completed result", export_id)
                self._publish(record, message="Regeneration failed; previous export kept")
                return
            record.status = ExportStatus.FAILED
            record.status_message = "Export failed"
            record.error_message = str(error) or error.__class__.__name__
            record.processing_time_ms = int((time.monotonic() - started) * 1000)
            record.processing_completed_at = datetime.now(timezone.utc)
            db.commit()
            self._publish(record)
        except Exception as update_error:
            db.rollback()
            logger.error("Could not mark export %s as failed: %s", export_id, update_error)

    def _deliver(
        self,
        db: Session,
        record: ExportRecord,
        bundle: ExportBundle,
        tenant,
        download_urls: Dict[str, Any],
        options: ExportOptions,
    ) -> Optional[Dict[str, Dict[str, Any]]]:
        """Dispatch delivery and store per-channel outcomes; never raises."""
        if self.cache is not None:
            self.cache.publish_export_status(record.id, record.status.value, "Delivering exports...")
        channels = options.delivery_channels
        if channels is None:
            channels = tenant.delivery_channels
        try:
            results = self.delivery.deliver(bundle, tenant, download_urls, channels=channels)
        except Exception as e:
            logger.error("Delivery dispatch for export %s crashed: %s", record.id, e)
            return None

        now = datetime.now(timezone.utc)
        try:
            if results["email"]["success"]:
                record.email_sent_at = now
                record.email_recipients_json = json.dumps(results["email"].get("recipients", []))
            if results["sftp"]["success"]:
                record.sftp_uploaded_at = now
            if results["webhook"]["attempted"]:
                record.webhook_response_code = results["webhook"].get("status_code")
            if results["webhook"]["success"]:
                record.webhook_sent_at = now
            record.delivery_results_json = json.dumps(results, default=str)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning("Could not store delivery results for export %s: %s", record.id, e)
        return results

    def _publish(
        self,
        record: ExportRecord,
        status: Optional[ExportStatus] = None,
        message: Optional[str] = None,
    ) -> None:
        if self.cache is not None:
            self.cache.publish_export_status(
                record.id, (status or record.status).value, message or record.status_message
            )


export_orchestrator = ExportOrchestrator()
