"""Exports API router — trigger, list, inspect, download, verify and delete daily exports."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from cleandoc_export.core.exceptions import StorageError, conflict, not_found
from cleandoc_export.core.rate_limiter import limiter, EXPORT_RATE_LIMIT, DOWNLOAD_RATE_LIMIT
from cleandoc_export.core.security import require_viewer, require_team_lead, require_admin
from cleandoc_export.db.session import get_db
from cleandoc_export.executor.orchestrator import export_orchestrator, ExportOrchestrator
from cleandoc_export.models.export_record import ExportStatus, ARTIFACT_TYPES
from cleandoc_export.schemas.schemas import (
    ExportOptions, ExportOut, ExportDetailOut, ExportListResponse, ExportRunResponse,
    ExportStatsResponse, StorageStats, DownloadUrlRequest, DownloadUrlResponse, MessageResponse,
)
from cleandoc_export.services.audit_service import audit_service, DOWNLOAD_URL_CREATED, EXPORT_DELETED
from cleandoc_export.services.data_service import data_service
from cleandoc_export.services.scheduler_service import export_scheduler
from cleandoc_export.services.storage_service import storage_service, StorageService

logger = logging.getLogger("cleandoc_export")

router = APIRouter(prefix="/exports", tags=["exports"])


def get_orchestrator() -> ExportOrchestrator:
    return export_orchestrator


def get_storage() -> StorageService:
    return storage_service


@router.post("/daily", response_model=ExportRunResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(EXPORT_RATE_LIMIT)
def trigger_daily_export(
    request: Request,
    date: Optional[str] = Query(None, description="Report date YYYY-MM-DD, default yesterday"),
    skip_delivery: bool = Query(False),
    force: bool = Query(False, description="Regenerate even if a completed export exists"),
    options: Optional[ExportOptions] = Body(None),
    db: Session = Depends(get_db),
    payload: dict = Depends(require_team_lead),
    orchestrator: ExportOrchestrator = Depends(get_orchestrator),
):
    """Run the daily export for the caller's tenant synchronously."""
    tenant_id = payload["tenant_id"]
    report_date = date or export_scheduler.default_report_date()

    existing = data_service.find_export(db, tenant_id, report_date)
    if existing is not None and existing.status == ExportStatus.COMPLETED and not force:
        raise conflict(f"Export for {report_date} already completed; pass force=true to regenerate")

    options = options or ExportOptions()
    options.skip_delivery = options.skip_delivery or skip_delivery
    options.triggered_by = str(payload["sub"])
    return orchestrator.generate_daily_export(tenant_id, report_date, options)


@router.get("", response_model=ExportListResponse)
def list_exports(
    status_filter: Optional[ExportStatus] = Query(None, alias="status"),
    from_date: Optional[str] = Query(None),
    to_date: Optional[str] = Query(None),
    limit: int = Query(30, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    payload: dict = Depends(require_viewer),
):
    """List the tenant's exports, newest report date first."""
    result = data_service.list_exports(
        db, payload["tenant_id"], status_filter, from_date, to_date, limit, offset
    )
    return ExportListResponse(
        total=result["total"],
        limit=result["limit"],
        offset=result["offset"],
        items=[ExportOut.model_validate(r) for r in result["items"]],
    )


@router.get("/stats", response_model=ExportStatsResponse)
def export_stats(
    db: Session = Depends(get_db),
    payload: dict = Depends(require_viewer),
    storage: StorageService = Depends(get_storage),
):
    """Export counts by status, stored bytes, the latest export and bucket usage."""
    tenant_id = payload["tenant_id"]
    stats = data_service.export_stats(db, tenant_id)
    last = stats["last_export"]

    usage = None
    try:
        usage = StorageStats(**storage.storage_stats(tenant_id))
    except StorageError as e:
        logger.warning("⚠️ Storage stats unavailable for %s: %s", tenant_id, e)

    return ExportStatsResponse(
        total_exports=stats["total_exports"],
        by_status=stats["by_status"],
        total_size_bytes=stats["total_size_bytes"],
        last_export=ExportOut.model_validate(last) if last else None,
        storage=usage,
    )


@router.post("/schedule/run", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_daily_run(
    date: Optional[str] = Query(None),
    payload: dict = Depends(require_admin),
):
    """Queue the scheduled daily export run for all tenants."""
    from cleandoc_export.tasks.celery_app import run_daily_exports

    task = run_daily_exports.delay(date)
    return MessageResponse(message="Daily export run queued", detail={"task_id": task.id})


@router.post("/cleanup/retention", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_retention_cleanup(payload: dict = Depends(require_admin)):
    """Queue the retention sweep for all tenants."""
    from cleandoc_export.tasks.celery_app import run_retention_cleanup

    task = run_retention_cleanup.delay()
    return MessageResponse(message="Retention cleanup queued", detail={"task_id": task.id})


@router.get("/{export_id}", response_model=ExportDetailOut)
def get_export(export_id: str, db: Session = Depends(get_db), payload: dict = Depends(require_viewer)):
    """Full export record including artifact hashes and delivery outcomes."""
    record = data_service.get_export(db, export_id, tenant_id=payload["tenant_id"])
    return ExportDetailOut.model_validate(record)


@router.post("/{export_id}/download-url", response_model=DownloadUrlResponse)
@limiter.limit(DOWNLOAD_RATE_LIMIT)
def create_download_url(
    request: Request,
    export_id: str,
    body: DownloadUrlRequest,
    db: Session = Depends(get_db),
    payload: dict = Depends(require_viewer),
    storage: StorageService = Depends(get_storage),
):
    """Mint a presigned link for one artifact of a completed export."""
    record = data_service.get_export(db, export_id, tenant_id=payload["tenant_id"])
    if record.status != ExportStatus.COMPLETED:
        raise conflict(f"Export {export_id} is {record.status.value}, not COMPLETED")
    key = record.artifact(body.file_type)["s3_key"]
    if not key:
        raise not_found(f"Export {export_id} has no {body.file_type} artifact")

    filename = key.rsplit("/", 1)[-1]
    link = storage.presign(key, body.expires_in, download_filename=filename)
    audit_service.log_from_request(
        db, request, DOWNLOAD_URL_CREATED, "daily_exports",
        actor_id=str(payload["sub"]),
        resource_id=export_id,
        new_values={"file_type": body.file_type, "expires_in": body.expires_in},
    )
    return DownloadUrlResponse(
        download_url=link["url"], expires_at=link["expires_at"], file_type=body.file_type, filename=filename,
    )


@router.get("/{export_id}/verify")
def verify_export(
    export_id: str,
    db: Session = Depends(get_db),
    payload: dict = Depends(require_viewer),
    storage: StorageService = Depends(get_storage),
):
    """Re-hash every stored artifact and compare with the recorded SHA-256."""
    record = data_service.get_export(db, export_id, tenant_id=payload["tenant_id"])
    files = {}
    for artifact_type in ("pdf", "csv_logs", "csv_steps", "csv_photos", "manifest", "checksums", "zip"):
        artifact = record.artifact(artifact_type)
        if not artifact["s3_key"]:
            continue
        check = storage.verify_object(artifact["s3_key"])
        check["valid"] = check["valid"] and check["actual"] == artifact["sha256"]
        check["recorded"] = artifact["sha256"]
        files[artifact_type] = check
    return {
        "export_id": export_id,
        "valid": bool(files) and all(f["valid"] for f in files.values()),
        "files": files,
    }


@router.delete("/{export_id}", response_model=MessageResponse)
def delete_export(
    request: Request,
    export_id: str,
    db: Session = Depends(get_db),
    payload: dict = Depends(require_admin),
    storage: StorageService = Depends(get_storage),
):
    """Remove an export's stored artifacts and its record."""
    record = data_service.get_export(db, export_id, tenant_id=payload["tenant_id"])
    if record.status in (ExportStatus.PENDING, ExportStatus.PROCESSING):
        raise conflict(f"Export {export_id} is {record.status.value}; wait for it to finish")

    keys = [record.artifact(t)["s3_key"] for t in ARTIFACT_TYPES if record.artifact(t)["s3_key"]]
    errors = storage.delete_objects(keys)
    if errors:
        raise StorageError(f"Could not delete {len(errors)} of {len(keys)} artifact(s) of export {export_id}")

    report_date = record.report_date
    data_service.delete_export(db, record)
    audit_service.log_from_request(
        db, request, EXPORT_DELETED, "daily_exports",
        actor_id=str(payload["sub"]),
        resource_id=export_id,
        new_values={"report_date": report_date, "deleted_objects": len(keys)},
    )
    logger.info("🗑️ Export %s deleted (%d object(s))", export_id, len(keys))
    return MessageResponse(message="Export deleted", detail={"deleted_objects": len(keys)})
