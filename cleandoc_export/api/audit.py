"""Audit API router — query, verify and export the hash-chained audit trail."""

from typing import Optional, List
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from cleandoc_export.core.security import require_admin
from cleandoc_export.db.session import get_db
from cleandoc_export.schemas.schemas import AuditEventOut, IntegrityReport
from cleandoc_export.services.audit_service import audit_service

router = APIRouter(prefix="/audit", tags=["audit"])


def _filters(actor_id, resource_type, resource_id, action, start_date, end_date) -> dict:
    return {
        "actor_id": actor_id,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "action": action,
        "start_date": start_date,
        "end_date": end_date,
    }


@router.get("", response_model=List[AuditEventOut])
def get_audit_log(
    actor_id: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    payload: dict = Depends(require_admin),
):
    """Query audit events, newest first (admin only)."""
    return audit_service.get_audit_log(
        db, _filters(actor_id, resource_type, resource_id, action, start_date, end_date), limit
    )


@router.get("/verify", response_model=IntegrityReport)
def verify_audit_chain(
    limit: int = Query(100, ge=0, description="0 scans the whole log"),
    db: Session = Depends(get_db),
    payload: dict = Depends(require_admin),
):
    """Replay the hash chain and report broken links (admin only)."""
    return audit_service.verify_integrity(db, limit)


@router.get("/export")
def export_audit_log(
    actor_id: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    limit: int = Query(1000, ge=1, le=10000),
    db: Session = Depends(get_db),
    payload: dict = Depends(require_admin),
):
    """Download matching audit events as CSV (admin only)."""
    events = audit_service.get_audit_log(
        db, _filters(actor_id, resource_type, resource_id, action, start_date, end_date), limit
    )
    return Response(
        content=audit_service.export_as_csv(events),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="audit_events.csv"'},
    )
