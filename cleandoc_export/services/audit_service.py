"""Audit service — append-only, hash-chained audit trail.

Every event stores ``previous_hash`` (the prior event's ``current_hash``) and
``current_hash = sha256(json({actor_id, action, resource_type, resource_id,
timestamp, previous_hash}))``. Editing any stored hash breaks the chain, which
``verify_integrity`` detects.
"""

import csv
import hashlib
import io
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Any, Callable, Dict, List

from fastapi import Request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cleandoc_export.models.audit_event import AuditEvent
from cleandoc_export.services.csv_export_service import format_iso8601

logger = logging.getLogger("cleandoc_export")

# Actions emitted by the pipeline
EXPORT_COMPLETED = "EXPORT_COMPLETED"
EXPORT_FAILED = "EXPORT_FAILED"
SCHEDULED_EXPORT_FAILED = "SCHEDULED_EXPORT_FAILED"
RETENTION_CLEANUP_COMPLETED = "RETENTION_CLEANUP_COMPLETED"
RETENTION_CLEANUP_FAILED = "RETENTION_CLEANUP_FAILED"
DOWNLOAD_URL_CREATED = "DOWNLOAD_URL_CREATED"
EXPORT_DELETED = "EXPORT_DELETED"


def compute_event_hash(
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    timestamp: str,
    previous_hash: Optional[str],
) -> str:
    payload = json.dumps(
        {
            "actor_id": actor_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "timestamp": timestamp,
            "previous_hash": previous_hash,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditService:
    """Records and verifies hash-linked audit events.

    Appends are serialized by a process-wide lock; across processes the unique
    ``previous_hash`` column rejects a forked tail and the append is retried.
    """

    MAX_APPEND_ATTEMPTS = 3

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def log_action(
        self,
        db: Session,
        action: str,
        resource_type: str,
        resource_id: Optional[Any] = None,
        resource_name: Optional[str] = None,
        old_values: Optional[Any] = None,
        new_values: Optional[Any] = None,
        actor_id: Optional[str] = None,
        actor_provider: Optional[Callable[[], Optional[str]]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status: str = "success",
    ) -> Optional[Dict[str, Any]]:
        """Append one event; returns ``{id, current_hash, timestamp}`` or None.

        Never raises: a failing ``actor_provider`` skips the event, and storage
        errors are logged as warnings.
        """
        if actor_provider is not None:
            try:
                actor_id = actor_provider()
            except Exception as e:
                logger.warning("Audit action %s skipped, could not resolve actor: %s", action, e)
                return None

        actor_id = str(actor_id) if actor_id is not None else None
        resource_id = str(resource_id) if resource_id is not None else None

        try:
            with self._lock:
                for attempt in range(1, self.MAX_APPEND_ATTEMPTS + 1):
                    tail = db.query(AuditEvent).order_by(AuditEvent.id.desc()).first()
                    previous_hash = tail.current_hash if tail else None
                    timestamp = format_iso8601(self._clock())
                    current_hash = compute_event_hash(
                        actor_id, action, resource_type, resource_id, timestamp, previous_hash
                    )
                    event = AuditEvent(
                        actor_id=actor_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        resource_name=resource_name,
                        old_values_json=json.dumps(old_values, default=str) if old_values is not None else None,
                        new_values_json=json.dumps(new_values, default=str) if new_values is not None else None,
                        timestamp=timestamp,
                        previous_hash=previous_hash,
                        current_hash=current_hash,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        status=status,
                    )
                    db.add(event)
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        logger.warning(
                            "Audit chain tail moved while appending %s (attempt %d)", action, attempt
                        )
                        continue
                    return {"id": event.id, "current_hash": current_hash, "timestamp": timestamp}
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Audit action %s not recorded: %s", action, e)
            return None

        logger.warning("Audit action %s not recorded after %d attempts", action, self.MAX_APPEND_ATTEMPTS)
        return None

    def log_from_request(
        self,
        db: Session,
        request: Request,
        action: str,
        resource_type: str,
        actor_id: Optional[str] = None,
        **kwargs,
    ) -> Optional[Dict[str, Any]]:
        """Write an audit event extracting IP and user-agent from the request."""
        ip = request.client.host if request.client else None
        ua = request.headers.get("user-agent", "")[:500]
        return self.log_action(
            db, action, resource_type, actor_id=actor_id, ip_address=ip, user_agent=ua, **kwargs
        )

    @staticmethod
    def verify_integrity(db: Session, limit: int = 100) -> Dict[str, Any]:
        """Replay events in id order and report every broken link.

        ``hash_mismatch``: the hash recomputed from an event's recorded fields
        differs from its stored ``current_hash``. ``previous_hash_mismatch``:
        the event's ``previous_hash`` is not its predecessor's ``current_hash``.
        ``limit=0`` scans the whole log.
        """
        query = db.query(AuditEvent).order_by(AuditEvent.id.asc())
        if limit > 0:
            query = query.limit(limit)
        events = query.all()

        errors: List[Dict[str, Any]] = []
        predecessor: Optional[AuditEvent] = None
        for event in events:
            expected = compute_event_hash(
                event.actor_id, event.action, event.resource_type,
                event.resource_id, event.timestamp, event.previous_hash,
            )
            if expected != event.current_hash:
                errors.append({
                    "event_id": event.id,
                    "type": "hash_mismatch",
                    "message": f"Hash mismatch: expected {expected}, found {event.current_hash}",
                    "timestamp": event.timestamp,
                })
            if predecessor is not None and event.previous_hash != predecessor.current_hash:
                errors.append({
                    "event_id": event.id,
                    "type": "previous_hash_mismatch",
                    "message": f"Chain broken after event {predecessor.id}",
                    "timestamp": event.timestamp,
                })
            predecessor = event

        if errors:
            logger.warning("Audit chain verification found %d problem(s)", len(errors))
        return {"valid": not errors, "checked": len(events), "errors": errors}

    @staticmethod
    def get_audit_log(
        db: Session,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events newest first.

        Supported filters: actor_id, resource_type, resource_id, action,
        start_date, end_date (ISO-8601 strings or datetimes).
        """
        filters = filters or {}
        query = db.query(AuditEvent)

        if filters.get("actor_id"):
            query = query.filter(AuditEvent.actor_id == str(filters["actor_id"]))
        if filters.get("resource_type"):
            query = query.filter(AuditEvent.resource_type == filters["resource_type"])
        if filters.get("resource_id"):
            query = query.filter(AuditEvent.resource_id == str(filters["resource_id"]))
        if filters.get("action"):
            query = query.filter(AuditEvent.action == filters["action"])
        if filters.get("start_date"):
            query = query.filter(AuditEvent.timestamp >= format_iso8601(filters["start_date"]))
        if filters.get("end_date"):
            query = query.filter(AuditEvent.timestamp <= format_iso8601(filters["end_date"]))

        return query.order_by(AuditEvent.id.desc()).limit(limit).all()

    @staticmethod
    def export_as_csv(events: List[AuditEvent]) -> str:
        """Render events as CSV for offline review."""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow([
            "id", "timestamp", "actor_id", "action", "resource_type", "resource_id",
            "resource_name", "status", "ip_address", "previous_hash", "current_hash",
        ])
        for event in events:
            writer.writerow([
                event.id, event.timestamp, event.actor_id or "system", event.action,
                event.resource_type, event.resource_id or "", event.resource_name or "",
                event.status, event.ip_address or "", event.previous_hash or "", event.current_hash,
            ])
        return buffer.getvalue()


audit_service = AuditService()
