"""CSV export service — machine-readable daily tables (schema v1).

Produces three ``;``-delimited UTF-8 tables from one day's activity records:
logs (one row per record), steps (one row per step) and photos (one row per
photo). Records are plain dicts as returned by ``data_service``; timestamps
may be ``datetime`` objects or ISO-8601 strings.
"""

import csv
import io
import math
import re
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Sequence

from cleandoc_export.core.exceptions import ValidationError, GenerationError
from cleandoc_export.services.artifacts import Artifact

CSV_CONTENT_TYPE = "text/csv; charset=utf-8"

LOGS_HEADER = [
    "report_date", "tenant_id", "log_id", "protocol_id", "customer_name",
    "site_name", "area_name", "status", "started_at", "completed_at",
    "duration_min", "created_by_user_id", "approved_by_user_id", "pdf_s3_key",
    "pdf_sha256", "record_version",
]

STEPS_HEADER = [
    "report_date", "tenant_id", "log_id", "step_id", "step_seq", "step_name",
    "chemical", "dwell_time_s", "status", "notes", "completed_by_user_id",
    "completed_at", "photo_count",
]

PHOTOS_HEADER = [
    "report_date", "tenant_id", "log_id", "step_id", "photo_id", "photo_s3_key",
    "photo_sha256", "width", "height", "content_type", "taken_at",
    "uploaded_by_user_id",
]

_LINE_BREAK = re.compile(r"\r\n|[\r\n]")


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_iso8601(value) -> str:
    """Render as ``YYYY-MM-DDTHH:MM:SS.mmmZ``; missing or invalid input gives ``""``."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return ""
    return parsed.strftime("%Y-%m-%dT%H:%M:%S") + f".{parsed.microsecond // 1000:03d}Z"


def calculate_duration_minutes(start, end):
    """Whole minutes between two timestamps, rounded half up.

    Returns ``""`` when either side is missing or the duration is negative.
    """
    started = parse_timestamp(start)
    ended = parse_timestamp(end)
    if started is None or ended is None:
        return ""
    diff_ms = (ended - started).total_seconds() * 1000
    if diff_ms < 0:
        return ""
    return int(math.floor(diff_ms / 60000 + 0.5))


def normalize_text(value) -> str:
    """Collapse line breaks in free text to single spaces."""
    if value is None:
        return ""
    return _LINE_BREAK.sub(" ", str(value))


def _first(*values, default=""):
    for value in values:
        if value is not None and value != "":
            return value
    return default


class CSVExportService:
    """Builds the daily logs/steps/photos CSV tables."""

    DELIMITER = ";"
    SCHEMA_VERSION = "v1"

    def build_csv_content(self, header: List[str], rows: List[list]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(
            buffer, delimiter=self.DELIMITER, lineterminator="\n", quoting=csv.QUOTE_MINIMAL
        )
        writer.writerow(header)
        writer.writerows(rows)
        return buffer.getvalue()

    def _artifact(self, filename: str, header: List[str], rows: List[list]) -> Artifact:
        content = self.build_csv_content(header, rows).encode("utf-8")
        return Artifact(filename, content, CSV_CONTENT_TYPE, row_count=len(rows))

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def logs_rows(self, tenant_id: str, report_date: str, records: Sequence[Dict[str, Any]]) -> List[list]:
        rows = []
        for log in records:
            customer = log.get("customer") or {}
            rows.append([
                report_date,
                tenant_id,
                log["id"],
                _first(log.get("protocol_id"), log.get("cleaning_plan_id")),
                normalize_text(customer.get("name")),
                normalize_text(_first(customer.get("location"), log.get("site_name"))),
                normalize_text(log.get("area_name")),
                log.get("status") or "pending",
                format_iso8601(log.get("started_at")),
                format_iso8601(log.get("completed_at")),
                calculate_duration_minutes(log.get("started_at"), log.get("completed_at")),
                _first(log.get("created_by"), log.get("worker_id")),
                log.get("approved_by") or "",
                log.get("pdf_s3_key") or "",
                log.get("pdf_sha256") or "",
                1,
            ])
        return rows

    def steps_rows(self, tenant_id: str, report_date: str, records: Sequence[Dict[str, Any]]) -> List[list]:
        rows = []
        for log in records:
            steps = log.get("steps") or []
            for index, step in enumerate(steps):
                photos = step.get("photos") or []
                rows.append([
                    report_date,
                    tenant_id,
                    log["id"],
                    step.get("id"),
                    _first(step.get("sequence"), index + 1),
                    normalize_text(_first(step.get("name"), step.get("description"))),
                    normalize_text(_first(step.get("chemical"), step.get("cleaning_agent"))),
                    _first(step.get("dwell_time"), step.get("dwell_time_seconds")),
                    step.get("status") or "pending",
                    normalize_text(step.get("notes")),
                    _first(step.get("completed_by"), log.get("created_by")),
                    format_iso8601(step.get("completed_at")),
                    len(photos),
                ])
        return rows

    def photos_rows(self, tenant_id: str, report_date: str, records: Sequence[Dict[str, Any]]) -> List[list]:
        rows = []
        for log in records:
            for step in log.get("steps") or []:
                for photo in step.get("photos") or []:
                    rows.append([
                        report_date,
                        tenant_id,
                        log["id"],
                        step.get("id"),
                        photo.get("id"),
                        photo.get("s3_key") or "",
                        _first(photo.get("sha256"), photo.get("sha256_hash")),
                        _first(photo.get("width")),
                        _first(photo.get("height")),
                        photo.get("content_type") or "image/jpeg",
                        format_iso8601(photo.get("taken_at")),
                        _first(photo.get("uploaded_by"), log.get("created_by")),
                    ])
        return rows

    def generate_daily_csv_export(
        self, tenant_id: str, report_date: str, records: Sequence[Dict[str, Any]]
    ) -> Dict[str, Artifact]:
        """Generate the three daily tables keyed ``csv_logs``/``csv_steps``/``csv_photos``."""
        version = self.SCHEMA_VERSION
        try:
            return {
                "csv_logs": self._artifact(
                    f"cleandoc_logs_{report_date}_{version}.csv",
                    LOGS_HEADER,
                    self.logs_rows(tenant_id, report_date, records),
                ),
                "csv_steps": self._artifact(
                    f"cleandoc_log_steps_{report_date}_{version}.csv",
                    STEPS_HEADER,
                    self.steps_rows(tenant_id, report_date, records),
                ),
                "csv_photos": self._artifact(
                    f"cleandoc_log_photos_{report_date}_{version}.csv",
                    PHOTOS_HEADER,
                    self.photos_rows(tenant_id, report_date, records),
                ),
            }
        except (KeyError, TypeError, AttributeError) as e:
            raise GenerationError(f"CSV export failed: {e}")

    # ------------------------------------------------------------------
    # Validation & stats
    # ------------------------------------------------------------------

    @staticmethod
    def validate_export_data(records) -> bool:
        """Structural checks run before any artifact is generated."""
        if not isinstance(records, (list, tuple)):
            raise ValidationError("Activity records must be a list")
        for index, log in enumerate(records):
            if not isinstance(log, dict) or not log.get("id"):
                raise ValidationError(f"Record at index {index} missing required field: id")
            steps = log.get("steps")
            if steps is not None and not isinstance(steps, (list, tuple)):
                raise ValidationError(f"Record {log['id']} steps must be a list")
        return True

    @staticmethod
    def generate_export_stats(records: Sequence[Dict[str, Any]]) -> Dict[str, int]:
        stats = {
            "total_logs": len(records),
            "completed_logs": sum(1 for log in records if log.get("status") == "completed"),
            "failed_logs": sum(1 for log in records if log.get("status") == "failed"),
            "total_steps": 0,
            "total_photos": 0,
        }
        for log in records:
            steps = log.get("steps") or []
            stats["total_steps"] += len(steps)
            for step in steps:
                stats["total_photos"] += len(step.get("photos") or [])
        return stats


csv_export_service = CSVExportService()
