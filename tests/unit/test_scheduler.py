"""Scheduler tests: daily run, skip logic, pacing, retention and cron parsing."""

from datetime import datetime, timedelta, timezone

import pytest
from celery.schedules import crontab

from cleandoc_export.core.exceptions import ValidationError
from cleandoc_export.models.audit_event import AuditEvent
from cleandoc_export.models.export_record import ExportRecord, ExportStatus
from cleandoc_export.services.audit_service import AuditService
from cleandoc_export.services.scheduler_service import ExportScheduler, build_crontab
from tests.factories import add_export_record, add_tenant


class FakeOrchestrator:
    """Records calls; tenants listed in ``failing`` raise."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def generate_daily_export(self, tenant_id, report_date, options=None):
        self.calls.append((tenant_id, report_date))
        if tenant_id in self.failing:
            raise RuntimeError(f"generation failed for {tenant_id}")
        return {"export_id": f"export-{tenant_id}", "download_urls": {}, "stats": {}, "processing_time_ms": 1}


@pytest.fixture
def make_scheduler(session_factory, storage, no_sleep):
    def _make(orchestrator=None):
        return ExportScheduler(
            orchestrator=orchestrator or FakeOrchestrator(),
            session_factory=session_factory,
            storage=storage,
            audit=AuditService(),
            pacing_seconds=1.0,
            sleep=no_sleep,
            timezone_name="Europe/Berlin",
        )
    return _make


@pytest.mark.unit
class TestDailyRun:
    """run_daily_exports"""

    def test_runs_every_exporting_tenant(self, db, make_scheduler):
        add_tenant(db, "tenant-a")
        add_tenant(db, "tenant-b")
        add_tenant(db, "tenant-off", export_enabled=False)
        add_tenant(db, "tenant-inactive", active=False)
        orchestrator = FakeOrchestrator()

        results = make_scheduler(orchestrator).run_daily_exports("2024-03-15")

        assert sorted(orchestrator.calls) == [("tenant-a", "2024-03-15"), ("tenant-b", "2024-03-15")]
        assert all(r["status"] == "completed" for r in results)

    def test_pacing_between_tenants(self, db, make_scheduler, no_sleep):
        for name in ("tenant-a", "tenant-b", "tenant-c"):
            add_tenant(db, name)
        make_scheduler().run_daily_exports("2024-03-15")
        assert no_sleep.calls == [1.0, 1.0]

    def test_skips_any_existing_export(self, db, make_scheduler):
        add_tenant(db, "tenant-a")
        add_tenant(db, "tenant-b")
        add_tenant(db, "tenant-c")
        add_tenant(db, "tenant-d")
        existing = add_export_record(db, "tenant-a", "2024-03-15", ExportStatus.COMPLETED)
        add_export_record(db, "tenant-b", "2024-03-15", ExportStatus.PROCESSING)
        failed = add_export_record(db, "tenant-c", "2024-03-15", ExportStatus.FAILED)
        orchestrator = FakeOrchestrator()

        results = {r["tenant_id"]: r for r in make_scheduler(orchestrator).run_daily_exports("2024-03-15")}

        assert results["tenant-a"] == {"tenant_id": "tenant-a", "status": "skipped", "export_id": existing.id}
        assert results["tenant-b"]["status"] == "skipped"
        assert results["tenant-c"] == {"tenant_id": "tenant-c", "status": "skipped", "export_id": failed.id}
        assert orchestrator.calls == [("tenant-d", "2024-03-15")]

    def test_failure_does_not_stop_loop(self, db, make_scheduler):
        add_tenant(db, "tenant-a")
        add_tenant(db, "tenant-b")
        orchestrator = FakeOrchestrator(failing={"tenant-a"})

        results = {r["tenant_id"]: r for r in make_scheduler(orchestrator).run_daily_exports("2024-03-15")}

        assert results["tenant-a"]["status"] == "failed"
        assert "generation failed" in results["tenant-a"]["error"]
        assert results["tenant-b"]["status"] == "completed"
        audited = db.query(AuditEvent).filter(AuditEvent.action == "SCHEDULED_EXPORT_FAILED").one()
        assert audited.resource_id == "tenant-a"
        assert audited.status == "failure"

    def test_invalid_date_rejected(self, make_scheduler):
        with pytest.raises(ValidationError):
            make_scheduler().run_daily_exports("15.03.2024")

    def test_default_report_date_is_yesterday_in_berlin(self, make_scheduler):
        # 23:30 UTC is already the next day in Berlin (CET, +01:00)
        now = datetime(2024, 3, 15, 23, 30, tzinfo=timezone.utc)
        assert make_scheduler().default_report_date(now) == "2024-03-15"


@pytest.mark.unit
class TestRetentionCleanup:
    """run_retention_cleanup"""

    def test_deletes_old_objects_and_records(self, db, make_scheduler, fake_minio):
        now = datetime(2024, 3, 16, 3, 0, tzinfo=timezone.utc)
        add_tenant(db, "tenant-a", retention_days=730)
        fake_minio.put_raw("exports/tenant-a/2022/01/05/old.zip", b"x", now - timedelta(days=800))
        fake_minio.put_raw("exports/tenant-a/2022/04/11/new.zip", b"x", now - timedelta(days=700))
        add_export_record(db, "tenant-a", "2022-01-05", ExportStatus.COMPLETED)
        add_export_record(db, "tenant-a", "2022-04-11", ExportStatus.COMPLETED)

        results = make_scheduler().run_retention_cleanup(now=now)

        assert results == [{
            "tenant_id": "tenant-a",
            "success": True,
            "retention_days": 730,
            "deleted_objects": 1,
            "delete_errors": 0,
            "deleted_records": 1,
        }]
        db.expire_all()
        assert [r.report_date for r in db.query(ExportRecord).all()] == ["2022-04-11"]
        assert db.query(AuditEvent).filter(AuditEvent.action == "RETENTION_CLEANUP_COMPLETED").count() == 1

    def test_storage_failure_is_audited(self, db, make_scheduler, fake_minio):
        add_tenant(db, "tenant-a")

        def broken_list(*args, **kwargs):
            raise ConnectionError("MinIO unavailable")

        fake_minio.list_objects = broken_list
        results = make_scheduler().run_retention_cleanup()

        assert results[0]["success"] is False
        assert db.query(AuditEvent).filter(AuditEvent.action == "RETENTION_CLEANUP_FAILED").count() == 1


@pytest.mark.unit
class TestCrontab:
    """build_crontab"""

    def test_five_fields(self):
        schedule = build_crontab("0 2 * * *")
        assert isinstance(schedule, crontab)
        assert schedule.hour == {2}
        assert schedule.minute == {0}

    def test_six_fields_drop_seconds(self):
        schedule = build_crontab("0 0 3 * * 0")
        assert schedule.hour == {3}
        assert schedule.day_of_week == {0}

    @pytest.mark.parametrize("expression", ["", "0 2 * *", "0 2 * * * * *", "99 2 * * *"])
    def test_invalid(self, expression):
        with pytest.raises(ValidationError):
            build_crontab(expression)
