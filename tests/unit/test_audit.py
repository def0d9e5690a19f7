"""Hash-chained audit trail tests."""

from datetime import datetime, timedelta, timezone

import pytest

from cleandoc_export.models.audit_event import AuditEvent
from cleandoc_export.services.audit_service import AuditService, compute_event_hash


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self):
        self.now = datetime(2024, 3, 16, 2, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def audit():
    return AuditService(clock=StepClock())


def _append(audit, db, count):
    return [
        audit.log_action(db, "EXPORT_COMPLETED", "daily_exports", resource_id=f"export-{i}", actor_id="user-1")
        for i in range(count)
    ]


@pytest.mark.unit
class TestLogAction:
    """Appending events"""

    def test_first_event_has_no_previous_hash(self, audit, db):
        result = audit.log_action(db, "EXPORT_COMPLETED", "daily_exports", resource_id="export-1")
        event = db.query(AuditEvent).one()
        assert result["id"] == event.id
        assert event.previous_hash is None
        assert event.timestamp == "2024-03-16T02:00:01.000Z"
        assert event.current_hash == compute_event_hash(
            None, "EXPORT_COMPLETED", "daily_exports", "export-1", event.timestamp, None
        )

    def test_events_are_linked(self, audit, db):
        first, second, third = _append(audit, db, 3)
        events = db.query(AuditEvent).order_by(AuditEvent.id).all()
        assert events[1].previous_hash == first["current_hash"]
        assert events[2].previous_hash == second["current_hash"]
        assert third["current_hash"] == events[2].current_hash

    def test_values_stored_as_json(self, audit, db):
        audit.log_action(db, "EXPORT_FAILED", "daily_exports", new_values={"error": "boom"}, status="failure")
        event = db.query(AuditEvent).one()
        assert event.new_values_json == '{"error": "boom"}'
        assert event.status == "failure"

    def test_actor_provider_failure_skips_event(self, audit, db):
        def broken_provider():
            raise RuntimeError("no session")

        result = audit.log_action(db, "EXPORT_COMPLETED", "daily_exports", actor_provider=broken_provider)
        assert result is None
        assert db.query(AuditEvent).count() == 0

    def test_actor_provider_value_used(self, audit, db):
        audit.log_action(db, "EXPORT_COMPLETED", "daily_exports", actor_provider=lambda: 42)
        assert db.query(AuditEvent).one().actor_id == "42"

    def test_storage_failure_is_swallowed(self, audit, db, engine):
        AuditEvent.__table__.drop(bind=engine)
        assert audit.log_action(db, "EXPORT_COMPLETED", "daily_exports") is None
        AuditEvent.__table__.create(bind=engine)


@pytest.mark.unit
class TestVerifyIntegrity:
    """Chain verification"""

    def test_valid_chain(self, audit, db):
        _append(audit, db, 5)
        report = AuditService.verify_integrity(db)
        assert report == {"valid": True, "checked": 5, "errors": []}

    def test_empty_log_is_valid(self, db):
        assert AuditService.verify_integrity(db)["valid"] is True

    def test_tampered_hash_detected_at_event_and_successor(self, audit, db):
        _append(audit, db, 5)
        events = db.query(AuditEvent).order_by(AuditEvent.id).all()
        tampered = events[2]
        tampered.current_hash = "0" * 64
        db.commit()

        report = AuditService.verify_integrity(db)

        assert report["valid"] is False
        found = {(e["event_id"], e["type"]) for e in report["errors"]}
        assert found == {
            (tampered.id, "hash_mismatch"),
            (events[3].id, "previous_hash_mismatch"),
        }

    def test_tampered_field_detected(self, audit, db):
        _append(audit, db, 3)
        event = db.query(AuditEvent).order_by(AuditEvent.id).all()[1]
        event.action = "EXPORT_FAILED"
        db.commit()

        errors = AuditService.verify_integrity(db)["errors"]
        assert [(e["event_id"], e["type"]) for e in errors] == [(event.id, "hash_mismatch")]

    def test_limit_window(self, audit, db):
        _append(audit, db, 5)
        assert AuditService.verify_integrity(db, limit=2)["checked"] == 2
        assert AuditService.verify_integrity(db, limit=0)["checked"] == 5


@pytest.mark.unit
class TestQueries:
    """get_audit_log / export_as_csv"""

    def test_newest_first_with_filters(self, audit, db):
        _append(audit, db, 3)
        audit.log_action(db, "RETENTION_CLEANUP_COMPLETED", "tenant", resource_id="tenant-1")

        events = AuditService.get_audit_log(db, {"action": "EXPORT_COMPLETED"}, limit=10)
        assert [e.resource_id for e in events] == ["export-2", "export-1", "export-0"]

        by_resource = AuditService.get_audit_log(db, {"resource_type": "tenant"})
        assert len(by_resource) == 1

    def test_time_window_filter(self, audit, db):
        _append(audit, db, 3)
        events = AuditService.get_audit_log(db, {"start_date": "2024-03-16T02:00:02Z"})
        assert len(events) == 2

    def test_csv_export(self, audit, db):
        _append(audit, db, 2)
        text = AuditService.export_as_csv(AuditService.get_audit_log(db))
        lines = text.strip().splitlines()
        assert lines[0].startswith("id,timestamp,actor_id,action")
        assert len(lines) == 3
