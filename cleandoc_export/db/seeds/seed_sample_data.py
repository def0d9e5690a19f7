"""Seed a demo tenant with one day of cleaning activity."""

import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from cleandoc_export.models.tenant import TenantExportSettings
from cleandoc_export.models.activity import CleaningLog, CleaningLogStep, LogStepPhoto, LogSignature

DEMO_TENANT_ID = "demo-tenant"


def _id() -> str:
    return str(uuid.uuid4())


def seed_sample_data(db: Session, report_date: str = None) -> None:
    """Insert the demo tenant and cleaning logs for ``report_date`` (default yesterday)."""

    tenant = db.query(TenantExportSettings).filter(TenantExportSettings.tenant_id == DEMO_TENANT_ID).first()
    if not tenant:
        tenant = TenantExportSettings(
            tenant_id=DEMO_TENANT_ID,
            company_name="Bäckerei Müller GmbH",
            company_location="Hauptstraße 12, 80331 München",
            retention_days=730,
            email_recipients_json=json.dumps(["qm@baeckerei-mueller.example"]),
            delivery_channels_json=json.dumps(["email"]),
        )
        db.add(tenant)
        db.flush()

    day = (
        datetime.strptime(report_date, "%Y-%m-%d")
        if report_date
        else datetime.now(timezone.utc).replace(tzinfo=None, hour=0, minute=0, second=0, microsecond=0) - timedelta(days=1)
    )
    existing = (
        db.query(CleaningLog)
        .filter(CleaningLog.tenant_id == DEMO_TENANT_ID)
        .filter(CleaningLog.started_at >= day, CleaningLog.started_at < day + timedelta(days=1))
        .first()
    )
    if existing:
        print(f"⚠️  Sample logs for {day.date()} already exist")
        return

    areas = [
        ("Backstube", "Teigknetmaschine", "completed"),
        ("Verkaufsraum", "Kühltheke", "completed"),
        ("Lager", "Bodenreinigung", "in_progress"),
    ]
    for index, (site, area, status) in enumerate(areas):
        started = day + timedelta(hours=6 + index * 2)
        log = CleaningLog(
            id=_id(),
            tenant_id=DEMO_TENANT_ID,
            cleaning_plan_id=_id(),
            site_name=site,
            area_name=area,
            status=status,
            started_at=started,
            completed_at=started + timedelta(minutes=45) if status == "completed" else None,
            created_by="seed",
            worker_name="Anna Schmidt",
        )
        db.add(log)

        step_defs = [
            ("Grobreinigung", None, None),
            ("Desinfektion", "Incidin Plus 0,5%", 300),
            ("Nachspülen", None, None),
        ]
        for sequence, (name, chemical, dwell) in enumerate(step_defs, start=1):
            done = status == "completed" or sequence == 1
            step = CleaningLogStep(
                id=_id(),
                log_id=log.id,
                sequence=sequence,
                name=name,
                chemical=chemical,
                dwell_time_seconds=dwell,
                status="completed" if done else "pending",
                completed_at=started + timedelta(minutes=15 * sequence) if done else None,
                completed_by="seed" if done else None,
                worker_name="Anna Schmidt" if done else None,
            )
            db.add(step)
            if done and chemical:
                db.add(LogStepPhoto(
                    id=_id(),
                    step_id=step.id,
                    s3_key=f"photos/{DEMO_TENANT_ID}/{step.id}.jpg",
                    width=1920,
                    height=1080,
                    content_type="image/jpeg",
                    sha256_hash=hashlib.sha256(step.id.encode()).hexdigest(),
                    taken_at=step.completed_at,
                    uploaded_by="seed",
                ))

        if status == "completed":
            db.add(LogSignature(
                log_id=log.id,
                signed_role="worker",
                signer_name="Anna Schmidt",
                signed_at=log.completed_at,
            ))
            db.add(LogSignature(
                log_id=log.id,
                signed_role="supervisor",
                signer_name="Peter Wagner",
                signed_at=log.completed_at + timedelta(minutes=10),
            ))

    db.commit()
    print(f"✅ Demo tenant '{DEMO_TENANT_ID}' seeded with {len(areas)} logs for {day.date()}")
