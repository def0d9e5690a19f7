"""Celery app, beat schedule and tasks for scheduled exports."""

import json

from celery import Celery
from cleandoc_export.core.config import settings
from cleandoc_export.services.scheduler_service import build_crontab

celery_app = Celery(
    "cleandoc_export",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SCHEDULER_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    worker_concurrency=1,  # tenants are processed sequentially
    task_soft_time_limit=3600,
    task_time_limit=4200,
    beat_schedule={
        "daily-exports": {
            "task": "run_daily_exports",
            "schedule": build_crontab(settings.DAILY_EXPORT_CRON),
        },
        "weekly-retention-cleanup": {
            "task": "run_retention_cleanup",
            "schedule": build_crontab(settings.CLEANUP_CRON),
        },
    },
)


@celery_app.task(name="run_daily_exports")
def run_daily_exports(report_date: str = None) -> list:
    """Daily trigger: export yesterday (or ``report_date``) for every tenant."""
    from cleandoc_export.services.scheduler_service import export_scheduler

    return export_scheduler.run_daily_exports(report_date)


@celery_app.task(name="run_retention_cleanup")
def run_retention_cleanup() -> list:
    """Weekly trigger: purge exports past each tenant's retention window."""
    from cleandoc_export.services.scheduler_service import export_scheduler

    return export_scheduler.run_retention_cleanup()


@celery_app.task(bind=True, name="generate_daily_export")
def generate_daily_export(self, tenant_id: str, report_date: str, options: dict = None) -> dict:
    """Run one export asynchronously and publish the outcome on ``export:<tenant>:<date>``."""
    from cleandoc_export.executor.orchestrator import export_orchestrator
    from cleandoc_export.schemas.schemas import ExportOptions
    from cleandoc_export.services.cache_service import cache_service

    channel = f"export:{tenant_id}:{report_date}"
    try:
        result = export_orchestrator.generate_daily_export(
            tenant_id, report_date, ExportOptions(**(options or {}))
        )
        cache_service.publish(
            channel, json.dumps({"export_id": result["export_id"], "status": "COMPLETED"})
        )
        return result
    except Exception as e:
        cache_service.publish(channel, json.dumps({"status": "FAILED", "error": str(e)}))
        raise
