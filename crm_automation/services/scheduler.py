from datetime import datetime, timedelta, timezone
from typing import Any

from celery import Celery
from celery.schedules import crontab
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.models.crm import Deal, PipelineStage
from crm_automation.schemas.automation import TriggerEvent
from crm_automation.services.job_queue import (
    ANALYTICS_QUEUE,
    AUTOMATION_QUEUE,
    CHECK_OVERDUE_TASKS_JOB,
    CHECK_STALE_DEALS_JOB,
    DAILY_PIPELINE_SNAPSHOT_JOB,
    EVALUATE_TRIGGER_JOB,
    NOTIFICATION_QUEUE,
    REFRESH_PIPELINE_STATS_JOB,
    JobQueue,
    get_queue_policy,
)
from crm_automation.services.notification_service import ScanSummary

NO_ACTIVITY_TRIGGER = "NO_ACTIVITY_DAYS"

RECURRING_JOBS: dict[str, tuple[str, Any]] = {
    REFRESH_PIPELINE_STATS_JOB: (ANALYTICS_QUEUE, timedelta(hours=2)),
    DAILY_PIPELINE_SNAPSHOT_JOB: (ANALYTICS_QUEUE, crontab(minute=0, hour=2)),
    CHECK_OVERDUE_TASKS_JOB: (NOTIFICATION_QUEUE, timedelta(minutes=30)),
    CHECK_STALE_DEALS_JOB: (AUTOMATION_QUEUE, crontab(minute=0, hour=9)),
}


def register_recurring_jobs(app: Celery) -> None:
    """Install the periodic jobs into the beat schedule, keyed by job name.

    Calling it again replaces the same entries instead of adding duplicates.
    """
    entries = {}
    for job_name, (queue_name, schedule) in RECURRING_JOBS.items():
        entries[job_name] = {
            "task": get_queue_policy(queue_name).task_name,
            "schedule": schedule,
            "args": [job_name, {}],
            "options": {"queue": queue_name},
        }
    app.conf.beat_schedule.update(entries)


def scan_stale_deals(
    db: Session,
    *,
    job_queue: JobQueue,
    now: datetime | None = None,
    stale_days: int | None = None,
) -> ScanSummary:
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(days=stale_days or settings.stale_deal_days)
    day = current.date().isoformat()

    deals = db.execute(
        select(Deal.id)
        .outerjoin(PipelineStage, PipelineStage.id == Deal.stage_id)
        .where(
            Deal.status == "OPEN",
            or_(
                Deal.stage_id.is_(None),
                and_(PipelineStage.is_won.is_(False), PipelineStage.is_lost.is_(False)),
            ),
            func.coalesce(Deal.last_activity_at, Deal.created_at) < cutoff,
        )
        .order_by(Deal.id.asc())
    ).scalars().all()

    enqueued = 0
    for deal_id in deals:
        event = TriggerEvent(trigger=NO_ACTIVITY_TRIGGER, entity_type="deal", entity_id=deal_id, depth=0)
        if job_queue.enqueue(
            AUTOMATION_QUEUE,
            EVALUATE_TRIGGER_JOB,
            event.model_dump(mode="json", exclude={"job_id"}),
            job_id=f"trigger:{NO_ACTIVITY_TRIGGER}:{deal_id}:{day}",
        ):
            enqueued += 1

    return ScanSummary(scanned=len(deals), enqueued=enqueued, deduplicated=len(deals) - enqueued)
