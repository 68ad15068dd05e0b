"""Per-queue job dispatch, independent of the Celery runtime.

Each handler receives an open session and returns a JSON-safe summary. The
caller owns the transaction.
"""

import logging
from dataclasses import asdict
from typing import Any

from sqlalchemy.orm import Session

from crm_automation.core.observability import log_event, worker_logger
from crm_automation.schemas.automation import TriggerEvent
from crm_automation.services.analytics_service import refresh_pipeline_stats, take_pipeline_snapshot
from crm_automation.services.automation_engine import handle_trigger_event
from crm_automation.services.email_service import EmailProvider, send_automation_email
from crm_automation.services.idempotency import IdempotencyStore
from crm_automation.services.job_queue import (
    ANALYTICS_QUEUE,
    AUTOMATION_QUEUE,
    CHECK_OVERDUE_TASKS_JOB,
    CHECK_STALE_DEALS_JOB,
    DAILY_PIPELINE_SNAPSHOT_JOB,
    EMAIL_QUEUE,
    EVALUATE_TRIGGER_JOB,
    NOTIFICATION_QUEUE,
    REFRESH_PIPELINE_STATS_JOB,
    SEND_EMAIL_JOB,
    SEND_NOTIFICATION_JOB,
    JobQueue,
)
from crm_automation.services.notification_service import deliver_notification, scan_overdue_tasks
from crm_automation.services.scheduler import scan_stale_deals


def _ignore_unknown_job(queue_name: str, job_name: str, job_id: str | None) -> None:
    log_event(
        worker_logger,
        "job_unknown_ignored",
        level=logging.WARNING,
        queue=queue_name,
        job_name=job_name,
        job_id=job_id,
    )
    return None


def handle_automation_job(
    db: Session,
    job_name: str,
    payload: dict[str, Any],
    *,
    job_id: str | None,
    job_queue: JobQueue,
    idempotency_store: IdempotencyStore,
) -> dict[str, Any] | None:
    if job_name == EVALUATE_TRIGGER_JOB:
        # The delivering job id scopes the per-rule execution claim.
        event = TriggerEvent.model_validate({**payload, "job_id": job_id})
        outcome = handle_trigger_event(
            db,
            event,
            job_queue=job_queue,
            idempotency_store=idempotency_store,
        )
        return asdict(outcome)
    if job_name == CHECK_STALE_DEALS_JOB:
        return asdict(scan_stale_deals(db, job_queue=job_queue))
    return _ignore_unknown_job(AUTOMATION_QUEUE, job_name, job_id)


def handle_notification_job(
    db: Session,
    job_name: str,
    payload: dict[str, Any],
    *,
    job_id: str | None,
    job_queue: JobQueue,
) -> dict[str, Any] | None:
    if job_name == SEND_NOTIFICATION_JOB:
        notification = deliver_notification(
            db,
            user_id=payload["user_id"],
            title=payload["title"],
            body=payload.get("body"),
            entity_type=payload.get("entity_type"),
            entity_id=payload.get("entity_id"),
            notification_type=payload.get("type"),
        )
        return {"notification_id": notification.id}
    if job_name == CHECK_OVERDUE_TASKS_JOB:
        return asdict(scan_overdue_tasks(db, job_queue=job_queue))
    return _ignore_unknown_job(NOTIFICATION_QUEUE, job_name, job_id)


def handle_email_job(
    db: Session,
    job_name: str,
    payload: dict[str, Any],
    *,
    job_id: str | None,
    provider: EmailProvider | None = None,
) -> dict[str, Any] | None:
    if job_name == SEND_EMAIL_JOB:
        result = send_automation_email(
            db,
            to=payload["to"],
            subject=payload["subject"],
            body=payload.get("body") or "",
            contact_id=payload.get("contact_id"),
            user_id=payload.get("user_id"),
            provider=provider,
        )
        log_event(
            worker_logger,
            "email_sent",
            job_id=job_id,
            provider=result.provider,
            message_id=result.message_id,
            to=payload["to"],
        )
        return asdict(result)
    return _ignore_unknown_job(EMAIL_QUEUE, job_name, job_id)


def handle_analytics_job(
    db: Session,
    job_name: str,
    payload: dict[str, Any],
    *,
    job_id: str | None,
) -> dict[str, Any] | None:
    if job_name == REFRESH_PIPELINE_STATS_JOB:
        return {"stages": refresh_pipeline_stats(db)}
    if job_name == DAILY_PIPELINE_SNAPSHOT_JOB:
        return {"pipelines": take_pipeline_snapshot(db)}
    return _ignore_unknown_job(ANALYTICS_QUEUE, job_name, job_id)
