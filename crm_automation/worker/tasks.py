import logging
from typing import Any

from celery import Task
from kombu.exceptions import OperationalError as BrokerOperationalError
from sqlalchemy.exc import OperationalError

from crm_automation.core.config import settings
from crm_automation.core.errors import InfrastructureError
from crm_automation.core.observability import job_context, log_event, worker_logger
from crm_automation.db.session import SessionLocal
from crm_automation.services.dead_letter import record_dead_letter
from crm_automation.services.idempotency import get_idempotency_store
from crm_automation.services.job_queue import (
    ANALYTICS_QUEUE,
    AUTOMATION_QUEUE,
    EMAIL_QUEUE,
    NOTIFICATION_QUEUE,
    get_queue_policy,
)
from crm_automation.worker.celery_app import celery_app, get_job_queue
from crm_automation.worker.jobs import (
    handle_analytics_job,
    handle_automation_job,
    handle_email_job,
    handle_notification_job,
)

RETRYABLE_ERRORS = (
    OperationalError,
    InfrastructureError,
    BrokerOperationalError,
    ConnectionError,
    TimeoutError,
)


class QueueTask(Task):
    """Task base that forwards permanently failed jobs to `dead_letter_jobs`."""

    queue_name = ""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        job_name, payload = _job_args(args, kwargs)
        attempts_made = int(self.request.retries or 0) + 1
        with SessionLocal() as db:
            record_dead_letter(
                db,
                queue_name=self.queue_name,
                job_id=task_id,
                job_name=job_name,
                data=payload,
                failed_reason=str(exc) or type(exc).__name__,
                attempts_made=attempts_made,
            )
            db.commit()
        log_event(
            worker_logger,
            "job_dead_lettered",
            level=logging.ERROR,
            queue=self.queue_name,
            job_name=job_name,
            job_id=task_id,
            attempts_made=attempts_made,
            error=str(exc),
        )

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        job_name, _ = _job_args(args, kwargs)
        log_event(
            worker_logger,
            "job_retry_scheduled",
            level=logging.WARNING,
            queue=self.queue_name,
            job_name=job_name,
            job_id=task_id,
            retries=self.request.retries,
            error=str(exc),
        )


def _job_args(args: Any, kwargs: Any) -> tuple[str, dict[str, Any] | None]:
    values = list(args or [])
    job_name = values[0] if values else (kwargs or {}).get("job_name", "unknown")
    payload = values[1] if len(values) > 1 else (kwargs or {}).get("payload")
    return str(job_name), payload if isinstance(payload, dict) else None


def _task_options(queue_name: str) -> dict[str, Any]:
    policy = get_queue_policy(queue_name)
    return {
        "base": QueueTask,
        "bind": True,
        "name": policy.task_name,
        "queue_name": queue_name,
        "autoretry_for": RETRYABLE_ERRORS,
        "max_retries": policy.max_retries,
        # 3s, 6s, 12s, 24s, 48s with the default base.
        "retry_backoff": settings.queue_backoff_base_seconds,
        "retry_backoff_max": 600,
        "retry_jitter": False,
        "acks_late": True,
        "reject_on_worker_lost": True,
        "rate_limit": policy.rate_limit,
    }


def _running(task: QueueTask, job_name: str):
    return job_context(
        queue=task.queue_name,
        job_name=job_name,
        job_id=task.request.id,
        attempt=int(task.request.retries or 0) + 1,
    )


@celery_app.task(**_task_options(AUTOMATION_QUEUE))
def process_automation_job(self, job_name: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    with _running(self, job_name), SessionLocal() as db:
        result = handle_automation_job(
            db,
            job_name,
            payload,
            job_id=self.request.id,
            job_queue=get_job_queue(),
            idempotency_store=get_idempotency_store(),
        )
        db.commit()
    return result


@celery_app.task(**_task_options(NOTIFICATION_QUEUE))
def process_notification_job(self, job_name: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    with _running(self, job_name), SessionLocal() as db:
        result = handle_notification_job(
            db,
            job_name,
            payload,
            job_id=self.request.id,
            job_queue=get_job_queue(),
        )
        db.commit()
    return result


@celery_app.task(**_task_options(EMAIL_QUEUE))
def process_email_job(self, job_name: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    with _running(self, job_name), SessionLocal() as db:
        result = handle_email_job(db, job_name, payload, job_id=self.request.id)
        db.commit()
    return result


@celery_app.task(**_task_options(ANALYTICS_QUEUE))
def process_analytics_job(self, job_name: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    with _running(self, job_name), SessionLocal() as db:
        result = handle_analytics_job(db, job_name, payload, job_id=self.request.id)
        db.commit()
    return result
