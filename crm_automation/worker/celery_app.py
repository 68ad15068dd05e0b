from celery import Celery

from crm_automation.core.config import settings
from crm_automation.services.idempotency import get_idempotency_store
from crm_automation.services.job_queue import AUTOMATION_QUEUE, QUEUE_POLICIES, CeleryJobQueue
from crm_automation.services.scheduler import register_recurring_jobs

celery_app = Celery(
    "crm_automation",
    broker=settings.broker_url,
    include=["crm_automation.worker.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_backend=None,
    task_ignore_result=True,
    timezone="UTC",
    enable_utc=True,
    # At-least-once: ack after the handler returns, requeue if the process dies.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=settings.task_time_limit_seconds,
    task_default_queue=AUTOMATION_QUEUE,
    task_routes={policy.task_name: {"queue": policy.name} for policy in QUEUE_POLICIES.values()},
    broker_connection_retry_on_startup=True,
)

register_recurring_jobs(celery_app)


def get_job_queue() -> CeleryJobQueue:
    return CeleryJobQueue(celery_app, get_idempotency_store())
