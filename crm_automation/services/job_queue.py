import logging
from dataclasses import dataclass
from typing import Any, Protocol

from celery import Celery
from kombu.exceptions import OperationalError as BrokerOperationalError

from crm_automation.core.config import settings
from crm_automation.core.errors import InfrastructureError
from crm_automation.core.observability import log_event, worker_logger
from crm_automation.services.idempotency import IdempotencyStore, enqueue_dedup_key

AUTOMATION_QUEUE = "automation"
NOTIFICATION_QUEUE = "notification"
EMAIL_QUEUE = "email"
ANALYTICS_QUEUE = "analytics"

EVALUATE_TRIGGER_JOB = "evaluate-trigger"
CHECK_STALE_DEALS_JOB = "check-stale-deals"
SEND_NOTIFICATION_JOB = "send"
CHECK_OVERDUE_TASKS_JOB = "check-overdue-tasks"
SEND_EMAIL_JOB = "send-email"
REFRESH_PIPELINE_STATS_JOB = "refresh-pipeline-stats"
DAILY_PIPELINE_SNAPSHOT_JOB = "daily-pipeline-snapshot"


@dataclass(frozen=True)
class QueuePolicy:
    name: str
    task_name: str
    max_attempts: int
    concurrency: int
    rate_limit: str | None = None

    @property
    def max_retries(self) -> int:
        return max(self.max_attempts - 1, 0)


QUEUE_POLICIES: dict[str, QueuePolicy] = {
    AUTOMATION_QUEUE: QueuePolicy(
        name=AUTOMATION_QUEUE,
        task_name="crm_automation.automation.process",
        max_attempts=settings.queue_default_attempts,
        concurrency=settings.automation_concurrency,
    ),
    NOTIFICATION_QUEUE: QueuePolicy(
        name=NOTIFICATION_QUEUE,
        task_name="crm_automation.notification.process",
        max_attempts=settings.queue_notification_attempts,
        concurrency=settings.notification_concurrency,
    ),
    EMAIL_QUEUE: QueuePolicy(
        name=EMAIL_QUEUE,
        task_name="crm_automation.email.process",
        max_attempts=settings.queue_email_attempts,
        concurrency=settings.email_concurrency,
        rate_limit=settings.email_rate_limit,
    ),
    ANALYTICS_QUEUE: QueuePolicy(
        name=ANALYTICS_QUEUE,
        task_name="crm_automation.analytics.process",
        max_attempts=settings.queue_default_attempts,
        concurrency=settings.analytics_concurrency,
    ),
}


def get_queue_policy(queue_name: str) -> QueuePolicy:
    policy = QUEUE_POLICIES.get(queue_name)
    if not policy:
        available = ", ".join(sorted(QUEUE_POLICIES))
        raise ValueError(f"Unknown queue '{queue_name}'. Available: {available}")
    return policy


class JobQueue(Protocol):
    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        *,
        job_id: str | None = None,
        delay_seconds: int | None = None,
    ) -> bool:
        ...


class CeleryJobQueue:
    """Publishes jobs as Celery messages, one task per queue.

    A caller-supplied job id is claimed in the idempotency store first, so
    re-enqueueing the same id inside the TTL is dropped.
    """

    def __init__(
        self,
        app: Celery,
        idempotency_store: IdempotencyStore,
        *,
        job_id_ttl_seconds: int | None = None,
    ):
        self._app = app
        self._store = idempotency_store
        self._job_id_ttl_seconds = job_id_ttl_seconds or settings.queue_job_id_ttl_seconds

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        *,
        job_id: str | None = None,
        delay_seconds: int | None = None,
    ) -> bool:
        policy = get_queue_policy(queue_name)
        dedup_key = enqueue_dedup_key(queue_name, job_id) if job_id else None
        if dedup_key and not self._store.claim(dedup_key, self._job_id_ttl_seconds):
            log_event(
                worker_logger,
                "job_deduplicated",
                level=logging.DEBUG,
                queue=queue_name,
                job_name=job_name,
                job_id=job_id,
            )
            return False

        try:
            result = self._app.send_task(
                policy.task_name,
                args=[job_name, payload],
                queue=queue_name,
                task_id=job_id,
                countdown=delay_seconds,
            )
        except BrokerOperationalError as exc:
            if dedup_key:
                self._store.release(dedup_key)
            raise InfrastructureError(f"Broker rejected {queue_name}/{job_name}: {exc}") from exc

        log_event(
            worker_logger,
            "job_enqueued",
            queue=queue_name,
            job_name=job_name,
            job_id=result.id,
            delay_seconds=delay_seconds,
        )
        return True


def enqueue_once(
    queue: JobQueue,
    queue_name: str,
    job_name: str,
    payload: dict[str, Any],
    idempotency_key: str,
    ttl_seconds: int = 300,
    *,
    idempotency_store: IdempotencyStore,
    job_id: str | None = None,
) -> bool:
    """Enqueue unless the same key was enqueued on this queue within `ttl_seconds`."""
    if not idempotency_store.claim(enqueue_dedup_key(queue_name, idempotency_key), ttl_seconds):
        return False
    return queue.enqueue(queue_name, job_name, payload, job_id=job_id)
