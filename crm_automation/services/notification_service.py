from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation.models.crm import Notification, Task
from crm_automation.schemas.automation import TriggerEvent
from crm_automation.services.job_queue import (
    AUTOMATION_QUEUE,
    EVALUATE_TRIGGER_JOB,
    NOTIFICATION_QUEUE,
    SEND_NOTIFICATION_JOB,
    JobQueue,
)

OPEN_TASK_STATUSES = ("TODO", "IN_PROGRESS")
TASK_OVERDUE_TRIGGER = "TASK_OVERDUE"


@dataclass(frozen=True)
class ScanSummary:
    scanned: int
    enqueued: int
    deduplicated: int


def deliver_notification(
    db: Session,
    *,
    user_id: str,
    title: str,
    body: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    notification_type: str | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=notification_type or "automation",
        title=title[:255],
        body=body,
        entity_type=entity_type,
        entity_id=entity_id,
    )
    db.add(notification)
    db.flush()
    return notification


def scan_overdue_tasks(db: Session, *, job_queue: JobQueue, now: datetime | None = None) -> ScanSummary:
    """Notify assignees of overdue open tasks and raise TASK_OVERDUE triggers.

    Job ids carry the UTC date, so each task is reported at most once a day.
    """
    current = now or datetime.now(timezone.utc)
    day = current.date().isoformat()
    tasks = db.execute(
        select(Task.id, Task.title, Task.assignee_id)
        .where(
            Task.status.in_(OPEN_TASK_STATUSES),
            Task.due_date.is_not(None),
            Task.due_date < current,
            Task.assignee_id.is_not(None),
        )
        .order_by(Task.due_date.asc(), Task.id.asc())
    ).all()

    enqueued = 0
    deduplicated = 0
    for task in tasks:
        notified = job_queue.enqueue(
            NOTIFICATION_QUEUE,
            SEND_NOTIFICATION_JOB,
            {
                "user_id": task.assignee_id,
                "title": "Task overdue",
                "body": f'"{task.title}" is past due',
                "type": "task_overdue",
                "entity_type": "task",
                "entity_id": task.id,
            },
            job_id=f"overdue:{task.id}:{day}",
        )
        trigger = TriggerEvent(trigger=TASK_OVERDUE_TRIGGER, entity_type="task", entity_id=task.id, depth=0)
        triggered = job_queue.enqueue(
            AUTOMATION_QUEUE,
            EVALUATE_TRIGGER_JOB,
            trigger.model_dump(mode="json", exclude={"job_id"}),
            job_id=f"trigger:{TASK_OVERDUE_TRIGGER}:{task.id}:{day}",
        )
        enqueued += int(notified) + int(triggered)
        deduplicated += int(not notified) + int(not triggered)

    return ScanSummary(scanned=len(tasks), enqueued=enqueued, deduplicated=deduplicated)
