from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_automation.core.errors import short_error
from crm_automation.models.queue import DeadLetterJob


def record_dead_letter(
    db: Session,
    *,
    queue_name: str,
    job_id: str | None,
    job_name: str,
    data: dict[str, Any] | None,
    failed_reason: str,
    attempts_made: int,
) -> DeadLetterJob:
    entry = DeadLetterJob(
        original_queue=queue_name,
        original_job_id=job_id,
        original_job_name=job_name,
        original_data=data,
        failed_reason=short_error(failed_reason, limit=2000),
        attempts_made=attempts_made,
    )
    db.add(entry)
    return entry


def list_dead_letters(
    db: Session,
    *,
    queue_name: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[DeadLetterJob], int]:
    filters = []
    if queue_name:
        filters.append(DeadLetterJob.original_queue == queue_name)

    total = db.execute(select(func.count(DeadLetterJob.id)).where(*filters)).scalar_one()
    items = db.execute(
        select(DeadLetterJob)
        .where(*filters)
        .order_by(DeadLetterJob.failed_at.desc(), DeadLetterJob.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(items), int(total)
