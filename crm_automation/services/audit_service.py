from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from crm_automation.core.errors import short_error
from crm_automation.models.automation import AutomationLog, AutomationRule

SYSTEM_AUTOMATION_ID = "system"


def find_active_by_trigger(db: Session, trigger: str) -> list[AutomationRule]:
    return list(
        db.execute(
            select(AutomationRule)
            .where(
                AutomationRule.trigger == trigger,
                AutomationRule.is_active.is_(True),
            )
            .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
        ).scalars()
    )


def increment_run_stats(db: Session, *, rule_id: str, now: datetime | None = None) -> None:
    # Single UPDATE so concurrent workers never lose an increment.
    db.execute(
        update(AutomationRule)
        .where(AutomationRule.id == rule_id)
        .values(
            run_count=AutomationRule.run_count + 1,
            last_run_at=now or datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )


def append_automation_log(
    db: Session,
    *,
    automation_id: str,
    status: str,
    entity_type: str,
    entity_id: str,
    trigger: str | None = None,
    depth: int = 0,
    job_id: str | None = None,
    error: str | None = None,
) -> AutomationLog:
    entry = AutomationLog(
        automation_id=automation_id,
        status=status,
        entity_type=entity_type,
        entity_id=entity_id,
        trigger=trigger,
        depth=depth,
        job_id=job_id,
        error=short_error(error) if error is not None else None,
    )
    db.add(entry)
    return entry


def list_automation_logs(
    db: Session,
    *,
    automation_id: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AutomationLog], int]:
    filters = [AutomationLog.automation_id == automation_id]
    if status:
        filters.append(AutomationLog.status == status)

    total = db.execute(select(func.count(AutomationLog.id)).where(*filters)).scalar_one()
    items = db.execute(
        select(AutomationLog)
        .where(*filters)
        .order_by(AutomationLog.created_at.desc(), AutomationLog.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(items), int(total)


def list_loop_detections(db: Session, *, limit: int = 50) -> list[AutomationLog]:
    return list(
        db.execute(
            select(AutomationLog)
            .where(
                AutomationLog.automation_id == SYSTEM_AUTOMATION_ID,
                AutomationLog.status == "skipped",
            )
            .order_by(AutomationLog.created_at.desc(), AutomationLog.id.desc())
            .limit(limit)
        ).scalars()
    )
