from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation.core.api_docs import error_responses
from crm_automation.core.deps import get_db, get_idempotency_store, get_job_queue, require_internal_token
from crm_automation.core.errors import InfrastructureError
from crm_automation.core.id_utils import generate_job_id
from crm_automation.models.automation import AutomationRule
from crm_automation.schemas.automation import (
    AutomationLogListOut,
    AutomationLogOut,
    AutomationLogStatus,
    TriggerEvent,
    TriggerEventAcceptedOut,
)
from crm_automation.schemas.common import pagination_meta
from crm_automation.services.audit_service import list_automation_logs, list_loop_detections
from crm_automation.services.idempotency import IdempotencyStore
from crm_automation.services.job_queue import AUTOMATION_QUEUE, EVALUATE_TRIGGER_JOB, JobQueue, enqueue_once

router = APIRouter(
    prefix="/automations",
    tags=["automation"],
    dependencies=[Depends(require_internal_token)],
)


@router.post(
    "/events",
    response_model=TriggerEventAcceptedOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a trigger event for rule evaluation",
    responses=error_responses(401, 422, 503, 500, path="/automations/events"),
)
def enqueue_trigger_event(
    payload: TriggerEvent,
    idempotency_key: str | None = Header(default=None, max_length=120),
    job_queue: JobQueue = Depends(get_job_queue),
    idempotency_store: IdempotencyStore = Depends(get_idempotency_store),
):
    job_id = generate_job_id("event")
    body = payload.model_dump(mode="json", exclude={"job_id"})
    try:
        if idempotency_key:
            queued = enqueue_once(
                job_queue,
                AUTOMATION_QUEUE,
                EVALUATE_TRIGGER_JOB,
                body,
                idempotency_key.strip(),
                idempotency_store=idempotency_store,
                job_id=job_id,
            )
        else:
            queued = job_queue.enqueue(AUTOMATION_QUEUE, EVALUATE_TRIGGER_JOB, body, job_id=job_id)
    except InfrastructureError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return TriggerEventAcceptedOut(job_id=job_id, queued=queued)


@router.get(
    "/logs/loops",
    response_model=list[AutomationLogOut],
    summary="Recent loop-detection audit rows",
    responses=error_responses(401, 500, path="/automations/logs/loops"),
)
def list_loops(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return [AutomationLogOut.model_validate(item) for item in list_loop_detections(db, limit=limit)]


@router.get(
    "/{rule_id}/logs",
    response_model=AutomationLogListOut,
    summary="Paginated audit rows for one rule",
    responses=error_responses(401, 404, 422, 500, path="/automations/{rule_id}/logs"),
)
def list_rule_logs(
    rule_id: str,
    status_filter: AutomationLogStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    exists = db.execute(select(AutomationRule.id).where(AutomationRule.id == rule_id)).scalar_one_or_none()
    if not exists:
        raise HTTPException(status_code=404, detail="Automation rule not found")

    items, total = list_automation_logs(
        db,
        automation_id=rule_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return AutomationLogListOut(
        items=[AutomationLogOut.model_validate(item) for item in items],
        pagination=pagination_meta(total=total, limit=limit, offset=offset, count=len(items)),
    )
