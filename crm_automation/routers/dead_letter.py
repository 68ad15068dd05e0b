from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from crm_automation.core.api_docs import error_responses
from crm_automation.core.deps import get_db, require_internal_token
from crm_automation.schemas.automation import DeadLetterJobListOut, DeadLetterJobOut
from crm_automation.schemas.common import pagination_meta
from crm_automation.services.dead_letter import list_dead_letters
from crm_automation.services.job_queue import QUEUE_POLICIES

router = APIRouter(
    prefix="/dead-letter-jobs",
    tags=["dead-letter"],
    dependencies=[Depends(require_internal_token)],
)


@router.get(
    "",
    response_model=DeadLetterJobListOut,
    summary="List permanently failed jobs",
    responses=error_responses(401, 422, 500, path="/dead-letter-jobs"),
)
def list_dead_letter_jobs(
    queue: str | None = Query(default=None, description=f"One of: {', '.join(sorted(QUEUE_POLICIES))}"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items, total = list_dead_letters(db, queue_name=queue, limit=limit, offset=offset)
    return DeadLetterJobListOut(
        items=[DeadLetterJobOut.model_validate(item) for item in items],
        pagination=pagination_meta(total=total, limit=limit, offset=offset, count=len(items)),
    )
