import hmac
from collections.abc import Iterator

from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.db.session import SessionLocal
from crm_automation.services.idempotency import IdempotencyStore, get_idempotency_store as _default_idempotency_store
from crm_automation.services.job_queue import JobQueue
from crm_automation.worker.celery_app import get_job_queue as _default_job_queue


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_job_queue() -> JobQueue:
    return _default_job_queue()


def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    expected = settings.internal_api_token.encode("utf-8")
    supplied = (x_internal_token or "").encode("utf-8")
    if not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid internal token",
        )


def get_idempotency_store() -> IdempotencyStore:
    return _default_idempotency_store()
