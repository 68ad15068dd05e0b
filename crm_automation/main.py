from dataclasses import asdict

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from crm_automation.core.config import settings
from crm_automation.core.observability import (
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from crm_automation.db.session import SessionLocal, engine
from crm_automation.routers import automation, dead_letter
from crm_automation.services.idempotency import get_idempotency_store
from crm_automation.services.readiness import run_readiness_checks
from crm_automation.worker.celery_app import celery_app

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Internal API of the CRM automation worker.\n\n"
        "Producers post trigger events to `POST /automations/events` with the "
        "`X-Internal-Token` header; operators inspect audit rows and dead-lettered jobs."
    ),
    openapi_tags=[
        {"name": "health", "description": "Liveness and dependency readiness."},
        {"name": "automation", "description": "Trigger-event ingestion and automation audit logs."},
        {"name": "dead-letter", "description": "Jobs that exhausted their retry budget."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(automation.router)
app.include_router(dead_letter.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "env": settings.env,
        "docs": "/docs",
        "health": "/health",
        "ready": "/health/ready",
    }


@app.get("/health", tags=["health"])
def health():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"ok": True}


@app.get("/health/ready", tags=["health"])
def ready():
    checks = run_readiness_checks(
        session_factory=SessionLocal,
        idempotency_store=get_idempotency_store(),
        broker_app=celery_app,
    )
    ok = all(item.ok for item in checks)
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"ok": ok, "checks": [asdict(item) for item in checks]},
    )
