import json
import logging
import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crm_automation.core.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
# Set while a worker task runs so every worker log line names its job.
job_ctx: ContextVar[dict[str, Any] | None] = ContextVar("job", default=None)

logger = logging.getLogger("crm_automation.api")
worker_logger = logging.getLogger("crm_automation.worker")


def setup_observability(level: str | None = None) -> None:
    resolved = logging.getLevelName((level or settings.log_level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    for target in (logger, worker_logger):
        target.setLevel(resolved)
        if target.handlers:
            continue
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        target.addHandler(handler)
        target.propagate = False


def get_request_id() -> str:
    return request_id_ctx.get()


@contextmanager
def job_context(*, queue: str, job_name: str, job_id: str | None, attempt: int = 1) -> Iterator[None]:
    token = job_ctx.set({"queue": queue, "job_name": job_name, "job_id": job_id, "attempt": attempt})
    try:
        yield
    finally:
        job_ctx.reset(token)


def log_event(target: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    if not target.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    job = job_ctx.get()
    if job and target is worker_logger:
        payload.update(job)
    payload.update(fields)
    target.log(level, json.dumps(payload, default=str))


def _resolve_request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("x-request-id")
        or get_request_id()
    )


STATUS_CODE_MAP = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
    503: "service_unavailable",
}


def error_body(*, code: str, message: str, request_id: str, path: str, details: list[dict] | None = None) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": request_id,
            "path": path,
            "details": details,
        }
    }


def _error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    code: str | None = None,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content=error_body(
            code=code or STATUS_CODE_MAP.get(status_code, "http_error"),
            message=message,
            request_id=_resolve_request_id(request),
            path=request.url.path,
            details=details,
        ),
    )


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        log_event(
            logger,
            "request",
            level=logging.WARNING if status_code >= 500 else logging.INFO,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        request_id_ctx.reset(token)

    response.headers["X-Request-ID"] = request_id
    return response


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, str):
        return _error_response(request, status_code=exc.status_code, message=exc.detail, headers=exc.headers)
    return _error_response(
        request,
        status_code=exc.status_code,
        message="HTTP error",
        details=exc.detail,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", []) if part not in ("body", "query", "header")]
        details.append(
            {
                "field": ".".join(location) if location else "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )
    return _error_response(request, status_code=422, message="Validation failed", details=details)


async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        logger,
        "unhandled_exception",
        level=logging.ERROR,
        request_id=_resolve_request_id(request),
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(limit=10),
    )
    return _error_response(request, status_code=500, message="Internal server error")
