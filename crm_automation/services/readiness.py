import time
from dataclasses import dataclass
from typing import Callable

from celery import Celery
from kombu.exceptions import OperationalError as BrokerOperationalError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_automation.core.errors import InfrastructureError
from crm_automation.services.idempotency import IdempotencyStore


@dataclass(frozen=True)
class ReadinessCheck:
    name: str
    ok: bool
    latency_ms: float
    detail: str | None = None


def _timed(name: str, check: Callable[[], None], errors: tuple[type[Exception], ...]) -> ReadinessCheck:
    started = time.perf_counter()
    try:
        check()
    except errors as exc:
        return ReadinessCheck(
            name=name,
            ok=False,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            detail=str(exc)[:300] or type(exc).__name__,
        )
    return ReadinessCheck(name=name, ok=True, latency_ms=round((time.perf_counter() - started) * 1000, 2))


def check_database(session_factory: Callable[[], Session]) -> ReadinessCheck:
    def _check() -> None:
        with session_factory() as db:
            db.execute(text("SELECT 1"))

    return _timed("database", _check, (SQLAlchemyError,))


def check_idempotency_store(store: IdempotencyStore) -> ReadinessCheck:
    return _timed(f"idempotency:{store.name}", store.ping, (InfrastructureError, SQLAlchemyError))


def check_broker(app: Celery, *, timeout_seconds: float = 3.0) -> ReadinessCheck:
    def _check() -> None:
        with app.connection_for_write() as connection:
            connection.ensure_connection(max_retries=1, timeout=timeout_seconds)

    return _timed("broker", _check, (BrokerOperationalError, ConnectionError, OSError))


def run_readiness_checks(
    *,
    session_factory: Callable[[], Session],
    idempotency_store: IdempotencyStore,
    broker_app: Celery | None = None,
) -> list[ReadinessCheck]:
    checks = [
        check_database(session_factory),
        check_idempotency_store(idempotency_store),
    ]
    if broker_app is not None:
        checks.append(check_broker(broker_app))
    return checks
