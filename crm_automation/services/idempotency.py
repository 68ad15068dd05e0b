from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import redis
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.errors import InfrastructureError
from crm_automation.db.session import SessionLocal
from crm_automation.models.queue import IdempotencyKey


class IdempotencyStore(Protocol):
    name: str

    def claim(self, key: str, ttl_seconds: int) -> bool:
        ...

    def release(self, key: str) -> None:
        ...

    def ping(self) -> None:
        ...


def automation_exec_key(automation_id: str, entity_id: str, job_id: str | None) -> str:
    return f"automation:exec:{automation_id}:{entity_id}:{job_id or 'none'}"


def enqueue_dedup_key(queue_name: str, key: str) -> str:
    return f"idempotent:{queue_name}:{key}"


class SqlIdempotencyStore:
    """First-claim-wins keys in the `idempotency_keys` table.

    Each claim runs in its own short session and commits immediately, so a
    claim survives a rollback of the caller's unit of work.
    """

    name = "sql"

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def claim(self, key: str, ttl_seconds: int) -> bool:
        now = datetime.now(timezone.utc)
        with self._session_factory() as db:
            db.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.key == key,
                    IdempotencyKey.expires_at <= now,
                )
            )
            db.add(
                IdempotencyKey(
                    key=key,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                    created_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def release(self, key: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(IdempotencyKey).where(IdempotencyKey.key == key))
            db.commit()

    def ping(self) -> None:
        with self._session_factory() as db:
            db.execute(select(1))


class RedisIdempotencyStore:
    name = "redis"

    def __init__(self, client: redis.Redis):
        self._client = client

    def claim(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(self._client.set(key, "1", nx=True, ex=ttl_seconds))
        except redis.RedisError as exc:
            raise InfrastructureError(f"Idempotency claim failed for '{key}': {exc}") from exc

    def release(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise InfrastructureError(f"Idempotency release failed for '{key}': {exc}") from exc

    def ping(self) -> None:
        try:
            self._client.ping()
        except redis.RedisError as exc:
            raise InfrastructureError(f"Redis unavailable: {exc}") from exc


_STORES: dict[str, IdempotencyStore] = {}


def get_idempotency_store(backend: str | None = None) -> IdempotencyStore:
    normalized = (backend or settings.idempotency_backend).strip().lower()
    store = _STORES.get(normalized)
    if store:
        return store

    if normalized == "sql":
        store = SqlIdempotencyStore(SessionLocal)
    elif normalized == "redis":
        store = RedisIdempotencyStore(redis.Redis.from_url(settings.redis_url))
    else:
        raise ValueError(f"Unknown idempotency backend '{backend}'. Available: redis, sql")

    _STORES[normalized] = store
    return store
