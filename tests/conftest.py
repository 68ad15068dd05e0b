import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("INTERNAL_API_TOKEN", "test-internal-token")

import crm_automation.models  # noqa: F401
from crm_automation.core.config import settings
from crm_automation.core.deps import get_db, get_idempotency_store, get_job_queue
from crm_automation.db.base import Base
from crm_automation.main import app

from fakes import FakeJobQueue, InMemoryIdempotencyStore


@pytest.fixture()
def session_local():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def job_queue():
    return FakeJobQueue()


@pytest.fixture()
def idempotency_store():
    return InMemoryIdempotencyStore()


@pytest.fixture()
def test_context(session_local, job_queue, idempotency_store):
    original_token = settings.internal_api_token
    settings.internal_api_token = "test-internal-token"

    def override_get_db():
        session = session_local()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    app.dependency_overrides[get_idempotency_store] = lambda: idempotency_store

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    settings.internal_api_token = original_token
