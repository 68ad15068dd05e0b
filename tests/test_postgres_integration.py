import os
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker

from crm_automation.services.idempotency import SqlIdempotencyStore


def _test_pg_url() -> str | None:
    return os.getenv("TEST_POSTGRES_DATABASE_URL")


def _alembic_config() -> Config:
    project_root = Path(__file__).resolve().parents[1]
    return Config(str(project_root / "alembic.ini"))


@pytest.mark.integration
def test_migrations_create_engine_tables():
    url = _test_pg_url()
    if not url:
        pytest.skip("Set TEST_POSTGRES_DATABASE_URL to run Postgres integration tests.")

    previous_database_url = os.environ.get("DATABASE_URL")
    os.environ["DATABASE_URL"] = url
    try:
        command.upgrade(_alembic_config(), "head")
    finally:
        if previous_database_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = previous_database_url

    engine = create_engine(url, pool_pre_ping=True)
    with engine.connect() as conn:
        assert conn.execute(text("SELECT 1")).scalar_one() == 1

    table_names = set(inspect(engine).get_table_names())
    assert {"automation_rules", "automation_logs", "idempotency_keys", "dead_letter_jobs"} <= table_names
    assert {"pipeline_stage_stats", "pipeline_snapshots"} <= table_names


@pytest.mark.integration
def test_sql_idempotency_claim_is_atomic_on_postgres():
    url = _test_pg_url()
    if not url:
        pytest.skip("Set TEST_POSTGRES_DATABASE_URL to run Postgres integration tests.")

    engine = create_engine(url, pool_pre_ping=True)
    if "idempotency_keys" not in inspect(engine).get_table_names():
        pytest.skip("Run alembic upgrade head against TEST_POSTGRES_DATABASE_URL first.")

    store = SqlIdempotencyStore(sessionmaker(bind=engine))
    key = f"automation:exec:pg-test:{os.getpid()}:job"
    try:
        assert store.claim(key, 60) is True
        assert store.claim(key, 60) is False
    finally:
        store.release(key)
