"""initial automation engine schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(table_name: str) -> bool:
    inspector = sa.inspect(op.get_bind())
    return table_name in inspector.get_table_names()


def _index_exists(table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(op.get_bind())
    return any(index["name"] == index_name for index in inspector.get_indexes(table_name))


def _create_index(name: str, table_name: str, columns: list[str], unique: bool = False) -> None:
    if not _index_exists(table_name, name):
        op.create_index(name, table_name, columns, unique=unique)


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=36), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    if not _table_exists("users"):
        op.create_table(
            "users",
            _id(),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("full_name", sa.String(length=100), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="MEMBER"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            _updated_at(),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_users_email", "users", ["email"], unique=True)
    _create_index("ix_users_role_active", "users", ["role", "is_active"])

    if not _table_exists("companies"):
        op.create_table(
            "companies",
            _id(),
            sa.Column("name", sa.String(length=160), nullable=False),
            sa.Column("domain", sa.String(length=160), nullable=True),
            sa.Column("industry", sa.String(length=80), nullable=True),
            sa.Column("size", sa.String(length=20), nullable=True),
            sa.Column("website", sa.String(length=255), nullable=True),
            sa.Column("owner_id", sa.String(length=36), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_companies_domain", "companies", ["domain"])
    _create_index("ix_companies_owner_id", "companies", ["owner_id"])

    if not _table_exists("contacts"):
        op.create_table(
            "contacts",
            _id(),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=20), nullable=True),
            sa.Column("title", sa.String(length=100), nullable=True),
            sa.Column("source", sa.String(length=30), nullable=False, server_default="MANUAL"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="ACTIVE"),
            sa.Column("company_id", sa.String(length=36), nullable=True),
            sa.Column("owner_id", sa.String(length=36), nullable=True),
            sa.Column("last_contacted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("custom_fields", sa.JSON(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_contacts_email", "contacts", ["email"])
    _create_index("ix_contacts_company_id", "contacts", ["company_id"])
    _create_index("ix_contacts_owner_id", "contacts", ["owner_id"])

    if not _table_exists("pipelines"):
        op.create_table(
            "pipelines",
            _id(),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists("pipeline_stages"):
        op.create_table(
            "pipeline_stages",
            _id(),
            sa.Column("pipeline_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=80), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_won", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_lost", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_pipeline_stages_pipeline_id", "pipeline_stages", ["pipeline_id"])
    _create_index("ix_pipeline_stages_pipeline_position", "pipeline_stages", ["pipeline_id", "position"])

    if not _table_exists("deals"):
        op.create_table(
            "deals",
            _id(),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="OPEN"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="MEDIUM"),
            sa.Column("pipeline_id", sa.String(length=36), nullable=True),
            sa.Column("stage_id", sa.String(length=36), nullable=True),
            sa.Column("owner_id", sa.String(length=36), nullable=True),
            sa.Column("company_id", sa.String(length=36), nullable=True),
            sa.Column("contact_id", sa.String(length=36), nullable=True),
            sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"]),
            sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"]),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
            sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("pipeline_id", "stage_id", "owner_id", "company_id", "contact_id"):
        _create_index(f"ix_deals_{column}", "deals", [column])
    _create_index("ix_deals_pipeline_stage", "deals", ["pipeline_id", "stage_id"])
    _create_index("ix_deals_status_last_activity_at", "deals", ["status", "last_activity_at"])

    if not _table_exists("tasks"):
        op.create_table(
            "tasks",
            _id(),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="TODO"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="MEDIUM"),
            sa.Column("assignee_id", sa.String(length=36), nullable=True),
            sa.Column("creator_id", sa.String(length=36), nullable=True),
            sa.Column("deal_id", sa.String(length=36), nullable=True),
            sa.Column("contact_id", sa.String(length=36), nullable=True),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_automated", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["assignee_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["creator_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["deal_id"], ["deals.id"]),
            sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("assignee_id", "deal_id", "contact_id"):
        _create_index(f"ix_tasks_{column}", "tasks", [column])
    _create_index("ix_tasks_status_due_date", "tasks", ["status", "due_date"])

    if not _table_exists("activities"):
        op.create_table(
            "activities",
            _id(),
            sa.Column("type", sa.String(length=30), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("contact_id", sa.String(length=36), nullable=True),
            sa.Column("deal_id", sa.String(length=36), nullable=True),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
            sa.ForeignKeyConstraint(["deal_id"], ["deals.id"]),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("contact_id", "deal_id", "user_id"):
        _create_index(f"ix_activities_{column}", "activities", [column])

    if not _table_exists("notifications"):
        op.create_table(
            "notifications",
            _id(),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False, server_default="automation"),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("entity_type", sa.String(length=40), nullable=True),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_notifications_user_id", "notifications", ["user_id"])
    _create_index(
        "ix_notifications_user_read_created_at",
        "notifications",
        ["user_id", "is_read", "created_at"],
    )

    if not _table_exists("automation_rules"):
        op.create_table(
            "automation_rules",
            _id(),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("trigger", sa.String(length=60), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("conditions_json", sa.JSON(), nullable=True),
            sa.Column("actions_json", sa.JSON(), nullable=True),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_automation_rules_trigger", "automation_rules", ["trigger"])
    _create_index("ix_automation_rules_created_by", "automation_rules", ["created_by"])
    _create_index("ix_automation_rules_trigger_active", "automation_rules", ["trigger", "is_active"])

    if not _table_exists("automation_logs"):
        op.create_table(
            "automation_logs",
            _id(),
            sa.Column("automation_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("trigger", sa.String(length=60), nullable=True),
            sa.Column("depth", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("job_id", sa.String(length=160), nullable=True),
            sa.Column("error", sa.String(length=500), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_automation_logs_automation_id", "automation_logs", ["automation_id"])
    _create_index(
        "ix_automation_logs_automation_created_at",
        "automation_logs",
        ["automation_id", "created_at"],
    )
    _create_index("ix_automation_logs_entity", "automation_logs", ["entity_type", "entity_id"])
    _create_index("ix_automation_logs_status_created_at", "automation_logs", ["status", "created_at"])

    if not _table_exists("idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("key", sa.String(length=255), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            _created_at(),
            sa.PrimaryKeyConstraint("key"),
        )
    _create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])

    if not _table_exists("dead_letter_jobs"):
        op.create_table(
            "dead_letter_jobs",
            _id(),
            sa.Column("original_queue", sa.String(length=40), nullable=False),
            sa.Column("original_job_id", sa.String(length=160), nullable=True),
            sa.Column("original_job_name", sa.String(length=80), nullable=False),
            sa.Column("original_data", sa.JSON(), nullable=True),
            sa.Column("failed_reason", sa.Text(), nullable=True),
            sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_dead_letter_jobs_original_queue", "dead_letter_jobs", ["original_queue"])
    _create_index("ix_dead_letter_jobs_original_job_id", "dead_letter_jobs", ["original_job_id"])
    _create_index(
        "ix_dead_letter_jobs_queue_failed_at",
        "dead_letter_jobs",
        ["original_queue", "failed_at"],
    )

    if not _table_exists("pipeline_stage_stats"):
        op.create_table(
            "pipeline_stage_stats",
            _id(),
            sa.Column("pipeline_id", sa.String(length=36), nullable=False),
            sa.Column("stage_id", sa.String(length=36), nullable=False),
            sa.Column("deal_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("weighted_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("refreshed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"]),
            sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("pipeline_id", "stage_id", name="uq_pipeline_stage_stats_pipeline_stage"),
        )
    _create_index("ix_pipeline_stage_stats_pipeline_id", "pipeline_stage_stats", ["pipeline_id"])

    if not _table_exists("pipeline_snapshots"):
        op.create_table(
            "pipeline_snapshots",
            _id(),
            sa.Column("pipeline_id", sa.String(length=36), nullable=False),
            sa.Column("snapshot_date", sa.Date(), nullable=False),
            sa.Column("open_deal_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("open_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("weighted_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("won_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("stages_json", sa.JSON(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("pipeline_id", "snapshot_date", name="uq_pipeline_snapshots_pipeline_date"),
        )
    _create_index("ix_pipeline_snapshots_pipeline_id", "pipeline_snapshots", ["pipeline_id"])


def downgrade() -> None:
    for table_name in (
        "pipeline_snapshots",
        "pipeline_stage_stats",
        "dead_letter_jobs",
        "idempotency_keys",
        "automation_logs",
        "automation_rules",
        "notifications",
        "activities",
        "tasks",
        "deals",
        "pipeline_stages",
        "pipelines",
        "contacts",
        "companies",
        "users",
    ):
        if _table_exists(table_name):
            op.drop_table(table_name)
