from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from crm_automation.core.errors import EmailDeliveryError
from crm_automation.models.analytics import PipelineSnapshot, PipelineStageStat
from crm_automation.models.crm import Activity, Contact, Notification
from crm_automation.models.queue import DeadLetterJob
from crm_automation.services.analytics_service import take_pipeline_snapshot
from crm_automation.services.email_service import (
    EmailDeliveryResult,
    EmailMessage,
    ResendEmailProvider,
    StubEmailProvider,
    get_email_provider,
)
from crm_automation.worker import tasks
from crm_automation.worker.jobs import (
    handle_analytics_job,
    handle_automation_job,
    handle_email_job,
    handle_notification_job,
)

from factories import add_contact, add_deal, add_pipeline, add_rule, add_user


class _RecordingProvider:
    name = "recording"

    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        return EmailDeliveryResult(provider=self.name, message_id="msg-1", status="sent")


class _FailingProvider:
    name = "failing"

    def send(self, message):
        raise EmailDeliveryError("Resend API error 503: unavailable")


def test_send_notification_job_persists_row(db, job_queue):
    user = add_user(db)

    result = handle_notification_job(
        db,
        "send",
        {"user_id": user.id, "title": "Deal moved", "body": "Enterprise plan", "entity_type": "deal", "entity_id": "d1"},
        job_id="notif:r:d1:1",
        job_queue=job_queue,
    )
    db.commit()

    notification = db.get(Notification, result["notification_id"])
    assert notification.user_id == user.id
    assert notification.type == "automation"
    assert notification.is_read is False
    assert notification.entity_id == "d1"


def test_email_job_records_activity_for_contact(db):
    user = add_user(db)
    contact = add_contact(db, owner_id=user.id)
    provider = _RecordingProvider()

    result = handle_email_job(
        db,
        "send-email",
        {
            "to": "ada@example.com",
            "subject": "Welcome aboard",
            "body": "<p>Hi Ada</p>",
            "contact_id": contact.id,
            "user_id": user.id,
            "automation_id": "rule-1",
        },
        job_id="email:rule-1:c1:ada@example.com:2026-10-19",
        provider=provider,
    )
    db.commit()

    assert result == {"provider": "recording", "message_id": "msg-1", "status": "sent"}
    assert provider.messages[0].subject == "Welcome aboard"
    activity = db.execute(select(Activity).where(Activity.contact_id == contact.id)).scalar_one()
    assert activity.type == "EMAIL_SENT"
    assert activity.user_id == user.id
    assert activity.metadata_json["message_id"] == "msg-1"
    assert db.get(Contact, contact.id).last_contacted_at is not None


def test_email_job_without_contact_only_sends(db):
    result = handle_email_job(
        db,
        "send-email",
        {"to": "ops@example.com", "subject": "Digest", "body": ""},
        job_id=None,
        provider=StubEmailProvider(),
    )
    assert result["provider"] == "stub"
    assert db.execute(select(Activity)).first() is None


def test_email_provider_errors_propagate_for_retry(db):
    contact = add_contact(db)
    with pytest.raises(EmailDeliveryError):
        handle_email_job(
            db,
            "send-email",
            {"to": "ada@example.com", "subject": "Hi", "contact_id": contact.id},
            job_id=None,
            provider=_FailingProvider(),
        )
    assert db.execute(select(Activity)).first() is None


def test_resend_provider_requires_api_key():
    provider = ResendEmailProvider(api_key=None, api_url="https://api.resend.com/emails", timeout_seconds=1)
    with pytest.raises(EmailDeliveryError):
        provider.send(EmailMessage(to="a@example.com", subject="s", body="b", sender="CRM <no-reply@example.com>"))
    assert get_email_provider("stub").name == "stub"
    with pytest.raises(ValueError):
        get_email_provider("carrier-pigeon")


def test_analytics_jobs_refresh_stats_and_upsert_snapshot(db):
    pipeline, (qualified, negotiation, won) = add_pipeline(
        db,
        stages=[
            {"name": "Qualified", "probability": 20},
            {"name": "Negotiation", "probability": 60},
            {"name": "Won", "probability": 100, "is_won": True},
        ],
    )
    add_deal(db, pipeline_id=pipeline.id, stage_id=qualified.id, value=1000.0)
    add_deal(db, pipeline_id=pipeline.id, stage_id=negotiation.id, value=2000.0)
    add_deal(db, pipeline_id=pipeline.id, stage_id=negotiation.id, value=500.0)
    add_deal(db, pipeline_id=pipeline.id, stage_id=won.id, value=4000.0)

    assert handle_analytics_job(db, "refresh-pipeline-stats", {}, job_id=None) == {"stages": 3}
    db.commit()
    stats = {row.stage_id: row for row in db.execute(select(PipelineStageStat)).scalars()}
    assert stats[negotiation.id].deal_count == 2
    assert stats[negotiation.id].total_value == 2500.0
    assert stats[negotiation.id].weighted_value == 1500.0
    assert stats[qualified.id].weighted_value == 200.0

    assert handle_analytics_job(db, "daily-pipeline-snapshot", {}, job_id=None) == {"pipelines": 1}
    take_pipeline_snapshot(db, snapshot_date=datetime.now(timezone.utc).date())
    db.commit()
    [snapshot] = db.execute(select(PipelineSnapshot)).scalars().all()
    assert snapshot.open_deal_count == 3
    assert snapshot.open_value == 3500.0
    assert snapshot.weighted_value == 1700.0
    assert snapshot.won_value == 4000.0
    assert [item["name"] for item in snapshot.stages_json] == ["Qualified", "Negotiation", "Won"]


def test_evaluate_trigger_job_scopes_claims_to_delivering_job(db, job_queue, idempotency_store):
    deal = add_deal(db)
    rule = add_rule(db, actions=[])
    payload = {"trigger": "DEAL_STAGE_CHANGED", "entity_type": "deal", "entity_id": deal.id, "depth": 0}

    first = handle_automation_job(
        db, "evaluate-trigger", payload, job_id="job-a", job_queue=job_queue, idempotency_store=idempotency_store
    )
    redelivered = handle_automation_job(
        db, "evaluate-trigger", payload, job_id="job-a", job_queue=job_queue, idempotency_store=idempotency_store
    )

    assert first["succeeded"] == 1
    assert redelivered["duplicates"] == 1
    assert f"automation:exec:{rule.id}:{deal.id}:job-a" in idempotency_store.keys


def test_unknown_job_names_are_ignored(db, job_queue, idempotency_store):
    assert handle_automation_job(
        db, "reindex-everything", {}, job_id="x", job_queue=job_queue, idempotency_store=idempotency_store
    ) is None
    assert handle_notification_job(db, "fax", {}, job_id=None, job_queue=job_queue) is None
    assert handle_email_job(db, "send-sms", {}, job_id=None) is None
    assert handle_analytics_job(db, "forecast", {}, job_id=None) is None


def test_failed_task_is_dead_lettered(session_local, monkeypatch):
    monkeypatch.setattr(tasks, "SessionLocal", session_local)
    payload = {"to": "ada@example.com", "subject": "Hi"}

    tasks.process_email_job.on_failure(
        EmailDeliveryError("Resend API error 500: boom"),
        "email:rule-1:c1:ada@example.com:2026-10-19",
        ["send-email", payload],
        {},
        None,
    )

    with session_local() as db:
        [entry] = db.execute(select(DeadLetterJob)).scalars().all()
    assert entry.original_queue == "email"
    assert entry.original_job_id == "email:rule-1:c1:ada@example.com:2026-10-19"
    assert entry.original_job_name == "send-email"
    assert entry.original_data == payload
    assert entry.failed_reason == "Resend API error 500: boom"
    assert entry.attempts_made == 1


def test_tasks_retry_only_infrastructure_errors():
    task = tasks.process_automation_job
    assert task.name == "crm_automation.automation.process"
    assert task.max_retries == 4
    assert task.retry_backoff == 3
    assert any(issubclass(EmailDeliveryError, error) for error in task.autoretry_for)
    assert not any(issubclass(ValueError, error) for error in task.autoretry_for)
    assert tasks.process_email_job.rate_limit == "10/s"
    assert tasks._job_args(("send", {"a": 1}), {}) == ("send", {"a": 1})
    assert tasks._job_args((), {}) == ("unknown", None)
