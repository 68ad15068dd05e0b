from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from crm_automation.models.automation import AutomationLog, AutomationRule
from crm_automation.models.crm import Deal, Task
from crm_automation.models.user import User
from crm_automation.schemas.automation import TriggerEvent
from crm_automation.services.audit_service import find_active_by_trigger
from crm_automation.services.automation_engine import MAX_AUTOMATION_DEPTH, handle_trigger_event
from crm_automation.services.entity_repository import ENTITY_REPOSITORIES

from factories import BASE_TIME, add_deal, add_rule, add_user

FOLLOW_UP_ACTIONS = {
    "version": 1,
    "data": [
        {"type": "create_task", "config": {"title": "Follow up on {{title}}", "dueDays": 2}},
        {"type": "send_notification", "config": {"title": "{{title}} changed stage"}},
    ],
}
BIG_DEAL_CONDITIONS = {"version": 1, "data": [{"field": "value", "operator": "gt", "value": 1000}]}


def _event(deal_id: str, *, trigger: str = "DEAL_STAGE_CHANGED", depth: int = 0, job_id: str = "job-1"):
    return TriggerEvent(trigger=trigger, entity_type="deal", entity_id=deal_id, depth=depth, job_id=job_id)


def _run(db, event, job_queue, idempotency_store):
    return handle_trigger_event(db, event, job_queue=job_queue, idempotency_store=idempotency_store, now=BASE_TIME)


def _logs(db, **filters):
    query = select(AutomationLog).order_by(AutomationLog.created_at.asc())
    for name, value in filters.items():
        query = query.where(getattr(AutomationLog, name) == value)
    return list(db.execute(query).scalars())


def test_stage_change_on_big_deal_runs_every_action(db, job_queue, idempotency_store):
    owner = add_user(db)
    deal = add_deal(db, owner_id=owner.id, value=5000.0)
    rule = add_rule(db, conditions=BIG_DEAL_CONDITIONS, actions=FOLLOW_UP_ACTIONS, created_by=owner.id)

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.matched_rules == 1
    assert outcome.succeeded == 1
    task = db.execute(select(Task).where(Task.deal_id == deal.id)).scalar_one()
    assert task.title == "Follow up on Enterprise plan"
    assert task.assignee_id == owner.id
    assert task.is_automated is True
    assert task.due_date.replace(tzinfo=None) == (BASE_TIME + timedelta(days=2)).replace(tzinfo=None)
    [notification_job] = job_queue.on("notification")
    assert notification_job.payload["user_id"] == owner.id
    assert notification_job.payload["title"] == "Enterprise plan changed stage"

    [log] = _logs(db, automation_id=rule.id)
    assert (log.status, log.entity_id, log.trigger, log.job_id) == ("success", deal.id, "DEAL_STAGE_CHANGED", "job-1")
    db.refresh(rule)
    assert rule.run_count == 1
    assert rule.last_run_at is not None


def test_stage_change_with_always_matching_rule(db, job_queue, idempotency_store):
    owner = add_user(db)
    deal = add_deal(db, owner_id=owner.id)
    rule = add_rule(
        db,
        conditions={"version": 1, "data": []},
        actions={
            "version": 1,
            "data": [
                {"type": "create_task", "config": {"title": "Follow up", "dueDays": 2}},
                {"type": "send_notification", "config": {"title": "Deal moved"}},
            ],
        },
        created_by=owner.id,
    )

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.succeeded == 1
    task = db.execute(select(Task).where(Task.deal_id == deal.id)).scalar_one()
    assert task.title == "Follow up"
    assert task.is_automated is True
    assert task.due_date is not None
    assert task.due_date.replace(tzinfo=None) == (BASE_TIME + timedelta(days=2)).replace(tzinfo=None)
    assert len(job_queue.on("notification")) == 1
    assert [log.status for log in _logs(db, automation_id=rule.id)] == ["success"]
    db.refresh(rule)
    assert rule.run_count == 1


def test_database_outage_releases_claim_for_redelivery(db, job_queue, idempotency_store, monkeypatch):
    owner = add_user(db)
    deal = add_deal(db, owner_id=owner.id)
    rule = add_rule(db, actions=FOLLOW_UP_ACTIONS, created_by=owner.id)
    repository = ENTITY_REPOSITORIES["deal"]
    real_get = repository.get
    outages = [OperationalError("SELECT deals", {}, Exception("connection reset"))]

    def flaky_get(session, entity_id):
        if outages:
            raise outages.pop()
        return real_get(session, entity_id)

    monkeypatch.setattr(repository, "get", flaky_get)

    with pytest.raises(OperationalError):
        _run(db, _event(deal.id, job_id="job-9"), job_queue, idempotency_store)
    assert f"automation:exec:{rule.id}:{deal.id}:job-9" not in idempotency_store.keys
    assert _logs(db, automation_id=rule.id) == []

    retried = _run(db, _event(deal.id, job_id="job-9"), job_queue, idempotency_store)

    assert (retried.succeeded, retried.duplicates) == (1, 0)
    assert len(db.execute(select(Task)).scalars().all()) == 1
    assert [log.status for log in _logs(db, automation_id=rule.id)] == ["success"]


def test_conditions_are_anded(db, job_queue, idempotency_store):
    deal = add_deal(db, value=5000.0, priority="LOW")
    rule = add_rule(
        db,
        conditions=[
            {"field": "value", "operator": "gt", "value": 1000},
            {"field": "priority", "operator": "equals", "value": "HIGH"},
        ],
        actions=FOLLOW_UP_ACTIONS,
    )

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.not_matched == 1
    assert _logs(db, automation_id=rule.id) == []
    assert job_queue.jobs == []
    assert db.execute(select(Task)).first() is None


def test_numeric_condition_on_text_field_does_not_match(db, job_queue, idempotency_store):
    deal = add_deal(db, title="Renewal")
    add_rule(db, conditions=[{"field": "title", "operator": "gt", "value": 5}], actions=FOLLOW_UP_ACTIONS)

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.not_matched == 1
    assert outcome.failed == 0


def test_redelivered_event_runs_each_rule_once(db, job_queue, idempotency_store):
    owner = add_user(db)
    deal = add_deal(db, owner_id=owner.id)
    rule = add_rule(db, actions=FOLLOW_UP_ACTIONS, created_by=owner.id)

    first = _run(db, _event(deal.id, job_id="job-7"), job_queue, idempotency_store)
    second = _run(db, _event(deal.id, job_id="job-7"), job_queue, idempotency_store)

    assert (first.succeeded, second.succeeded, second.duplicates) == (1, 0, 1)
    assert len(db.execute(select(Task)).scalars().all()) == 1
    assert len(_logs(db, automation_id=rule.id)) == 1
    assert f"automation:exec:{rule.id}:{deal.id}:job-7" in idempotency_store.keys


def test_loop_guard_stops_at_max_depth(db, job_queue, idempotency_store):
    deal = add_deal(db)
    rule = add_rule(db, trigger="DEAL_UPDATED", actions=FOLLOW_UP_ACTIONS)

    outcome = _run(db, _event(deal.id, trigger="DEAL_UPDATED", depth=MAX_AUTOMATION_DEPTH), job_queue, idempotency_store)

    assert outcome.loop_detected is True
    [log] = _logs(db)
    assert log.automation_id == "system"
    assert log.status == "skipped"
    assert log.error == "Loop detected at depth 3"
    assert job_queue.jobs == []
    db.refresh(rule)
    assert rule.run_count == 0


def test_update_field_recursion_is_bounded(db, job_queue, idempotency_store):
    deal = add_deal(db, priority="LOW")
    add_rule(
        db,
        trigger="DEAL_UPDATED",
        actions=[{"type": "update_field", "config": {"field": "priority", "value": "HIGH"}}],
    )

    event = _event(deal.id, trigger="DEAL_UPDATED", depth=0, job_id="job-0")
    outcomes = []
    while event is not None:
        outcomes.append(_run(db, event, job_queue, idempotency_store))
        follow_ups = [job for job in job_queue.on("automation") if job.payload["depth"] == event.depth + 1]
        if follow_ups:
            event = TriggerEvent.model_validate({**follow_ups[0].payload, "job_id": f"job-{event.depth + 1}"})
        else:
            event = None

    assert [item.depth for item in outcomes] == [0, 1, 2, 3]
    assert outcomes[-1].loop_detected is True
    assert [item.succeeded for item in outcomes[:3]] == [1, 1, 1]
    assert len(_logs(db, automation_id="system")) == 1


def test_deactivated_creator_is_skipped_with_reason(db, job_queue, idempotency_store):
    creator = add_user(db, role="MEMBER")
    deal = add_deal(db, owner_id=creator.id)
    rule = add_rule(db, actions=FOLLOW_UP_ACTIONS, created_by=creator.id)
    db.get(User, creator.id).is_active = False
    db.commit()

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.skipped == 1
    [log] = _logs(db, automation_id=rule.id)
    assert log.status == "skipped"
    assert "missing or inactive" in log.error
    assert db.execute(select(Task)).first() is None


def test_demoted_creator_lacks_permission(db, job_queue, idempotency_store):
    creator = add_user(db, role="VIEWER")
    deal = add_deal(db)
    rule = add_rule(db, actions=FOLLOW_UP_ACTIONS, created_by=creator.id)

    _run(db, _event(deal.id), job_queue, idempotency_store)

    [log] = _logs(db, automation_id=rule.id)
    assert log.error == "Automation creator lacks permission: role VIEWER cannot update deal"


def test_failed_rule_rolls_back_and_siblings_still_run(db, job_queue, idempotency_store):
    owner = add_user(db)
    deal = add_deal(db, owner_id=owner.id)
    broken = add_rule(
        db,
        name="Broken",
        actions=[
            {"type": "create_task", "config": {"title": "Orphan task"}},
            {"type": "update_field", "config": {"field": "id", "value": "hijacked"}},
        ],
        created_at=BASE_TIME,
    )
    healthy = add_rule(
        db,
        name="Healthy",
        actions=[{"type": "create_task", "config": {"title": "Real task"}}],
        created_at=BASE_TIME.replace(minute=5),
    )

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert (outcome.failed, outcome.succeeded) == (1, 1)
    assert [task.title for task in db.execute(select(Task)).scalars()] == ["Real task"]
    [failed_log] = _logs(db, automation_id=broken.id)
    assert failed_log.status == "failed"
    assert "cannot be updated" in failed_log.error
    assert [item.status for item in _logs(db, automation_id=healthy.id)] == ["success"]
    db.refresh(broken)
    assert broken.run_count == 0
    assert db.get(Deal, deal.id) is not None


def test_vanished_entity_is_silent(db, job_queue, idempotency_store):
    add_rule(db, actions=FOLLOW_UP_ACTIONS)

    outcome = _run(db, _event("no-such-deal"), job_queue, idempotency_store)

    assert outcome.entity_missing == 1
    assert _logs(db) == []


def test_inactive_rules_and_other_triggers_are_not_loaded(db, job_queue, idempotency_store):
    deal = add_deal(db)
    add_rule(db, actions=FOLLOW_UP_ACTIONS, is_active=False)
    add_rule(db, trigger="DEAL_CREATED", actions=FOLLOW_UP_ACTIONS)

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.matched_rules == 0


def test_legacy_payload_runs_and_unknown_version_is_skipped(db, job_queue, idempotency_store):
    deal = add_deal(db)
    legacy = add_rule(db, name="Legacy", actions=[{"type": "create_task", "config": {"title": "From legacy"}}])
    future = add_rule(
        db,
        name="Future",
        conditions={"version": 2, "data": []},
        actions=FOLLOW_UP_ACTIONS,
        created_at=BASE_TIME.replace(minute=1),
    )

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert (outcome.succeeded, outcome.skipped) == (1, 1)
    assert [item.status for item in _logs(db, automation_id=legacy.id)] == ["success"]
    [skipped] = _logs(db, automation_id=future.id)
    assert skipped.status == "skipped"
    assert skipped.error == "Unsupported conditions payload version 2"


def test_rules_load_in_creation_order_and_empty_action_lists_still_count(db, job_queue, idempotency_store):
    deal = add_deal(db)
    later = add_rule(db, name="Later", created_at=BASE_TIME.replace(hour=10), actions=[])
    earlier = add_rule(db, name="Earlier", created_at=BASE_TIME.replace(hour=8), actions=[])

    assert [rule.id for rule in find_active_by_trigger(db, "DEAL_STAGE_CHANGED")] == [earlier.id, later.id]

    outcome = _run(db, _event(deal.id), job_queue, idempotency_store)

    assert outcome.succeeded == 2
    rows = db.execute(select(AutomationRule.id, AutomationRule.run_count)).all()
    assert {row.id: row.run_count for row in rows} == {earlier.id: 1, later.id: 1}
