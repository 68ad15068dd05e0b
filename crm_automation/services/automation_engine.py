import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.errors import InvalidRulePayload, UnknownEntityType, UnsupportedPayloadVersion, short_error
from crm_automation.core.observability import log_event, worker_logger
from crm_automation.models.automation import AutomationRule
from crm_automation.schemas.automation import TriggerEvent, upgrade_actions_payload, upgrade_conditions_payload
from crm_automation.services.action_executor import ActionContext, execute_action
from crm_automation.services.audit_service import (
    SYSTEM_AUTOMATION_ID,
    append_automation_log,
    find_active_by_trigger,
    increment_run_stats,
)
from crm_automation.services.authorization import SqlUserStore, UserStore, authorize_automation
from crm_automation.services.conditions import matches
from crm_automation.services.entity_repository import get_entity_repository
from crm_automation.services.idempotency import IdempotencyStore, automation_exec_key
from crm_automation.services.job_queue import JobQueue

MAX_AUTOMATION_DEPTH = 3


@dataclass(frozen=True)
class EventOutcome:
    trigger: str
    entity_type: str
    entity_id: str
    depth: int
    matched_rules: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    not_matched: int = 0
    entity_missing: int = 0
    loop_detected: bool = False


def handle_trigger_event(
    db: Session,
    event: TriggerEvent,
    *,
    job_queue: JobQueue,
    idempotency_store: IdempotencyStore,
    user_store: UserStore | None = None,
    now: datetime | None = None,
) -> EventOutcome:
    """Run every active rule for the event's trigger against the entity.

    Each rule's outcome (audit row, run stats, action writes) is committed
    before the next rule starts. Failures inside a rule's actions are
    recorded and do not stop sibling rules; any other exception propagates
    so the delivering job is retried.
    """
    if event.depth >= MAX_AUTOMATION_DEPTH:
        append_automation_log(
            db,
            automation_id=SYSTEM_AUTOMATION_ID,
            status="skipped",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            trigger=event.trigger,
            depth=event.depth,
            job_id=event.job_id,
            error=f"Loop detected at depth {event.depth}",
        )
        db.commit()
        log_event(
            worker_logger,
            "automation_loop_detected",
            level=logging.WARNING,
            trigger=event.trigger,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            depth=event.depth,
            job_id=event.job_id,
        )
        return EventOutcome(
            trigger=event.trigger,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            depth=event.depth,
            loop_detected=True,
        )

    rules = find_active_by_trigger(db, event.trigger)
    users = user_store or SqlUserStore(db)
    started_at = now or datetime.now(timezone.utc)
    counts = {
        "success": 0,
        "failed": 0,
        "skipped": 0,
        "duplicate": 0,
        "not_matched": 0,
        "entity_missing": 0,
    }
    for rule in rules:
        status = _run_rule(
            db,
            rule,
            event,
            job_queue=job_queue,
            idempotency_store=idempotency_store,
            user_store=users,
            now=started_at,
        )
        counts[status] += 1

    outcome = EventOutcome(
        trigger=event.trigger,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        depth=event.depth,
        matched_rules=len(rules),
        succeeded=counts["success"],
        failed=counts["failed"],
        skipped=counts["skipped"],
        duplicates=counts["duplicate"],
        not_matched=counts["not_matched"],
        entity_missing=counts["entity_missing"],
    )
    log_event(worker_logger, "automation_event_processed", job_id=event.job_id, **asdict(outcome))
    return outcome


def _run_rule(
    db: Session,
    rule: AutomationRule,
    event: TriggerEvent,
    *,
    job_queue: JobQueue,
    idempotency_store: IdempotencyStore,
    user_store: UserStore,
    now: datetime,
) -> str:
    rule_id = rule.id

    claim_key = automation_exec_key(rule_id, event.entity_id, event.job_id)
    if not idempotency_store.claim(claim_key, settings.automation_exec_lock_ttl_seconds):
        log_event(
            worker_logger,
            "automation_rule_duplicate",
            level=logging.DEBUG,
            automation_id=rule_id,
            entity_id=event.entity_id,
            job_id=event.job_id,
        )
        return "duplicate"

    try:
        return _run_claimed_rule(
            db,
            rule,
            event,
            job_queue=job_queue,
            user_store=user_store,
            now=now,
        )
    except Exception:
        # Free the claim so the redelivered job can run this rule again.
        db.rollback()
        idempotency_store.release(claim_key)
        raise


def _run_claimed_rule(
    db: Session,
    rule: AutomationRule,
    event: TriggerEvent,
    *,
    job_queue: JobQueue,
    user_store: UserStore,
    now: datetime,
) -> str:
    rule_id = rule.id
    authorization = authorize_automation(rule, event.entity_type, user_store=user_store)
    if not authorization.allowed:
        _record(db, rule_id, event, status="skipped", error=authorization.reason)
        return "skipped"

    try:
        repository = get_entity_repository(event.entity_type)
    except UnknownEntityType as exc:
        _record(db, rule_id, event, status="skipped", error=str(exc))
        return "skipped"

    entity = repository.get(db, event.entity_id)
    if entity is None:
        return "entity_missing"

    try:
        conditions = upgrade_conditions_payload(rule.conditions_json)
        actions = upgrade_actions_payload(rule.actions_json)
    except (UnsupportedPayloadVersion, InvalidRulePayload) as exc:
        _record(db, rule_id, event, status="skipped", error=str(exc))
        return "skipped"

    if not matches(entity, conditions.data):
        return "not_matched"

    context = ActionContext(db=db, rule=rule, event=event, job_queue=job_queue, now=now)
    try:
        for action in actions.data:
            execute_action(action, entity, context)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        _record(db, rule_id, event, status="failed", error=short_error(exc))
        log_event(
            worker_logger,
            "automation_rule_failed",
            level=logging.ERROR,
            automation_id=rule_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            job_id=event.job_id,
            error=short_error(exc),
        )
        return "failed"

    append_automation_log(
        db,
        automation_id=rule_id,
        status="success",
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        trigger=event.trigger,
        depth=event.depth,
        job_id=event.job_id,
    )
    increment_run_stats(db, rule_id=rule_id, now=now)
    db.commit()
    return "success"


def _record(db: Session, rule_id: str, event: TriggerEvent, *, status: str, error: str | None) -> None:
    append_automation_log(
        db,
        automation_id=rule_id,
        status=status,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        trigger=event.trigger,
        depth=event.depth,
        job_id=event.job_id,
        error=error,
    )
    db.commit()
