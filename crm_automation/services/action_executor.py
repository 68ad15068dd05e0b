import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from crm_automation.core.errors import ActionConfigError
from crm_automation.core.observability import log_event, worker_logger
from crm_automation.models.automation import AutomationRule
from crm_automation.schemas.automation import (
    ActionV1,
    CreateTaskConfig,
    SendEmailConfig,
    SendNotificationConfig,
    TriggerEvent,
    UpdateFieldConfig,
    parse_action_config,
)
from crm_automation.services.entity_repository import get_entity_repository
from crm_automation.services.job_queue import (
    AUTOMATION_QUEUE,
    EMAIL_QUEUE,
    EVALUATE_TRIGGER_JOB,
    NOTIFICATION_QUEUE,
    SEND_EMAIL_JOB,
    SEND_NOTIFICATION_JOB,
    JobQueue,
)
from crm_automation.services.templating import interpolate


@dataclass(frozen=True)
class ActionContext:
    db: Session
    rule: AutomationRule
    event: TriggerEvent
    job_queue: JobQueue
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ActionResult:
    kind: str
    status: str
    detail: dict[str, Any] = field(default_factory=dict)


def execute_action(action: ActionV1, entity: dict[str, Any], context: ActionContext) -> ActionResult:
    config = parse_action_config(action)
    handler = _ACTION_HANDLERS.get(action.type)
    if config is None or handler is None:
        log_event(
            worker_logger,
            "automation_action_ignored",
            level=logging.DEBUG,
            automation_id=context.rule.id,
            action_type=action.type,
        )
        return ActionResult(kind=action.type, status="ignored")
    detail = handler(config, entity, context)
    return ActionResult(kind=action.type, status="executed", detail=detail)


def _create_task(config: CreateTaskConfig, entity: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    event = context.event
    data: dict[str, Any] = {
        "title": interpolate(config.title, entity),
        "description": interpolate(config.description, entity) if config.description else None,
        "priority": config.priority,
        "assignee_id": config.assignee_id or entity.get("owner_id"),
        "creator_id": context.rule.created_by,
        "is_automated": True,
        "due_date": context.now + timedelta(days=config.due_days) if config.due_days is not None else None,
    }
    if event.entity_type == "deal":
        data["deal_id"] = event.entity_id
    elif event.entity_type == "contact":
        data["contact_id"] = event.entity_id

    task = get_entity_repository("task").create(context.db, data)
    return {"task_id": task["id"]}


def _send_email(config: SendEmailConfig, entity: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    event = context.event
    contact_id = event.entity_id if event.entity_type == "contact" else entity.get("contact_id")
    job_id = f"email:{context.rule.id}:{event.entity_id}:{config.to}:{context.now.date().isoformat()}"
    queued = context.job_queue.enqueue(
        EMAIL_QUEUE,
        SEND_EMAIL_JOB,
        {
            "to": config.to,
            "subject": interpolate(config.subject, entity),
            "body": interpolate(config.body, entity),
            "contact_id": contact_id,
            "user_id": context.rule.created_by,
            "automation_id": context.rule.id,
        },
        job_id=job_id,
    )
    return {"job_id": job_id, "queued": queued}


def _send_notification(
    config: SendNotificationConfig,
    entity: dict[str, Any],
    context: ActionContext,
) -> dict[str, Any]:
    event = context.event
    user_id = config.user_id or entity.get("owner_id")
    if not user_id:
        raise ActionConfigError(f"send_notification has no recipient: {event.entity_type} {event.entity_id} has no owner")
    job_id = f"notif:{context.rule.id}:{event.entity_id}:{int(context.now.timestamp() * 1000)}"
    queued = context.job_queue.enqueue(
        NOTIFICATION_QUEUE,
        SEND_NOTIFICATION_JOB,
        {
            "user_id": user_id,
            "title": interpolate(config.title, entity),
            "body": interpolate(config.body, entity),
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "type": "automation",
        },
        job_id=job_id,
    )
    return {"job_id": job_id, "queued": queued}


def _update_field(config: UpdateFieldConfig, entity: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    event = context.event
    repository = get_entity_repository(event.entity_type)
    old_value = entity.get(config.field)
    repository.update(context.db, event.entity_id, {config.field: config.value})

    follow_up = TriggerEvent(
        trigger=f"{event.entity_type.upper()}_UPDATED",
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        changes={config.field: {"old": old_value, "new": config.value}},
        depth=event.depth + 1,
    )
    context.job_queue.enqueue(
        AUTOMATION_QUEUE,
        EVALUATE_TRIGGER_JOB,
        follow_up.model_dump(mode="json", exclude={"job_id"}),
    )
    return {"field": config.field, "follow_up_trigger": follow_up.trigger, "follow_up_depth": follow_up.depth}


_ACTION_HANDLERS: dict[str, Callable[[Any, dict[str, Any], ActionContext], dict[str, Any]]] = {
    "create_task": _create_task,
    "send_email": _send_email,
    "send_notification": _send_notification,
    "update_field": _update_field,
}
