from datetime import datetime
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from crm_automation.core.errors import ActionConfigError, InvalidRulePayload, UnsupportedPayloadVersion
from crm_automation.schemas.common import PaginationMeta


ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "gt",
    "lt",
    "gte",
    "lte",
    "in",
    "not_in",
    "is_empty",
    "is_not_empty",
]
AutomationLogStatus = Literal["success", "failed", "skipped"]

CURRENT_PAYLOAD_VERSION = 1


class FieldChange(BaseModel):
    old: Any | None = None
    new: Any | None = None


class TriggerEvent(BaseModel):
    trigger: str = Field(min_length=1, max_length=60)
    entity_type: str = Field(min_length=1, max_length=40)
    entity_id: str = Field(min_length=1, max_length=36)
    changes: dict[str, FieldChange] | None = None
    depth: int = Field(default=0, ge=0)
    job_id: str | None = Field(default=None, max_length=160)

    @field_validator("entity_type")
    @classmethod
    def normalize_entity_type(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("trigger")
    @classmethod
    def normalize_trigger(cls, value: str) -> str:
        return value.strip().upper()


class ConditionV1(BaseModel):
    field: str = Field(min_length=1, max_length=120)
    operator: ConditionOperator
    value: Any | None = None


class ConditionsEnvelopeV1(BaseModel):
    version: Literal[1] = 1
    data: list[ConditionV1] = Field(default_factory=list)


class ActionV1(BaseModel):
    # Kept as a plain string so rules written with newer action kinds still load.
    type: str = Field(min_length=1, max_length=60)
    config: dict[str, Any] = Field(default_factory=dict)


class ActionsEnvelopeV1(BaseModel):
    version: Literal[1] = 1
    data: list[ActionV1] = Field(default_factory=list)


class CreateTaskConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    assignee_id: str | None = Field(default=None, alias="assigneeId")
    due_days: int | None = Field(default=None, ge=0, le=3650, alias="dueDays")
    priority: Literal["LOW", "MEDIUM", "HIGH", "URGENT"] = "MEDIUM"


class SendEmailConfig(BaseModel):
    to: str = Field(min_length=3, max_length=255)
    subject: str = Field(min_length=1, max_length=255)
    body: str = ""


class SendNotificationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=255)
    body: str = ""
    user_id: str | None = Field(default=None, alias="userId")


class UpdateFieldConfig(BaseModel):
    field: str = Field(min_length=1, max_length=80)
    value: Any | None = None


ACTION_CONFIG_MODELS: dict[str, type[BaseModel]] = {
    "create_task": CreateTaskConfig,
    "send_email": SendEmailConfig,
    "send_notification": SendNotificationConfig,
    "update_field": UpdateFieldConfig,
}

EnvelopeT = TypeVar("EnvelopeT", ConditionsEnvelopeV1, ActionsEnvelopeV1)


def _upgrade_envelope(kind: str, raw: Any, model: type[EnvelopeT]) -> EnvelopeT:
    if raw is None:
        return model()
    # Rules written before envelopes existed stored the bare list.
    if isinstance(raw, list):
        raw = {"version": 1, "data": raw}
    if not isinstance(raw, dict):
        raise InvalidRulePayload(kind, f"expected an object, got {type(raw).__name__}")
    version = raw.get("version")
    if version != CURRENT_PAYLOAD_VERSION:
        raise UnsupportedPayloadVersion(kind, version)
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidRulePayload(kind, f"{location}: {first.get('msg', 'invalid value')}") from exc


def upgrade_conditions_payload(raw: Any) -> ConditionsEnvelopeV1:
    """Parse a stored conditions payload into the current envelope.

    Unknown versions raise `UnsupportedPayloadVersion`; they are never guessed.
    """
    return _upgrade_envelope("conditions", raw, ConditionsEnvelopeV1)


def upgrade_actions_payload(raw: Any) -> ActionsEnvelopeV1:
    return _upgrade_envelope("actions", raw, ActionsEnvelopeV1)


def parse_action_config(action: ActionV1) -> BaseModel | None:
    model = ACTION_CONFIG_MODELS.get(action.type)
    if model is None:
        return None
    try:
        return model.model_validate(action.config)
    except ValidationError as exc:
        raise ActionConfigError(f"Invalid {action.type} config: {exc.errors()[0].get('msg', 'invalid value')}") from exc


class TriggerEventAcceptedOut(BaseModel):
    job_id: str
    queued: bool


class AutomationLogOut(BaseModel):
    id: str
    automation_id: str
    status: AutomationLogStatus
    entity_type: str
    entity_id: str
    trigger: str | None
    depth: int
    job_id: str | None
    error: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AutomationLogListOut(BaseModel):
    items: list[AutomationLogOut]
    pagination: PaginationMeta


class DeadLetterJobOut(BaseModel):
    id: str
    original_queue: str
    original_job_id: str | None
    original_job_name: str
    original_data: dict[str, Any] | None
    failed_reason: str | None
    attempts_made: int
    failed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeadLetterJobListOut(BaseModel):
    items: list[DeadLetterJobOut]
    pagination: PaginationMeta
