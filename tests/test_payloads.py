import pytest

from crm_automation.core.errors import ActionConfigError, InvalidRulePayload, UnsupportedPayloadVersion
from crm_automation.schemas.automation import (
    ActionV1,
    CreateTaskConfig,
    TriggerEvent,
    parse_action_config,
    upgrade_actions_payload,
    upgrade_conditions_payload,
)


def test_absent_payload_upgrades_to_empty_envelope():
    assert upgrade_conditions_payload(None).data == []
    assert upgrade_actions_payload(None).data == []


def test_legacy_bare_list_is_treated_as_version_one():
    envelope = upgrade_conditions_payload([{"field": "value", "operator": "gt", "value": 1000}])
    assert envelope.version == 1
    assert envelope.data[0].operator == "gt"


def test_unknown_version_is_rejected():
    with pytest.raises(UnsupportedPayloadVersion) as exc_info:
        upgrade_actions_payload({"version": 2, "data": []})
    assert "version 2" in str(exc_info.value)


def test_malformed_payloads_raise_invalid_rule_payload():
    with pytest.raises(InvalidRulePayload):
        upgrade_conditions_payload("value > 10")
    with pytest.raises(InvalidRulePayload) as exc_info:
        upgrade_conditions_payload({"version": 1, "data": [{"field": "value", "operator": "between"}]})
    assert "data.0.operator" in str(exc_info.value)


def test_action_config_is_validated_per_kind():
    config = parse_action_config(ActionV1(type="create_task", config={"title": "Call {{title}}", "due_days": 2}))
    assert isinstance(config, CreateTaskConfig)
    assert config.priority == "MEDIUM"

    with pytest.raises(ActionConfigError):
        parse_action_config(ActionV1(type="create_task", config={"due_days": 2}))

    assert parse_action_config(ActionV1(type="post_to_slack", config={"channel": "#sales"})) is None


def test_trigger_event_normalizes_names():
    event = TriggerEvent(trigger=" deal_stage_changed ", entity_type="Deal", entity_id="d1")
    assert event.trigger == "DEAL_STAGE_CHANGED"
    assert event.entity_type == "deal"
    assert event.depth == 0
