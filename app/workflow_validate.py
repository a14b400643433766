"""Request payload validation for workflow create/update."""

from __future__ import annotations

from action_exec import ACTION_TYPES
from app.template_render import template_errors
from automation_engine import TRIGGER_TYPES
from condition_eval import ConditionSchemaError, validate_condition
from errors import issue

SCHEDULE_FREQUENCIES = ("hourly", "daily", "weekly")


def _validate_trigger(trigger, path: str, errors: list[dict]) -> None:
    if not isinstance(trigger, dict):
        errors.append(issue("VALIDATION_ERROR", "trigger must be object", path))
        return
    trigger_type = trigger.get("trigger_type")
    if trigger_type not in TRIGGER_TYPES:
        errors.append(issue("VALIDATION_ERROR", f"unsupported trigger_type: {trigger_type}", f"{path}.trigger_type"))
    config = trigger.get("config")
    if config is not None and not isinstance(config, dict):
        errors.append(issue("VALIDATION_ERROR", "config must be object", f"{path}.config"))
    elif trigger_type == "scheduled":
        frequency = (config or {}).get("frequency")
        if frequency is not None and frequency not in SCHEDULE_FREQUENCIES:
            errors.append(issue("VALIDATION_ERROR", "frequency must be hourly, daily or weekly", f"{path}.config.frequency"))
    conditions = trigger.get("conditions")
    if conditions is None:
        return
    if not isinstance(conditions, list):
        errors.append(issue("VALIDATION_ERROR", "conditions must be list", f"{path}.conditions"))
        return
    for idx, cond in enumerate(conditions):
        try:
            validate_condition(cond, f"{path}.conditions[{idx}]")
        except ConditionSchemaError as exc:
            errors.append(issue("VALIDATION_ERROR", exc.message, exc.path))


def _validate_action(action, path: str, errors: list[dict]) -> None:
    if not isinstance(action, dict):
        errors.append(issue("VALIDATION_ERROR", "action must be object", path))
        return
    action_type = action.get("action_type")
    if action_type not in ACTION_TYPES:
        errors.append(issue("VALIDATION_ERROR", f"unsupported action_type: {action_type}", f"{path}.action_type"))
    config = action.get("config")
    if config is not None and not isinstance(config, dict):
        errors.append(issue("VALIDATION_ERROR", "config must be object", f"{path}.config"))
        config = None
    delay = action.get("delay_minutes")
    if delay is not None and (isinstance(delay, bool) or not isinstance(delay, int) or delay < 0):
        errors.append(issue("VALIDATION_ERROR", "delay_minutes must be integer >= 0", f"{path}.delay_minutes"))
    for key, value in (config or {}).items():
        for err in template_errors(f"config.{key}", value):
            errors.append(issue("VALIDATION_ERROR", err["message"], f"{path}.config.{key}"))


def validate_workflow_payload(data: dict, for_update: bool = False) -> list[dict]:
    errors: list[dict] = []
    if not for_update or "name" in data:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append(issue("VALIDATION_ERROR", "name is required", "name"))
    if "max_executions_per_day" in data and data.get("max_executions_per_day") is not None:
        value = data.get("max_executions_per_day")
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            errors.append(issue("VALIDATION_ERROR", "max_executions_per_day must be integer >= 1", "max_executions_per_day"))
    if "cooldown_minutes" in data and data.get("cooldown_minutes") is not None:
        value = data.get("cooldown_minutes")
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors.append(issue("VALIDATION_ERROR", "cooldown_minutes must be integer >= 0", "cooldown_minutes"))
    if not for_update or "triggers" in data:
        triggers = data.get("triggers")
        if not isinstance(triggers, list) or not triggers:
            errors.append(issue("VALIDATION_ERROR", "at least one trigger is required", "triggers"))
        else:
            for idx, trigger in enumerate(triggers):
                _validate_trigger(trigger, f"triggers[{idx}]", errors)
    if not for_update or "actions" in data:
        actions = data.get("actions")
        if not isinstance(actions, list) or not actions:
            errors.append(issue("VALIDATION_ERROR", "at least one action is required", "actions"))
        else:
            for idx, action in enumerate(actions):
                _validate_action(action, f"actions[{idx}]", errors)
            types = [a.get("action_type") for a in actions if isinstance(a, dict)]
            if "delete_source" in types[:-1]:
                errors.append(issue("VALIDATION_ERROR", "delete_source must be the last action", "actions"))
    return errors
