"""In-memory workflow definition store (triggers and actions nested per workflow)."""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, List

from fieldflow import now_iso


Workflow = Dict[str, Any]

WORKFLOW_FIELDS = (
    "name",
    "description",
    "is_active",
    "is_template",
    "template_category",
    "max_executions_per_day",
    "cooldown_minutes",
    "created_by",
)

DEFAULT_MAX_EXECUTIONS_PER_DAY = 100


def normalize_triggers(triggers: list | None) -> list[dict]:
    out = []
    for idx, trigger in enumerate(triggers or []):
        item = copy.deepcopy(trigger)
        item.setdefault("id", str(uuid.uuid4()))
        item["config"] = item.get("config") or {}
        item["conditions"] = item.get("conditions") or []
        if item.get("trigger_order") is None:
            item["trigger_order"] = idx
        out.append(item)
    out.sort(key=lambda t: t["trigger_order"])
    return out


def normalize_actions(actions: list | None) -> list[dict]:
    out = []
    for idx, action in enumerate(actions or []):
        item = copy.deepcopy(action)
        item.setdefault("id", str(uuid.uuid4()))
        item["config"] = item.get("config") or {}
        item["delay_minutes"] = int(item.get("delay_minutes") or 0)
        item["continue_on_error"] = bool(item.get("continue_on_error", False))
        if item.get("action_order") is None:
            item["action_order"] = idx
        out.append(item)
    out.sort(key=lambda a: a["action_order"])
    return out


def apply_defaults(record: dict) -> Workflow:
    item = {key: copy.deepcopy(record.get(key)) for key in WORKFLOW_FIELDS if key in record}
    item.setdefault("description", None)
    item["is_active"] = bool(item.get("is_active", True))
    item["is_template"] = bool(item.get("is_template", False))
    item.setdefault("template_category", None)
    if item.get("max_executions_per_day") is None:
        item["max_executions_per_day"] = DEFAULT_MAX_EXECUTIONS_PER_DAY
    if item.get("cooldown_minutes") is None:
        item["cooldown_minutes"] = 0
    item["triggers"] = normalize_triggers(record.get("triggers"))
    item["actions"] = normalize_actions(record.get("actions"))
    return item


def summarize(item: Workflow) -> Workflow:
    out = copy.deepcopy(item)
    out["trigger_count"] = len(out.get("triggers") or [])
    out["action_count"] = len(out.get("actions") or [])
    return out


class WorkflowStore:
    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._lock = threading.Lock()

    def create(self, record: dict) -> Workflow:
        item = apply_defaults(record)
        now = now_iso()
        item["id"] = record.get("id") or str(uuid.uuid4())
        item["created_at"] = now
        item["updated_at"] = now
        item["deleted_at"] = None
        with self._lock:
            self._workflows[item["id"]] = item
        return summarize(item)

    def get(self, workflow_id: str, include_deleted: bool = False) -> Workflow | None:
        item = self._workflows.get(workflow_id)
        if item is None or (item.get("deleted_at") and not include_deleted):
            return None
        return summarize(item)

    def update(self, workflow_id: str, updates: dict) -> Workflow | None:
        with self._lock:
            item = self._workflows.get(workflow_id)
            if item is None or item.get("deleted_at"):
                return None
            for key in WORKFLOW_FIELDS:
                if key in updates:
                    item[key] = copy.deepcopy(updates[key])
            if "triggers" in updates:
                item["triggers"] = normalize_triggers(updates.get("triggers"))
            if "actions" in updates:
                item["actions"] = normalize_actions(updates.get("actions"))
            item["updated_at"] = now_iso()
            return summarize(item)

    def soft_delete(self, workflow_id: str) -> bool:
        with self._lock:
            item = self._workflows.get(workflow_id)
            if item is None or item.get("deleted_at"):
                return False
            item["deleted_at"] = now_iso()
            item["is_active"] = False
            return True

    def toggle(self, workflow_id: str) -> Workflow | None:
        with self._lock:
            item = self._workflows.get(workflow_id)
            if item is None or item.get("deleted_at"):
                return None
            item["is_active"] = not item.get("is_active")
            item["updated_at"] = now_iso()
            return summarize(item)

    def list(
        self,
        status: str | None = None,
        include_templates: bool = False,
        search: str | None = None,
    ) -> List[Workflow]:
        items = [w for w in self._workflows.values() if not w.get("deleted_at")]
        if not include_templates:
            items = [w for w in items if not w.get("is_template")]
        if status == "active":
            items = [w for w in items if w.get("is_active")]
        elif status == "inactive":
            items = [w for w in items if not w.get("is_active")]
        if search:
            needle = search.lower()
            items = [
                w for w in items
                if needle in (w.get("name") or "").lower() or needle in (w.get("description") or "").lower()
            ]
        items.sort(key=lambda w: w.get("updated_at") or "", reverse=True)
        return [summarize(w) for w in items]

    def list_templates(self, category: str | None = None) -> List[Workflow]:
        items = [w for w in self._workflows.values() if w.get("is_template") and not w.get("deleted_at")]
        if category:
            items = [w for w in items if w.get("template_category") == category]
        items.sort(key=lambda w: w.get("name") or "")
        return [summarize(w) for w in items]

    def list_active_for_trigger(self, trigger_type: str) -> List[Workflow]:
        out = []
        for item in self._workflows.values():
            if item.get("deleted_at") or item.get("is_template") or not item.get("is_active"):
                continue
            if any(t.get("trigger_type") == trigger_type for t in item.get("triggers") or []):
                out.append(summarize(item))
        out.sort(key=lambda w: w.get("created_at") or "")
        return out
