"""Business automation engine: match workflows to events, rate limit, run actions in order."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, List, Protocol

from action_exec import ActionExecutor
from condition_eval import eval_conditions
from errors import FieldflowError
from event_bus import Event, make_event
from fieldflow import json_safe, to_iso, utcnow


TRIGGER_TYPES = (
    "quote_sent",
    "quote_approved",
    "quote_declined",
    "lead_converted",
    "quote_converted",
    "job_created",
    "job_scheduled",
    "job_started",
    "job_completed",
    "job_cancelled",
    "invoice_created",
    "invoice_sent",
    "invoice_overdue",
    "payment_received",
    "lead_created",
    "client_created",
    "scheduled",
)

MANUAL_TRIGGER = "manual"
RATE_LIMIT_WINDOW = timedelta(hours=24)

logger = logging.getLogger("fieldflow.automation")


class WorkflowSource(Protocol):
    def list_active_for_trigger(self, trigger_type: str) -> List[dict]: ...


class LogStore(Protocol):
    def create(self, record: dict) -> dict: ...

    def update(self, log_id: str, updates: dict) -> dict | None: ...

    def list_by_execution(self, execution_id: str) -> list[dict]: ...

    def count_executions_since(self, workflow_id: str, since: datetime) -> int: ...

    def last_completed_at(self, workflow_id: str, entity_type: str | None, entity_id: str) -> datetime | None: ...


class PendingActionStore(Protocol):
    def create(self, record: dict) -> dict: ...


class WorkflowMatcher:
    def __init__(self, workflows: WorkflowSource) -> None:
        self._workflows = workflows

    @staticmethod
    def trigger_matches(trigger: dict, event: Event) -> bool:
        if not isinstance(trigger, dict) or trigger.get("trigger_type") != event.get("type"):
            return False
        if trigger.get("trigger_type") == "scheduled":
            frequency = (trigger.get("config") or {}).get("frequency")
            if frequency and frequency != (event.get("payload") or {}).get("frequency"):
                return False
        return eval_conditions(trigger.get("conditions"), event)

    def match(self, event: Event) -> List[dict]:
        matched = []
        for workflow in self._workflows.list_active_for_trigger(event["type"]):
            if workflow.get("deleted_at") or workflow.get("is_template") or not workflow.get("is_active"):
                continue
            if any(self.trigger_matches(t, event) for t in workflow.get("triggers") or []):
                matched.append(workflow)
        return matched


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: str | None = None
    detail: dict = field(default_factory=dict)


class RateLimiter:
    """Daily cap over a trailing window plus per-entity cooldown.

    Counts are read from the log, not reserved, so simultaneous events may
    overshoot the cap slightly. A deferred execution holds a ``pending`` log
    row, so it counts toward the cap and starts the cooldown when deferred.
    """

    def __init__(self, logs: LogStore, window: timedelta = RATE_LIMIT_WINDOW) -> None:
        self._logs = logs
        self._window = window

    def check(self, workflow: dict, event: Event, now: datetime) -> RateDecision:
        workflow_id = workflow["id"]
        max_per_day = workflow.get("max_executions_per_day")
        if max_per_day is not None:
            count = self._logs.count_executions_since(workflow_id, now - self._window)
            if count >= int(max_per_day):
                return RateDecision(
                    False,
                    "rate_limit_exceeded",
                    {"executions_24h": count, "max_executions_per_day": int(max_per_day)},
                )
        cooldown = int(workflow.get("cooldown_minutes") or 0)
        entity_id = event.get("entity_id")
        if cooldown > 0 and entity_id:
            last = self._logs.last_completed_at(workflow_id, event.get("entity_type"), entity_id)
            if last is not None and now - last < timedelta(minutes=cooldown):
                return RateDecision(
                    False,
                    "cooldown_active",
                    {"cooldown_minutes": cooldown, "last_completed_at": to_iso(last)},
                )
        return RateDecision(True)


class Flow(str, Enum):
    NEXT_ACTION = "next_action"
    HALT_EXECUTION = "halt_execution"


@dataclass(frozen=True)
class ActionOutcome:
    status: str
    output: Any = None
    error: str | None = None
    flow: Flow = Flow.NEXT_ACTION

    @classmethod
    def completed(cls, output: Any) -> "ActionOutcome":
        return cls("completed", output=output)

    @classmethod
    def failed(cls, error: str, continue_on_error: bool) -> "ActionOutcome":
        return cls("failed", error=error, flow=Flow.NEXT_ACTION if continue_on_error else Flow.HALT_EXECUTION)


@dataclass
class Execution:
    execution_id: str
    workflow: dict
    event: Event
    trigger_type: str
    started_at: str
    failures: int = 0


def delay_minutes(action: dict) -> int:
    minutes = int(action.get("delay_minutes") or 0)
    if minutes <= 0 and action.get("action_type") == "delay":
        minutes = int((action.get("config") or {}).get("minutes") or 0)
    return max(minutes, 0)


def manual_event(body: dict) -> Event:
    return make_event(
        MANUAL_TRIGGER,
        body.get("entity_data") or {},
        entity_type=body.get("entity_type"),
        entity_id=body.get("entity_id"),
    )


class AutomationEngine:
    def __init__(
        self,
        *,
        workflows: WorkflowSource,
        logs: LogStore,
        pending: PendingActionStore,
        executor: ActionExecutor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._logs = logs
        self._pending = pending
        self._executor = executor
        self._clock = clock
        self.matcher = WorkflowMatcher(workflows)
        self.limiter = RateLimiter(logs)

    def match_workflows(self, event: Event) -> List[dict]:
        return self.matcher.match(event)

    async def handle_event(self, event: Event) -> List[dict]:
        matched = self.match_workflows(event)
        if not matched:
            logger.info("automation_no_match type=%s event_id=%s", event.get("type"), event.get("event_id"))
            return []
        logger.info(
            "automation_matched type=%s event_id=%s workflows=%s",
            event.get("type"),
            event.get("event_id"),
            [w.get("id") for w in matched],
        )
        results = await asyncio.gather(*(self._execute_isolated(w, event) for w in matched))
        return [r for r in results if r is not None]

    async def _execute_isolated(self, workflow: dict, event: Event) -> dict | None:
        try:
            return await self.execute(workflow, event)
        except Exception:
            logger.exception("automation_execution_crashed workflow_id=%s event_id=%s", workflow.get("id"), event.get("event_id"))
            return None

    async def execute(self, workflow: dict, event: Event, *, manual: bool = False) -> dict:
        execution = Execution(
            execution_id=str(uuid.uuid4()),
            workflow={"id": workflow["id"], "name": workflow.get("name")},
            event=event,
            trigger_type=MANUAL_TRIGGER if manual else event["type"],
            started_at=to_iso(self._clock()),
        )
        decision = self.limiter.check(workflow, event, self._clock())
        if not decision.allowed:
            self._write_skip(execution, decision)
            return self._summary(execution, "skipped")

        logger.info(
            "automation_execution_started execution_id=%s workflow_id=%s trigger=%s entity=%s:%s",
            execution.execution_id,
            workflow["id"],
            execution.trigger_type,
            event.get("entity_type"),
            event.get("entity_id"),
        )
        actions = sorted(workflow.get("actions") or [], key=lambda a: a.get("action_order") or 0)
        status = await self._run_actions(execution, actions, resumed=False)
        logger.info("automation_execution_finished execution_id=%s status=%s", execution.execution_id, status)
        return self._summary(execution, status)

    async def resume(self, pending: dict) -> dict:
        earlier = self._logs.list_by_execution(pending["execution_id"])
        execution = Execution(
            execution_id=pending["execution_id"],
            workflow={"id": pending["workflow_id"], "name": pending.get("workflow_name")},
            event=pending["event"],
            trigger_type=pending.get("trigger_type") or pending["event"].get("type"),
            started_at=to_iso(self._clock()),
            failures=sum(1 for log in earlier if log.get("status") == "failed"),
        )
        logger.info(
            "automation_execution_resumed execution_id=%s workflow_id=%s pending_id=%s",
            execution.execution_id,
            execution.workflow["id"],
            pending.get("id"),
        )
        status = await self._run_actions(
            execution, list(pending.get("actions") or []), resumed=True, first_log_id=pending.get("log_id")
        )
        return self._summary(execution, status)

    async def _run_actions(
        self, execution: Execution, actions: List[dict], resumed: bool, first_log_id: str | None = None
    ) -> str:
        for idx, action in enumerate(actions):
            minutes = delay_minutes(action)
            if minutes > 0 and not (resumed and idx == 0):
                self._defer(execution, actions[idx:], minutes)
                return "scheduled"
            outcome = await self._run_action(execution, action, log_id=first_log_id if idx == 0 else None)
            if outcome.status == "failed":
                execution.failures += 1
            if outcome.flow is Flow.HALT_EXECUTION:
                self._skip_remaining(execution, actions[idx + 1 :], action)
                return "failed"
        return "failed" if execution.failures else "completed"

    async def _run_action(self, execution: Execution, action: dict, log_id: str | None = None) -> ActionOutcome:
        running = {
            "status": "running",
            "input_data": json_safe({"config": action.get("config") or {}}),
            "started_at": to_iso(self._clock()),
        }
        # a resumed action takes over the pending row written when it was deferred
        log = self._logs.update(log_id, running) if log_id else None
        if log is None:
            log = self._logs.create(
                {
                    **self._log_base(execution),
                    "action_type": action.get("action_type"),
                    "action_id": action.get("id"),
                    "action_order": action.get("action_order"),
                    **running,
                }
            )
        start = time.perf_counter()
        try:
            output = await self._executor.execute(action, execution.event, execution.workflow)
            outcome = ActionOutcome.completed(output)
        except FieldflowError as exc:
            outcome = ActionOutcome.failed(exc.message, bool(action.get("continue_on_error")))
        except Exception as exc:
            logger.exception(
                "automation_action_crashed execution_id=%s action_id=%s", execution.execution_id, action.get("id")
            )
            outcome = ActionOutcome.failed(str(exc) or exc.__class__.__name__, bool(action.get("continue_on_error")))
        duration_ms = int((time.perf_counter() - start) * 1000)
        self._logs.update(
            log["id"],
            {
                "status": outcome.status,
                "output_data": outcome.output,
                "error_message": outcome.error,
                "completed_at": to_iso(self._clock()),
                "duration_ms": duration_ms,
            },
        )
        level = logging.INFO if outcome.status == "completed" else logging.WARNING
        logger.log(
            level,
            "automation_action_%s execution_id=%s action_type=%s order=%s duration_ms=%s error=%s",
            outcome.status,
            execution.execution_id,
            action.get("action_type"),
            action.get("action_order"),
            duration_ms,
            outcome.error,
        )
        return outcome

    def _log_base(self, execution: Execution) -> dict:
        return {
            "execution_id": execution.execution_id,
            "workflow_id": execution.workflow["id"],
            "trigger_type": execution.trigger_type,
            "triggered_by_entity_type": execution.event.get("entity_type"),
            "triggered_by_entity_id": execution.event.get("entity_id"),
        }

    def _write_skip(self, execution: Execution, decision: RateDecision) -> None:
        now = to_iso(self._clock())
        self._logs.create(
            {
                **self._log_base(execution),
                "action_type": None,
                "action_id": None,
                "action_order": None,
                "status": "skipped",
                "input_data": json_safe({"reason": decision.reason, **decision.detail}),
                "error_message": decision.reason,
                "started_at": now,
                "completed_at": now,
                "duration_ms": 0,
            }
        )
        logger.warning(
            "automation_execution_skipped execution_id=%s workflow_id=%s reason=%s detail=%s",
            execution.execution_id,
            execution.workflow["id"],
            decision.reason,
            decision.detail,
        )

    def _skip_remaining(self, execution: Execution, remaining: List[dict], failed_action: dict) -> None:
        now = to_iso(self._clock())
        message = f"Skipped: action {failed_action.get('action_order')} ({failed_action.get('action_type')}) failed"
        for action in remaining:
            self._logs.create(
                {
                    **self._log_base(execution),
                    "action_type": action.get("action_type"),
                    "action_id": action.get("id"),
                    "action_order": action.get("action_order"),
                    "status": "skipped",
                    "input_data": json_safe({"config": action.get("config") or {}}),
                    "error_message": message,
                    "started_at": now,
                    "completed_at": now,
                    "duration_ms": 0,
                }
            )

    def _defer(self, execution: Execution, remaining: List[dict], minutes: int) -> None:
        now = self._clock()
        run_at = now + timedelta(minutes=minutes)
        head = remaining[0]
        log = self._logs.create(
            {
                **self._log_base(execution),
                "action_type": head.get("action_type"),
                "action_id": head.get("id"),
                "action_order": head.get("action_order"),
                "status": "pending",
                "input_data": json_safe({"config": head.get("config") or {}, "run_at": to_iso(run_at)}),
                "started_at": to_iso(now),
            }
        )
        pending = self._pending.create(
            {
                "execution_id": execution.execution_id,
                "workflow_id": execution.workflow["id"],
                "workflow_name": execution.workflow.get("name"),
                "trigger_type": execution.trigger_type,
                "log_id": log["id"],
                "run_at": to_iso(run_at),
                "event": copy.deepcopy(execution.event),
                "actions": copy.deepcopy(remaining),
            }
        )
        logger.info(
            "automation_action_deferred execution_id=%s pending_id=%s action_order=%s run_at=%s",
            execution.execution_id,
            pending.get("id"),
            remaining[0].get("action_order"),
            pending.get("run_at"),
        )

    def _summary(self, execution: Execution, status: str) -> dict:
        return {
            "execution_id": execution.execution_id,
            "workflow_id": execution.workflow["id"],
            "workflow_name": execution.workflow.get("name"),
            "status": status,
            "started_at": execution.started_at,
            "logs": self._logs.list_by_execution(execution.execution_id),
        }
