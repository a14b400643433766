import os
import sys
import unittest
from datetime import datetime, timedelta, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from action_exec import ActionExecutor
from app.stores import (
    MemoryAutomationLogStore,
    MemoryPendingActionStore,
    MemoryRecordStore,
    QuoteConversion,
    RecordInvoicing,
)
from app.template_render import render_config
from automation_engine import AutomationEngine, WorkflowMatcher, delay_minutes, manual_event
from entities import EntityGateway
from event_bus import make_event
from workflow_store import WorkflowStore


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent = []

    async def send_email(self, message: dict) -> dict:
        self.sent.append(("email", message))
        return {"delivered": True}

    async def send_sms(self, message: dict) -> dict:
        self.sent.append(("sms", message))
        return {"delivered": True}

    async def send_notification(self, message: dict) -> dict:
        self.sent.append(("notification", message))
        return {"delivered": True}

    async def call_webhook(self, request: dict) -> dict:
        self.sent.append(("webhook", request))
        return {"delivered": True}


TASK = {"action_type": "create_task", "config": {"title": "Follow up"}}
BROKEN_EMAIL = {"action_type": "send_email", "config": {"subject": "No recipient"}}


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = Clock()
        self.records = MemoryRecordStore()
        self.workflows = WorkflowStore()
        self.logs = MemoryAutomationLogStore()
        self.pending = MemoryPendingActionStore()
        self.notifier = RecordingNotifier()
        executor = ActionExecutor(
            entities=EntityGateway(self.records),
            records=self.records,
            notifier=self.notifier,
            invoicing=RecordInvoicing(self.records),
            job_creation=QuoteConversion(self.records),
            render=render_config,
        )
        self.engine = AutomationEngine(
            workflows=self.workflows,
            logs=self.logs,
            pending=self.pending,
            executor=executor,
            clock=self.clock,
        )

    def _workflow(self, actions: list, trigger_type: str = "job_completed", conditions=None, **fields) -> dict:
        trigger = {"trigger_type": trigger_type, "conditions": conditions or []}
        if "trigger_config" in fields:
            trigger["config"] = fields.pop("trigger_config")
        return self.workflows.create({"name": "wf", "triggers": [trigger], "actions": actions, **fields})

    def _job_event(self, **fields) -> dict:
        job = self.records.create("job", {"status": "completed", **fields})
        return make_event("job_completed", job)


class TestMatching(EngineTestCase):
    def test_condition_example_matches_large_jobs_only(self) -> None:
        wf = self._workflow([TASK], conditions=[{"field": "total", "operator": "greater_than", "value": 1000}])
        self.assertEqual([w["id"] for w in self.engine.match_workflows(self._job_event(total=1500))], [wf["id"]])
        self.assertEqual(self.engine.match_workflows(self._job_event(total=500)), [])

    def test_inactive_deleted_and_templates_never_match(self) -> None:
        active = self._workflow([TASK])
        self._workflow([TASK], is_active=False)
        self._workflow([TASK], is_template=True)
        deleted = self._workflow([TASK])
        self.workflows.soft_delete(deleted["id"])
        matched = self.engine.match_workflows(self._job_event())
        self.assertEqual([w["id"] for w in matched], [active["id"]])

    def test_trigger_type_must_match(self) -> None:
        self._workflow([TASK], trigger_type="invoice_sent")
        self.assertEqual(self.engine.match_workflows(self._job_event()), [])

    def test_scheduled_trigger_frequency(self) -> None:
        self._workflow([TASK], trigger_type="scheduled", trigger_config={"frequency": "daily"})
        self.assertTrue(WorkflowMatcher.trigger_matches(
            {"trigger_type": "scheduled", "config": {"frequency": "daily"}, "conditions": []},
            make_event("scheduled", {"frequency": "daily"}),
        ))
        self.assertEqual(len(self.engine.match_workflows(make_event("scheduled", {"frequency": "daily"}))), 1)
        self.assertEqual(self.engine.match_workflows(make_event("scheduled", {"frequency": "hourly"})), [])


class TestExecution(EngineTestCase):
    async def test_actions_run_in_order_with_one_log_each(self) -> None:
        wf = self._workflow(
            [
                {"action_type": "create_task", "config": {"title": "second"}, "action_order": 2},
                {"action_type": "create_task", "config": {"title": "first"}, "action_order": 1},
            ]
        )
        result = await self.engine.execute(wf, self._job_event())
        self.assertEqual(result["status"], "completed")
        logs = result["logs"]
        self.assertEqual([l["action_order"] for l in logs], [1, 2])
        self.assertTrue(all(l["status"] == "completed" for l in logs))
        self.assertTrue(all(l["workflow_id"] == wf["id"] for l in logs))
        self.assertTrue(all(l["execution_id"] == result["execution_id"] for l in logs))
        self.assertEqual([t["title"] for t in self.records.list("task")], ["first", "second"])
        self.assertIsNotNone(logs[0]["duration_ms"])
        self.assertEqual(logs[0]["trigger_type"], "job_completed")

    async def test_failure_halts_and_skips_remaining(self) -> None:
        wf = self._workflow([BROKEN_EMAIL, TASK])
        result = await self.engine.execute(wf, self._job_event())
        self.assertEqual(result["status"], "failed")
        statuses = [l["status"] for l in result["logs"]]
        self.assertEqual(statuses, ["failed", "skipped"])
        self.assertIn("recipients", result["logs"][0]["error_message"])
        self.assertEqual(result["logs"][1]["error_message"], "Skipped: action 0 (send_email) failed")
        self.assertEqual(self.records.list("task"), [])

    async def test_continue_on_error_runs_next_action(self) -> None:
        wf = self._workflow([{**BROKEN_EMAIL, "continue_on_error": True}, TASK])
        result = await self.engine.execute(wf, self._job_event())
        self.assertEqual([l["status"] for l in result["logs"]], ["failed", "completed"])
        self.assertEqual(result["status"], "failed")
        self.assertEqual(len(self.records.list("task")), 1)

    async def test_daily_cap_writes_one_skipped_log(self) -> None:
        wf = self._workflow([TASK], max_executions_per_day=3)
        results = []
        for _ in range(4):
            results.append(await self.engine.execute(wf, self._job_event()))
        self.assertEqual([r["status"] for r in results], ["completed", "completed", "completed", "skipped"])
        skipped_logs = results[3]["logs"]
        self.assertEqual(len(skipped_logs), 1)
        self.assertEqual(skipped_logs[0]["status"], "skipped")
        self.assertEqual(skipped_logs[0]["error_message"], "rate_limit_exceeded")
        self.assertEqual(len(self.records.list("task")), 3)

        self.clock.advance(hours=24, minutes=1)
        self.assertEqual((await self.engine.execute(wf, self._job_event()))["status"], "completed")

    async def test_cooldown_per_entity(self) -> None:
        wf = self._workflow([TASK], cooldown_minutes=60)
        event = self._job_event()
        self.assertEqual((await self.engine.execute(wf, event))["status"], "completed")
        self.clock.advance(minutes=30)
        again = await self.engine.execute(wf, event)
        self.assertEqual(again["status"], "skipped")
        self.assertEqual(again["logs"][0]["error_message"], "cooldown_active")
        self.assertEqual((await self.engine.execute(wf, self._job_event()))["status"], "completed")
        self.clock.advance(minutes=31)
        self.assertEqual((await self.engine.execute(wf, event))["status"], "completed")

    async def test_manual_execution_is_logged_as_manual(self) -> None:
        wf = self._workflow([TASK])
        job = self.records.create("job", {"status": "completed"})
        event = manual_event({"entity_type": "job", "entity_id": job["id"], "entity_data": {"title": "x"}})
        result = await self.engine.execute(wf, event, manual=True)
        self.assertEqual(result["status"], "completed")
        self.assertEqual(result["logs"][0]["trigger_type"], "manual")
        self.assertEqual(result["logs"][0]["triggered_by_entity_id"], job["id"])


class TestDelayedActions(EngineTestCase):
    def test_delay_minutes(self) -> None:
        self.assertEqual(delay_minutes({"action_type": "send_email", "delay_minutes": 15}), 15)
        self.assertEqual(delay_minutes({"action_type": "delay", "config": {"minutes": 45}}), 45)
        self.assertEqual(delay_minutes({"action_type": "create_task"}), 0)

    async def test_delay_defers_remaining_actions(self) -> None:
        wf = self._workflow(
            [
                {"action_type": "create_task", "config": {"title": "now"}},
                {"action_type": "create_task", "config": {"title": "later"}, "delay_minutes": 30},
                {"action_type": "create_task", "config": {"title": "after"}},
            ]
        )
        result = await self.engine.execute(wf, self._job_event())
        self.assertEqual(result["status"], "scheduled")
        self.assertEqual([l["status"] for l in result["logs"]], ["completed", "pending"])
        pending = self.pending.list(status="pending")
        self.assertEqual(len(pending), 1)
        self.assertEqual([a["config"]["title"] for a in pending[0]["actions"]], ["later", "after"])
        self.assertEqual(pending[0]["run_at"], "2026-04-01T09:30:00.000000Z")
        self.assertEqual(pending[0]["log_id"], result["logs"][1]["id"])

        self.assertEqual(self.pending.claim_due(self.clock.now), [])
        self.clock.advance(minutes=30)
        claimed = self.pending.claim_due(self.clock.now)
        self.assertEqual(len(claimed), 1)
        resumed = await self.engine.resume(claimed[0])
        self.assertEqual(resumed["status"], "completed")
        self.assertEqual(resumed["execution_id"], result["execution_id"])
        self.assertEqual([l["status"] for l in resumed["logs"]], ["completed", "completed", "completed"])
        self.assertEqual([t["title"] for t in self.records.list("task")], ["now", "later", "after"])
        self.assertEqual(self.pending.list(status="pending"), [])
        self.assertEqual(resumed["logs"][1]["id"], result["logs"][1]["id"])

    async def test_deferred_executions_count_toward_daily_cap(self) -> None:
        wf = self._workflow(
            [{"action_type": "create_task", "config": {"title": "later"}, "delay_minutes": 5}],
            max_executions_per_day=1,
            cooldown_minutes=60,
        )
        event = self._job_event()
        results = []
        for _ in range(4):
            results.append(await self.engine.execute(wf, event))
        self.assertEqual([r["status"] for r in results], ["scheduled", "skipped", "skipped", "skipped"])
        self.assertEqual(results[1]["logs"][0]["error_message"], "rate_limit_exceeded")
        self.assertEqual(len(self.pending.list(status="pending")), 1)

    async def test_deferred_execution_starts_cooldown(self) -> None:
        wf = self._workflow(
            [{"action_type": "create_task", "config": {"title": "later"}, "delay_minutes": 5}],
            cooldown_minutes=60,
        )
        event = self._job_event()
        self.assertEqual((await self.engine.execute(wf, event))["status"], "scheduled")
        self.clock.advance(minutes=10)
        again = await self.engine.execute(wf, event)
        self.assertEqual(again["status"], "skipped")
        self.assertEqual(again["logs"][0]["error_message"], "cooldown_active")
        self.clock.advance(minutes=51)
        self.assertEqual((await self.engine.execute(wf, event))["status"], "scheduled")

    async def test_resume_keeps_earlier_failures(self) -> None:
        wf = self._workflow(
            [
                {**BROKEN_EMAIL, "continue_on_error": True},
                {"action_type": "create_task", "config": {"title": "later"}, "delay_minutes": 5},
            ]
        )
        result = await self.engine.execute(wf, self._job_event())
        self.assertEqual(result["status"], "scheduled")
        self.clock.advance(minutes=5)
        resumed = await self.engine.resume(self.pending.claim_due(self.clock.now)[0])
        self.assertEqual([l["status"] for l in resumed["logs"]], ["failed", "completed"])
        self.assertEqual(resumed["status"], "failed")


class TestHandleEvent(EngineTestCase):
    async def test_workflows_are_isolated(self) -> None:
        failing = self._workflow([BROKEN_EMAIL])
        healthy = self._workflow([TASK])
        results = await self.engine.handle_event(self._job_event())
        by_workflow = {r["workflow_id"]: r["status"] for r in results}
        self.assertEqual(by_workflow, {failing["id"]: "failed", healthy["id"]: "completed"})

    async def test_status_condition_gates_execution(self) -> None:
        done = self._workflow([TASK], conditions=[{"field": "status", "operator": "equals", "value": "completed"}])
        self._workflow([TASK], conditions=[{"field": "status", "operator": "equals", "value": "cancelled"}])
        results = await self.engine.handle_event(self._job_event())
        self.assertEqual([r["workflow_id"] for r in results], [done["id"]])
        self.assertEqual({l["workflow_id"] for l in self.logs.list()}, {done["id"]})

    async def test_no_match_returns_empty(self) -> None:
        self._workflow([TASK], trigger_type="invoice_sent")
        self.assertEqual(await self.engine.handle_event(self._job_event()), [])


if __name__ == "__main__":
    unittest.main()
