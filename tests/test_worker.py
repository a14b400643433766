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
from app.worker import DelayedActionWorker, ScheduleTicker
from automation_engine import AutomationEngine
from entities import EntityGateway
from event_bus import EventBus, make_event
from workflow_store import WorkflowStore


class NullNotifier:
    async def send_email(self, message: dict) -> dict:
        return {"delivered": True}

    async def send_sms(self, message: dict) -> dict:
        return {"delivered": True}

    async def send_notification(self, message: dict) -> dict:
        return {"delivered": True}

    async def call_webhook(self, request: dict) -> dict:
        return {"delivered": True}


class CrashingEngine:
    async def resume(self, pending: dict) -> dict:
        raise RuntimeError("engine offline")


class TestDelayedActionWorker(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.now = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)
        self.records = MemoryRecordStore()
        self.workflows = WorkflowStore()
        self.logs = MemoryAutomationLogStore()
        self.pending = MemoryPendingActionStore()
        executor = ActionExecutor(
            entities=EntityGateway(self.records),
            records=self.records,
            notifier=NullNotifier(),
            invoicing=RecordInvoicing(self.records),
            job_creation=QuoteConversion(self.records),
            render=render_config,
        )
        self.engine = AutomationEngine(
            workflows=self.workflows,
            logs=self.logs,
            pending=self.pending,
            executor=executor,
            clock=lambda: self.now,
        )

    async def test_runs_due_actions_once(self) -> None:
        wf = self.workflows.create(
            {
                "name": "Later",
                "triggers": [{"trigger_type": "job_completed"}],
                "actions": [{"action_type": "create_task", "config": {"title": "Check in"}, "delay_minutes": 60}],
            }
        )
        job = self.records.create("job", {"status": "completed"})
        first = await self.engine.execute(wf, make_event("job_completed", job))
        self.assertEqual(first["status"], "scheduled")

        worker = DelayedActionWorker(self.engine, self.pending)
        self.assertEqual(await worker.run_due(self.now + timedelta(minutes=59)), [])
        self.now += timedelta(minutes=60)
        results = await worker.run_due(self.now)
        self.assertEqual([r["status"] for r in results], ["completed"])
        self.assertEqual(results[0]["execution_id"], first["execution_id"])
        self.assertEqual(len(self.records.list("task")), 1)
        done = self.pending.list(status="done")
        self.assertEqual(len(done), 1)
        self.assertIsNone(done[0]["last_error"])
        self.assertEqual(await worker.run_due(self.now + timedelta(hours=1)), [])
        self.assertEqual(len(self.records.list("task")), 1)

    async def test_crash_is_recorded_and_not_retried(self) -> None:
        self.pending.create({"execution_id": "e1", "workflow_id": "w1", "run_at": "2026-05-04T09:00:00.000000Z", "event": {}, "actions": []})
        worker = DelayedActionWorker(CrashingEngine(), self.pending)
        with self.assertLogs("fieldflow.worker", level="ERROR"):
            self.assertEqual(await worker.run_due(self.now), [])
        done = self.pending.list(status="done")
        self.assertEqual(done[0]["last_error"], "engine offline")
        self.assertEqual(await worker.run_due(self.now), [])


class TestScheduleTicker(unittest.TestCase):
    def setUp(self) -> None:
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe("scheduled", lambda evt: self.events.append(evt))
        self.ticker = ScheduleTicker(self.bus)

    def tearDown(self) -> None:
        self.bus.close()

    def test_first_tick_only_records_boundaries(self) -> None:
        self.assertEqual(self.ticker.tick(datetime(2026, 5, 4, 10, 15, tzinfo=timezone.utc)), [])
        self.assertEqual(self.ticker.tick(datetime(2026, 5, 4, 10, 45, tzinfo=timezone.utc)), [])
        self.assertTrue(self.bus.flush())
        self.assertEqual(self.events, [])

    def test_boundaries_fire_once(self) -> None:
        self.ticker.tick(datetime(2026, 5, 4, 10, 59, tzinfo=timezone.utc))
        self.assertEqual(self.ticker.tick(datetime(2026, 5, 4, 11, 0, tzinfo=timezone.utc)), ["hourly"])
        self.assertEqual(self.ticker.tick(datetime(2026, 5, 4, 11, 30, tzinfo=timezone.utc)), [])
        # Sunday 23:00 -> Monday 00:00 crosses hour, day and ISO week
        self.ticker.tick(datetime(2026, 5, 10, 23, 0, tzinfo=timezone.utc))
        self.assertTrue(self.bus.flush())
        self.events.clear()
        fired = self.ticker.tick(datetime(2026, 5, 11, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(fired, ["hourly", "daily", "weekly"])
        self.assertTrue(self.bus.flush())
        self.assertEqual([e["payload"]["frequency"] for e in self.events], ["hourly", "daily", "weekly"])
        self.assertEqual(self.events[1]["payload"]["period"], "2026-05-11")
        self.assertEqual(self.events[2]["payload"]["period"], "2026-W20")
        self.assertIsNone(self.events[0]["entity_id"])


if __name__ == "__main__":
    unittest.main()
