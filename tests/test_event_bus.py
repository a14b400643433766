import asyncio
import os
import sys
import threading
import time
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import EventBus, EventValidationError, make_event, validate_event


class TestMakeEvent(unittest.TestCase):
    def test_envelope_defaults_from_payload(self) -> None:
        event = make_event("job_completed", {"id": "j1", "status": "completed"})
        self.assertEqual(event["type"], "job_completed")
        self.assertEqual(event["entity_type"], "job")
        self.assertEqual(event["entity_id"], "j1")
        self.assertTrue(event["occurred_at"].endswith("Z"))
        self.assertTrue(event["event_id"])

    def test_explicit_entity_wins(self) -> None:
        event = make_event("quote_converted", {"id": "q1", "job_id": "j9"}, entity_type="job", entity_id="j9")
        self.assertEqual(event["entity_type"], "job")
        self.assertEqual(event["entity_id"], "j9")

    def test_scheduled_has_no_entity(self) -> None:
        event = make_event("scheduled", {"frequency": "daily"})
        self.assertIsNone(event["entity_type"])
        self.assertIsNone(event["entity_id"])

    def test_payload_must_be_json(self) -> None:
        with self.assertRaises(EventValidationError) as ctx:
            make_event("job_completed", {"bad": object()})
        self.assertEqual(ctx.exception.code, "EVENT_PAYLOAD_INVALID")

    def test_validate_event_occurred_at(self) -> None:
        event = make_event("job_started", {"id": "j1"})
        event["occurred_at"] = "2026-01-01T00:00:00"
        with self.assertRaises(EventValidationError) as ctx:
            validate_event(event)
        self.assertEqual(ctx.exception.code, "EVENT_OCCURRED_AT_INVALID")


class TestEventBusSync(unittest.TestCase):
    def setUp(self) -> None:
        self.bus = EventBus()

    def tearDown(self) -> None:
        self.bus.close()

    def test_emit_without_loop_does_not_wait_for_handlers(self) -> None:
        done = []

        async def slow(evt: dict) -> None:
            await asyncio.sleep(1.0)
            done.append(evt["event_id"])

        self.bus.subscribe("job_completed", slow)
        start = time.perf_counter()
        event = self.bus.emit_business_event("job_completed", {"id": "j1"})
        self.assertLess(time.perf_counter() - start, 0.5)
        self.assertEqual(done, [])
        self.assertEqual(self.bus.inflight, 1)
        self.assertTrue(self.bus.flush(timeout=5))
        self.assertEqual(done, [event["event_id"]])

    def test_handlers_called_in_subscription_order(self) -> None:
        calls = []

        def h1(evt: dict) -> None:
            calls.append("h1")

        async def h2(evt: dict) -> None:
            calls.append("h2")

        self.bus.subscribe("job_scheduled", h1)
        self.bus.subscribe("job_scheduled", h2)
        self.assertIsNotNone(self.bus.emit_business_event("job_scheduled", {"id": "j1"}))
        self.assertTrue(self.bus.flush())
        self.assertEqual(calls, ["h1", "h2"])

    def test_wildcard_and_unsubscribe(self) -> None:
        seen = []

        def everything(evt: dict) -> None:
            seen.append(evt["type"])

        self.bus.subscribe("*", everything)
        self.bus.emit_business_event("invoice_sent", {"id": "i1"})
        self.assertTrue(self.bus.flush())
        self.assertTrue(self.bus.unsubscribe("*", everything))
        self.assertFalse(self.bus.unsubscribe("*", everything))
        self.bus.emit_business_event("invoice_sent", {"id": "i2"})
        self.assertTrue(self.bus.flush())
        self.assertEqual(seen, ["invoice_sent"])

    def test_handler_errors_never_reach_emitter(self) -> None:
        calls = []

        def broken(evt: dict) -> None:
            raise RuntimeError("boom")

        def healthy(evt: dict) -> None:
            calls.append(evt["entity_id"])

        self.bus.subscribe("payment_received", broken)
        self.bus.subscribe("payment_received", healthy)
        with self.assertLogs("fieldflow.event_bus", level="ERROR"):
            event = self.bus.emit_business_event("payment_received", {"id": "p1"})
            self.assertTrue(self.bus.flush())
        self.assertIsNotNone(event)
        self.assertEqual(calls, ["p1"])

    def test_invalid_event_is_dropped(self) -> None:
        with self.assertLogs("fieldflow.event_bus", level="ERROR"):
            self.assertIsNone(self.bus.emit_business_event("", {"id": "x"}))


class TestEventBusAsync(unittest.IsolatedAsyncioTestCase):
    async def test_emit_returns_before_handlers_finish(self) -> None:
        bus = EventBus()
        gate = asyncio.Event()
        done = []

        async def slow(evt: dict) -> None:
            await gate.wait()
            done.append(evt["event_id"])

        bus.subscribe("job_completed", slow)
        event = bus.emit_business_event("job_completed", {"id": "j1"})
        self.assertEqual(done, [])
        self.assertEqual(bus.inflight, 1)
        gate.set()
        await bus.drain()
        self.assertEqual(done, [event["event_id"]])
        self.assertEqual(bus.inflight, 0)

    async def test_sync_emit_from_worker_thread_runs_on_bound_loop(self) -> None:
        bus = EventBus()
        loop = asyncio.get_running_loop()
        bus.bind_loop(loop)
        threads = []

        async def record(evt: dict) -> None:
            threads.append(threading.get_ident())

        bus.subscribe("invoice_sent", record)
        event = await asyncio.to_thread(bus.emit_business_event, "invoice_sent", {"id": "i1"})
        self.assertIsNotNone(event)
        await bus.drain()
        self.assertEqual(threads, [threading.get_ident()])
        self.assertEqual(bus.inflight, 0)


if __name__ == "__main__":
    unittest.main()
