import os
import sys
import unittest
from datetime import datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from automation_stats import execution_status, filter_logs, get_stats, paginate, summarize_execution


def _log(execution_id, status, started_at, workflow_id="w1", action_type="send_email", order=0, duration=100, **extra):
    row = {
        "id": f"{execution_id}-{order}",
        "execution_id": execution_id,
        "workflow_id": workflow_id,
        "status": status,
        "action_type": action_type,
        "action_order": order,
        "started_at": started_at,
        "duration_ms": duration,
        "triggered_by_entity_type": "job",
        "triggered_by_entity_id": "j1",
    }
    row.update(extra)
    return row


class TestFilterAndPaginate(unittest.TestCase):
    def setUp(self) -> None:
        self.logs = [
            _log("e1", "completed", "2026-04-01T08:00:00.000000Z"),
            _log("e2", "failed", "2026-04-02T23:30:00.000000Z", action_type="webhook"),
            _log("e3", "completed", "2026-04-03T10:00:00.000000Z", workflow_id="w2", triggered_by_entity_id="j2"),
        ]

    def test_filters_combine(self) -> None:
        self.assertEqual([l["execution_id"] for l in filter_logs(self.logs, workflow_id="w1")], ["e2", "e1"])
        self.assertEqual([l["execution_id"] for l in filter_logs(self.logs, status="failed")], ["e2"])
        self.assertEqual([l["execution_id"] for l in filter_logs(self.logs, action_type="webhook")], ["e2"])
        self.assertEqual([l["execution_id"] for l in filter_logs(self.logs, entity_id="j2")], ["e3"])

    def test_bare_end_date_includes_whole_day(self) -> None:
        found = filter_logs(self.logs, start_date="2026-04-02", end_date="2026-04-02")
        self.assertEqual([l["execution_id"] for l in found], ["e2"])
        found = filter_logs(self.logs, end_date="2026-04-02T12:00:00Z")
        self.assertEqual([l["execution_id"] for l in found], ["e1"])

    def test_paginate(self) -> None:
        items, meta = paginate(list(range(45)), page=3, page_size=20)
        self.assertEqual(items, list(range(40, 45)))
        self.assertEqual(meta["total"], 45)
        self.assertEqual(meta["total_pages"], 3)
        self.assertFalse(meta["has_next_page"])
        self.assertTrue(meta["has_previous_page"])
        _, meta = paginate([], page=1, page_size=1000)
        self.assertEqual(meta["page_size"], 200)
        self.assertEqual(meta["total_pages"], 1)


class TestExecutionSummary(unittest.TestCase):
    def test_status_rollup(self) -> None:
        self.assertEqual(execution_status([]), "scheduled")
        self.assertEqual(execution_status([{"status": "completed"}, {"status": "running"}]), "running")
        self.assertEqual(execution_status([{"status": "failed"}, {"status": "skipped"}]), "failed")
        self.assertEqual(execution_status([{"status": "skipped"}]), "skipped")
        self.assertEqual(execution_status([{"status": "completed"}, {"status": "completed"}]), "completed")

    def test_summary_orders_by_action(self) -> None:
        logs = [
            _log("e1", "completed", "2026-04-01T08:00:02.000000Z", order=1),
            _log("e1", "completed", "2026-04-01T08:00:01.000000Z", order=0),
        ]
        summary = summarize_execution("e1", logs, {"id": "w1", "name": "Wrap-up"})
        self.assertEqual([l["action_order"] for l in summary["logs"]], [0, 1])
        self.assertEqual(summary["workflow_name"], "Wrap-up")
        self.assertEqual(summary["status"], "completed")
        self.assertEqual(summary["started_at"], "2026-04-01T08:00:01.000000Z")


class TestStats(unittest.TestCase):
    def test_stats_window_and_breakdowns(self) -> None:
        now = datetime(2026, 4, 7, 12, 0, tzinfo=timezone.utc)
        logs = [
            _log("e1", "completed", "2026-04-07T09:00:00.000000Z", duration=100),
            _log("e1", "completed", "2026-04-07T09:00:01.000000Z", order=1, action_type="create_task", duration=300),
            _log("e2", "failed", "2026-04-05T09:00:00.000000Z", duration=200),
            _log("e3", "skipped", "2026-04-04T09:00:00.000000Z", workflow_id="w2", action_type=None, duration=0),
            _log("old", "completed", "2026-03-20T09:00:00.000000Z"),
        ]
        stats = get_stats(logs, {"w1": {"name": "Wrap-up"}, "w2": {"name": "Chase"}}, days=7, now=now)
        overall = stats["overall"]
        self.assertEqual(stats["period_days"], 7)
        self.assertEqual(overall["total_executions"], 4)
        self.assertEqual(overall["successful"], 2)
        self.assertEqual(overall["failed"], 1)
        self.assertEqual(overall["skipped"], 1)
        self.assertEqual(overall["success_rate"], 50.0)
        self.assertEqual(overall["avg_duration_ms"], 200.0)
        self.assertEqual(overall["max_duration_ms"], 300)
        self.assertEqual(overall["min_duration_ms"], 100)

        self.assertEqual(len(stats["daily"]), 7)
        self.assertEqual(stats["daily"][0]["date"], "2026-04-01")
        by_day = {d["date"]: d for d in stats["daily"]}
        self.assertEqual(by_day["2026-04-07"]["successful"], 2)
        self.assertEqual(by_day["2026-04-05"]["failed"], 1)
        self.assertEqual(by_day["2026-04-02"]["total"], 0)

        types = {r["action_type"]: r for r in stats["by_action_type"]}
        self.assertEqual(types["send_email"]["total"], 2)
        self.assertEqual(types["create_task"]["avg_duration_ms"], 300.0)

        top = stats["top_workflows"]
        self.assertEqual(top[0]["id"], "w1")
        self.assertEqual(top[0]["name"], "Wrap-up")
        self.assertEqual(top[0]["execution_count"], 2)

    def test_workflow_filter(self) -> None:
        now = datetime(2026, 4, 7, 12, 0, tzinfo=timezone.utc)
        logs = [
            _log("e1", "completed", "2026-04-07T09:00:00.000000Z"),
            _log("e2", "completed", "2026-04-07T09:00:00.000000Z", workflow_id="w2"),
        ]
        stats = get_stats(logs, days=1, workflow_id="w2", now=now)
        self.assertEqual(stats["overall"]["total_executions"], 1)
        self.assertEqual([w["id"] for w in stats["top_workflows"]], ["w2"])


if __name__ == "__main__":
    unittest.main()
