import os
import sys
import unittest
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fieldflow import to_iso

USE_DB = os.getenv("USE_DB", "0") == "1"
DB_URL = os.getenv("DATABASE_URL")

if USE_DB and DB_URL:
    from app.db import ensure_schema, init_pool
    from app.stores_db import DbAutomationLogStore, DbJobStateStore, DbPendingActionStore, DbRecordStore


@unittest.skipUnless(USE_DB and DB_URL, "DB store tests require USE_DB=1 and DATABASE_URL")
class DbTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        init_pool(DB_URL)
        ensure_schema()


class TestDbJobStateStore(DbTestCase):
    def setUp(self) -> None:
        self.records = DbRecordStore()
        self.store = DbJobStateStore(self.records)
        self.job = self.records.create("job", {"status": "scheduled", "title": f"db-{uuid.uuid4().hex[:6]}"})

    def test_stale_status_is_rejected(self) -> None:
        with self.store.transaction() as tx:
            self.assertIsNone(self.store.update_job_if_status(tx, self.job["id"], "draft", {"status": "in_progress"}))
        self.assertEqual(self.records.get("job", self.job["id"])["status"], "scheduled")

        with self.store.transaction() as tx:
            updated = self.store.update_job_if_status(tx, self.job["id"], "scheduled", {"status": "in_progress"})
        self.assertEqual(updated["status"], "in_progress")
        self.assertEqual(self.records.get("job", self.job["id"])["status"], "in_progress")

    def test_failed_transaction_rolls_back_status_and_audit(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as tx:
                self.store.update_job_if_status(tx, self.job["id"], "scheduled", {"status": "on_hold"})
                self.store.append_transition(
                    tx,
                    {"job_id": self.job["id"], "from_state": "scheduled", "to_state": "on_hold", "change_source": "manual"},
                )
                raise RuntimeError("abort")
        self.assertEqual(self.records.get("job", self.job["id"])["status"], "scheduled")
        self.assertEqual(self.store.list_transitions(self.job["id"]), [])

    def test_missing_job(self) -> None:
        with self.store.transaction() as tx:
            self.assertIsNone(self.store.update_job_if_status(tx, str(uuid.uuid4()), "draft", {"status": "scheduled"}))


class TestDbAutomationLogStore(DbTestCase):
    def setUp(self) -> None:
        self.logs = DbAutomationLogStore()
        self.workflow_id = f"wf-{uuid.uuid4().hex[:8]}"
        self.now = datetime.now(timezone.utc).replace(microsecond=0)

    def _log(self, execution_id: str, status: str, started: datetime, **fields) -> dict:
        return self.logs.create(
            {
                "execution_id": execution_id,
                "workflow_id": self.workflow_id,
                "status": status,
                "triggered_by_entity_type": "job",
                "triggered_by_entity_id": fields.pop("entity_id", "j1"),
                "started_at": to_iso(started),
                **fields,
            }
        )

    def test_counts_distinct_non_skipped_executions(self) -> None:
        recent = self.now - timedelta(hours=1)
        self._log("e1", "completed", recent, action_order=0)
        self._log("e1", "completed", recent, action_order=1)
        self._log("e2", "pending", recent, action_order=0)
        self._log("e3", "skipped", recent)
        self._log("e4", "completed", self.now - timedelta(hours=30))
        self.assertEqual(self.logs.count_executions_since(self.workflow_id, self.now - timedelta(hours=24)), 2)

    def test_last_completed_includes_pending_rows(self) -> None:
        done_at = self.now - timedelta(minutes=40)
        self._log("e1", "completed", done_at - timedelta(seconds=1), completed_at=to_iso(done_at))
        self.assertEqual(self.logs.last_completed_at(self.workflow_id, "job", "j1"), done_at)
        deferred_at = self.now - timedelta(minutes=5)
        self._log("e2", "pending", deferred_at)
        self.assertEqual(self.logs.last_completed_at(self.workflow_id, "job", "j1"), deferred_at)
        self.assertIsNone(self.logs.last_completed_at(self.workflow_id, "job", "other"))

    def test_update_moves_status(self) -> None:
        log = self._log("e1", "running", self.now)
        self.logs.update(log["id"], {"status": "failed", "error_message": "boom", "completed_at": to_iso(self.now)})
        stored = self.logs.list_by_execution("e1")
        self.assertEqual([(l["status"], l.get("error_message")) for l in stored if l["id"] == log["id"]], [("failed", "boom")])


class TestDbPendingActionStore(DbTestCase):
    def setUp(self) -> None:
        self.pending = DbPendingActionStore()
        self.now = datetime.now(timezone.utc)

    def _create(self, run_at: datetime) -> dict:
        return self.pending.create(
            {
                "execution_id": str(uuid.uuid4()),
                "workflow_id": "wf-db",
                "run_at": to_iso(run_at),
                "event": {"type": "job_completed"},
                "actions": [{"action_type": "create_task", "config": {"title": "x"}}],
            }
        )

    def test_claims_due_rows_once(self) -> None:
        due = self._create(self.now - timedelta(minutes=1))
        later = self._create(self.now + timedelta(hours=1))
        first = {item["id"] for item in self.pending.claim_due(self.now, limit=500)}
        self.assertIn(due["id"], first)
        self.assertNotIn(later["id"], first)
        second = {item["id"] for item in self.pending.claim_due(self.now, limit=500)}
        self.assertNotIn(due["id"], second)
        self.assertEqual(self.pending.get(due["id"])["status"], "claimed")

        done = self.pending.mark_done(due["id"], error="timeout")
        self.assertEqual(done["status"], "done")
        self.assertEqual(done["last_error"], "timeout")

    def test_concurrent_claims_do_not_overlap(self) -> None:
        created = {self._create(self.now - timedelta(seconds=30))["id"] for _ in range(6)}
        with ThreadPoolExecutor(max_workers=3) as pool:
            batches = list(pool.map(lambda _: self.pending.claim_due(self.now, limit=500), range(3)))
        claimed = [item["id"] for batch in batches for item in batch if item["id"] in created]
        self.assertEqual(sorted(claimed), sorted(created))


if __name__ == "__main__":
    unittest.main()
