"""In-memory stores and delegate services (default backend and test double)."""

from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List

from fieldflow import now_iso, parse_iso


def _now() -> str:
    return now_iso()


class MemoryRecordStore:
    """Generic entity rows keyed by kind, with snapshot-rollback transactions."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["MemoryRecordStore"]:
        with self._lock:
            snapshot = copy.deepcopy(self._records)
            try:
                yield self
            except Exception:
                self._records = snapshot
                raise

    def _bucket(self, kind: str) -> Dict[str, dict]:
        return self._records.setdefault(kind, {})

    def get(self, kind: str, record_id: str) -> dict | None:
        with self._lock:
            record = self._bucket(kind).get(record_id)
            return copy.deepcopy(record) if record else None

    def list(self, kind: str, **filters: Any) -> list[dict]:
        with self._lock:
            items = list(self._bucket(kind).values())
        out = []
        for item in items:
            if all(item.get(key) == value for key, value in filters.items()):
                out.append(copy.deepcopy(item))
        out.sort(key=lambda r: r.get("created_at") or "")
        return out

    def create(self, kind: str, data: dict) -> dict:
        record = copy.deepcopy(data)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", _now())
        record["updated_at"] = record.get("updated_at") or record["created_at"]
        with self._lock:
            self._bucket(kind)[record["id"]] = record
        return copy.deepcopy(record)

    def update(self, kind: str, record_id: str, changes: dict) -> dict | None:
        with self._lock:
            record = self._bucket(kind).get(record_id)
            if record is None:
                return None
            record.update(copy.deepcopy(changes))
            record["id"] = record_id
            record["updated_at"] = _now()
            return copy.deepcopy(record)

    def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            return self._bucket(kind).pop(record_id, None) is not None


class MemoryJobStateStore:
    """Job rows, the transition audit log and open time entries."""

    def __init__(self, records: MemoryRecordStore) -> None:
        self._records = records
        self._transitions: List[dict] = []

    @contextmanager
    def transaction(self) -> Iterator[MemoryRecordStore]:
        with self._records.transaction() as tx:
            mark = len(self._transitions)
            try:
                yield tx
            except Exception:
                del self._transitions[mark:]
                raise

    def get_job(self, job_id: str, tx: Any = None) -> dict | None:
        return self._records.get("job", job_id)

    def update_job_if_status(self, tx: Any, job_id: str, expected_status: str, changes: dict) -> dict | None:
        current = self._records.get("job", job_id)
        if current is None or current.get("status") != expected_status:
            return None
        return self._records.update("job", job_id, changes)

    def append_transition(self, tx: Any, record: dict) -> dict:
        row = copy.deepcopy(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", _now())
        with self._records._lock:
            self._transitions.append(row)
        return copy.deepcopy(row)

    def list_transitions(self, job_id: str) -> list[dict]:
        with self._records._lock:
            return [copy.deepcopy(r) for r in self._transitions if r.get("job_id") == job_id]

    def list_open_time_entries(self, job_id: str, crew_ids: list[str] | None = None) -> list[dict]:
        entries = self._records.list("time_entry", job_id=job_id)
        open_entries = [e for e in entries if not e.get("clock_out")]
        if crew_ids:
            crew = set(crew_ids)
            open_entries = [e for e in open_entries if e.get("user_id") in crew]
        return open_entries


class MemoryAutomationLogStore:
    def __init__(self) -> None:
        self._logs: Dict[str, dict] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        with self._lock:
            self._seq += 1
            item.setdefault("id", str(uuid.uuid4()))
            item.setdefault("created_at", _now())
            item["_seq"] = self._seq
            self._logs[item["id"]] = item
        return self._public(item)

    def update(self, log_id: str, updates: dict) -> dict | None:
        with self._lock:
            item = self._logs.get(log_id)
            if item is None:
                return None
            item.update(copy.deepcopy(updates))
        return self._public(item)

    def get(self, log_id: str) -> dict | None:
        item = self._logs.get(log_id)
        return self._public(item) if item else None

    def _public(self, item: dict) -> dict:
        out = copy.deepcopy(item)
        out.pop("_seq", None)
        return out

    def _ordered(self) -> list[dict]:
        return sorted(self._logs.values(), key=lambda r: r["_seq"])

    def list(self, **filters: Any) -> list[dict]:
        items = [i for i in self._ordered() if all(i.get(k) == v for k, v in filters.items())]
        return [self._public(i) for i in items]

    def list_by_execution(self, execution_id: str) -> list[dict]:
        return self.list(execution_id=execution_id)

    def count_executions_since(self, workflow_id: str, since: datetime) -> int:
        executions = set()
        for item in self._ordered():
            if item.get("workflow_id") != workflow_id or item.get("status") == "skipped":
                continue
            started = parse_iso(item.get("started_at") or item.get("created_at"))
            if started is not None and started >= since:
                executions.add(item.get("execution_id"))
        return len(executions)

    def last_completed_at(self, workflow_id: str, entity_type: str | None, entity_id: str) -> datetime | None:
        latest = None
        for item in self._ordered():
            if item.get("workflow_id") != workflow_id or item.get("status") not in ("completed", "pending"):
                continue
            if item.get("triggered_by_entity_id") != entity_id:
                continue
            if entity_type is not None and item.get("triggered_by_entity_type") != entity_type:
                continue
            completed = parse_iso(item.get("completed_at") or item.get("started_at"))
            if completed is not None and (latest is None or completed > latest):
                latest = completed
        return latest


class MemoryPendingActionStore:
    def __init__(self) -> None:
        self._items: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "pending")
        item.setdefault("created_at", _now())
        with self._lock:
            self._items[item["id"]] = item
        return copy.deepcopy(item)

    def claim_due(self, now: datetime, limit: int = 20) -> list[dict]:
        claimed = []
        with self._lock:
            due = [
                i for i in self._items.values()
                if i.get("status") == "pending" and (parse_iso(i.get("run_at")) or now) <= now
            ]
            due.sort(key=lambda i: i.get("run_at") or "")
            for item in due[:limit]:
                item["status"] = "claimed"
                item["claimed_at"] = _now()
                claimed.append(copy.deepcopy(item))
        return claimed

    def mark_done(self, pending_id: str, error: str | None = None) -> dict | None:
        with self._lock:
            item = self._items.get(pending_id)
            if item is None:
                return None
            item.update({"status": "done", "done_at": _now(), "last_error": error})
            return copy.deepcopy(item)

    def get(self, pending_id: str) -> dict | None:
        item = self._items.get(pending_id)
        return copy.deepcopy(item) if item else None

    def list(self, status: str | None = None) -> list[dict]:
        items = [i for i in self._items.values() if status is None or i.get("status") == status]
        items.sort(key=lambda i: i.get("run_at") or "")
        return [copy.deepcopy(i) for i in items]


class RecordInvoicing:
    """Invoicing delegate: one draft invoice per job, built from its line items."""

    def __init__(self, records: MemoryRecordStore) -> None:
        self._records = records
        self._lock = threading.Lock()

    def find_by_job(self, job_id: str) -> dict | None:
        found = self._records.list("invoice", job_id=job_id)
        return found[0] if found else None

    def create_from_job(self, job: dict) -> dict:
        with self._lock:
            existing = self.find_by_job(job["id"])
            if existing is not None:
                return {"invoice": existing, "created": False}
            line_items = copy.deepcopy(job.get("line_items") or [])
            subtotal = 0.0
            for item in line_items:
                qty = float(item.get("quantity") or 0)
                price = float(item.get("unit_price") or 0)
                item.setdefault("total", round(qty * price, 2))
                subtotal += float(item["total"])
            invoice = self._records.create(
                "invoice",
                {
                    "job_id": job["id"],
                    "client_id": job.get("client_id"),
                    "status": "draft",
                    "line_items": line_items,
                    "subtotal": round(subtotal, 2),
                },
            )
            return {"invoice": invoice, "created": True}


class QuoteConversion:
    """Quote conversion delegate."""

    def __init__(self, records: MemoryRecordStore) -> None:
        self._records = records

    def create_from_quote(self, quote_id: str) -> dict:
        quote = self._records.get("quote", quote_id)
        if quote is None:
            raise KeyError(f"quote not found: {quote_id}")
        existing = self._records.list("job", quote_id=quote_id)
        if existing:
            return {"job": existing[0], "created": False}
        job = self._records.create(
            "job",
            {
                "quote_id": quote_id,
                "client_id": quote.get("client_id"),
                "title": quote.get("title"),
                "status": "draft",
                "line_items": copy.deepcopy(quote.get("line_items") or []),
                "jha_required": False,
                "deposit_required": False,
                "permit_required": False,
            },
        )
        self._records.update("quote", quote_id, {"status": "converted", "job_id": job["id"]})
        return {"job": job, "created": True}
