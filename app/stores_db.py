"""DB-backed stores (USE_DB=1); same interfaces as app.stores and workflow_store."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List

from app.db import execute, fetch_all, fetch_one, get_conn, transaction
from fieldflow import json_safe, now_iso, parse_iso, to_iso
from workflow_store import WORKFLOW_FIELDS, apply_defaults, normalize_actions, normalize_triggers, summarize

logger = logging.getLogger("fieldflow.db")


def _json_dumps(value: object) -> str:
    return json.dumps(json_safe(value))


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _iso(value):
    if isinstance(value, datetime):
        return to_iso(value)
    return value


def _record_from_row(row: dict) -> dict:
    record = copy.deepcopy(_ensure_json(row.get("data")) or {})
    record["id"] = str(row.get("id"))
    record.setdefault("created_at", _iso(row.get("created_at")))
    record["updated_at"] = _iso(row.get("updated_at")) or record.get("updated_at")
    return record


class DbRecordStore:
    """Generic entity rows in ``records`` keyed by (kind, id) with a jsonb body."""

    @contextmanager
    def transaction(self) -> Iterator["DbRecordStore"]:
        with transaction():
            yield self

    def get(self, kind: str, record_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select id, data, created_at, updated_at from records where kind=%s and id=%s",
                [kind, record_id],
                query_name="records.get",
            )
        return _record_from_row(row) if row else None

    def list(self, kind: str, **filters: Any) -> list[dict]:
        where = "where kind=%s"
        params: list = [kind]
        if filters:
            where += " and data @> %s::jsonb"
            params.append(_json_dumps(filters))
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select id, data, created_at, updated_at from records {where} order by created_at asc",
                params,
                query_name="records.list",
            )
        return [_record_from_row(r) for r in rows]

    def create(self, kind: str, data: dict) -> dict:
        record = copy.deepcopy(data)
        record_id = str(record.pop("id", None) or uuid.uuid4())
        now = now_iso()
        record.setdefault("created_at", now)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into records (kind, id, data, created_at, updated_at)
                values (%s, %s, %s::jsonb, %s, %s)
                returning id, data, created_at, updated_at
                """,
                [kind, record_id, _json_dumps(record), record["created_at"], now],
                query_name="records.insert",
            )
        return _record_from_row(row)

    def update(self, kind: str, record_id: str, changes: dict) -> dict | None:
        patch = {k: v for k, v in changes.items() if k != "id"}
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update records set data = data || %s::jsonb, updated_at = now()
                where kind=%s and id=%s
                returning id, data, created_at, updated_at
                """,
                [_json_dumps(patch), kind, record_id],
                query_name="records.update",
            )
        return _record_from_row(row) if row else None

    def delete(self, kind: str, record_id: str) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from records where kind=%s and id=%s", [kind, record_id], query_name="records.delete")
        return count > 0


class DbJobStateStore:
    def __init__(self, records: DbRecordStore) -> None:
        self._records = records

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        with transaction() as conn:
            yield conn

    def get_job(self, job_id: str, tx: Any = None) -> dict | None:
        return self._records.get("job", job_id)

    def update_job_if_status(self, tx: Any, job_id: str, expected_status: str, changes: dict) -> dict | None:
        with get_conn() as conn:
            locked = fetch_one(
                conn,
                "select data ->> 'status' as status from records where kind='job' and id=%s for update",
                [job_id],
                query_name="jobs.lock_for_transition",
            )
            if locked is None or locked.get("status") != expected_status:
                return None
            row = fetch_one(
                conn,
                """
                update records set data = data || %s::jsonb, updated_at = now()
                where kind='job' and id=%s and data ->> 'status' = %s
                returning id, data, created_at, updated_at
                """,
                [_json_dumps(changes), job_id, expected_status],
                query_name="jobs.compare_and_set_status",
            )
        return _record_from_row(row) if row else None

    def append_transition(self, tx: Any, record: dict) -> dict:
        row_id = record.get("id") or str(uuid.uuid4())
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into job_state_transitions (
                  id, job_id, from_state, to_state, changed_by, changed_by_role,
                  change_source, reason, notes, created_at
                ) values (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                returning *
                """,
                [
                    row_id,
                    record.get("job_id"),
                    record.get("from_state"),
                    record.get("to_state"),
                    record.get("changed_by"),
                    record.get("changed_by_role"),
                    record.get("change_source"),
                    record.get("reason"),
                    record.get("notes"),
                    record.get("created_at") or now_iso(),
                ],
                query_name="job_state_transitions.insert",
            )
        return {key: _iso(val) for key, val in row.items()}

    def list_transitions(self, job_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select * from job_state_transitions where job_id=%s order by created_at asc",
                [job_id],
                query_name="job_state_transitions.list",
            )
        return [{key: _iso(val) for key, val in r.items()} for r in rows]

    def list_open_time_entries(self, job_id: str, crew_ids: list[str] | None = None) -> list[dict]:
        entries = self._records.list("time_entry", job_id=job_id)
        open_entries = [e for e in entries if not e.get("clock_out")]
        if crew_ids:
            crew = set(crew_ids)
            open_entries = [e for e in open_entries if e.get("user_id") in crew]
        return open_entries


class DbWorkflowStore:
    def _save(self, conn, item: dict, query_name: str) -> None:
        execute(
            conn,
            """
            insert into workflows (id, data, is_active, is_template, deleted_at, created_at, updated_at)
            values (%s, %s::jsonb, %s, %s, %s, %s, %s)
            on conflict (id) do update set
              data=excluded.data,
              is_active=excluded.is_active,
              is_template=excluded.is_template,
              deleted_at=excluded.deleted_at,
              updated_at=excluded.updated_at
            """,
            [
                item["id"],
                _json_dumps(item),
                bool(item.get("is_active")),
                bool(item.get("is_template")),
                item.get("deleted_at"),
                item.get("created_at"),
                item.get("updated_at"),
            ],
            query_name=query_name,
        )

    def _load(self, conn, workflow_id: str, for_update: bool = False) -> dict | None:
        sql = "select data from workflows where id=%s" + (" for update" if for_update else "")
        row = fetch_one(conn, sql, [workflow_id], query_name="workflows.get")
        return _ensure_json(row.get("data")) if row else None

    def create(self, record: dict) -> dict:
        item = apply_defaults(record)
        now = now_iso()
        item["id"] = record.get("id") or str(uuid.uuid4())
        item["created_at"] = now
        item["updated_at"] = now
        item["deleted_at"] = None
        with get_conn() as conn:
            self._save(conn, item, "workflows.insert")
        return summarize(item)

    def get(self, workflow_id: str, include_deleted: bool = False) -> dict | None:
        with get_conn() as conn:
            item = self._load(conn, workflow_id)
        if item is None or (item.get("deleted_at") and not include_deleted):
            return None
        return summarize(item)

    def update(self, workflow_id: str, updates: dict) -> dict | None:
        with get_conn() as conn:
            item = self._load(conn, workflow_id, for_update=True)
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
            self._save(conn, item, "workflows.update")
        return summarize(item)

    def soft_delete(self, workflow_id: str) -> bool:
        with get_conn() as conn:
            item = self._load(conn, workflow_id, for_update=True)
            if item is None or item.get("deleted_at"):
                return False
            item["deleted_at"] = now_iso()
            item["is_active"] = False
            self._save(conn, item, "workflows.soft_delete")
        return True

    def toggle(self, workflow_id: str) -> dict | None:
        with get_conn() as conn:
            item = self._load(conn, workflow_id, for_update=True)
            if item is None or item.get("deleted_at"):
                return None
            item["is_active"] = not item.get("is_active")
            item["updated_at"] = now_iso()
            self._save(conn, item, "workflows.toggle")
        return summarize(item)

    def _list(self, where: str, params: list, query_name: str) -> List[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select data from workflows where deleted_at is null {where} order by updated_at desc",
                params,
                query_name=query_name,
            )
        return [_ensure_json(r.get("data")) for r in rows]

    def list(self, status: str | None = None, include_templates: bool = False, search: str | None = None) -> List[dict]:
        where = ""
        params: list = []
        if not include_templates:
            where += " and not is_template"
        if status == "active":
            where += " and is_active"
        elif status == "inactive":
            where += " and not is_active"
        if search:
            where += " and (data ->> 'name' ilike %s or coalesce(data ->> 'description', '') ilike %s)"
            params.extend([f"%{search}%", f"%{search}%"])
        return [summarize(w) for w in self._list(where, params, "workflows.list")]

    def list_templates(self, category: str | None = None) -> List[dict]:
        where = " and is_template"
        params: list = []
        if category:
            where += " and data ->> 'template_category' = %s"
            params.append(category)
        items = self._list(where, params, "workflows.list_templates")
        items.sort(key=lambda w: w.get("name") or "")
        return [summarize(w) for w in items]

    def list_active_for_trigger(self, trigger_type: str) -> List[dict]:
        items = self._list(
            " and is_active and not is_template and data -> 'triggers' @> %s::jsonb",
            [_json_dumps([{"trigger_type": trigger_type}])],
            "workflows.list_active_for_trigger",
        )
        items.sort(key=lambda w: w.get("created_at") or "")
        return [summarize(w) for w in items]


def _log_from_row(row: dict) -> dict:
    item = copy.deepcopy(_ensure_json(row.get("data")) or {})
    item["id"] = str(row.get("id"))
    return item


class DbAutomationLogStore:
    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("created_at", now_iso())
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into automation_logs (
                  id, execution_id, workflow_id, status, triggered_by_entity_type,
                  triggered_by_entity_id, data, started_at, completed_at
                ) values (%s,%s,%s,%s,%s,%s,%s::jsonb,%s,%s)
                """,
                [
                    item["id"],
                    item.get("execution_id"),
                    item.get("workflow_id"),
                    item.get("status"),
                    item.get("triggered_by_entity_type"),
                    item.get("triggered_by_entity_id"),
                    _json_dumps(item),
                    item.get("started_at") or item["created_at"],
                    item.get("completed_at"),
                ],
                query_name="automation_logs.insert",
            )
        return item

    def update(self, log_id: str, updates: dict) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update automation_logs
                set data = data || %s::jsonb,
                    status = coalesce(%s, status),
                    completed_at = coalesce(%s, completed_at)
                where id=%s
                returning id, data
                """,
                [_json_dumps(updates), updates.get("status"), updates.get("completed_at"), log_id],
                query_name="automation_logs.update",
            )
        return _log_from_row(row) if row else None

    def get(self, log_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select id, data from automation_logs where id=%s", [log_id], query_name="automation_logs.get")
        return _log_from_row(row) if row else None

    def list(self, **filters: Any) -> list[dict]:
        where = ""
        params: list = []
        if filters:
            where = "where data @> %s::jsonb"
            params.append(_json_dumps(filters))
        with get_conn() as conn:
            rows = fetch_all(conn, f"select id, data from automation_logs {where} order by seq asc", params, query_name="automation_logs.list")
        return [_log_from_row(r) for r in rows]

    def list_by_execution(self, execution_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select id, data from automation_logs where execution_id=%s order by seq asc",
                [execution_id],
                query_name="automation_logs.list_by_execution",
            )
        return [_log_from_row(r) for r in rows]

    def count_executions_since(self, workflow_id: str, since: datetime) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select count(distinct execution_id) as n from automation_logs
                where workflow_id=%s and status <> 'skipped' and started_at >= %s
                """,
                [workflow_id, to_iso(since)],
                query_name="automation_logs.count_executions_since",
            )
        return int((row or {}).get("n") or 0)

    def last_completed_at(self, workflow_id: str, entity_type: str | None, entity_id: str) -> datetime | None:
        where = "workflow_id=%s and status in ('completed', 'pending') and triggered_by_entity_id=%s"
        params: list = [workflow_id, entity_id]
        if entity_type is not None:
            where += " and triggered_by_entity_type=%s"
            params.append(entity_type)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select max(coalesce(completed_at, started_at)) as last from automation_logs where {where}",
                params,
                query_name="automation_logs.last_completed_at",
            )
        return parse_iso((row or {}).get("last"))


def _pending_from_row(row: dict) -> dict:
    item = copy.deepcopy(_ensure_json(row.get("data")) or {})
    item["id"] = str(row.get("id"))
    item["status"] = row.get("status")
    item["run_at"] = _iso(row.get("run_at"))
    item["created_at"] = _iso(row.get("created_at"))
    item["claimed_at"] = _iso(row.get("claimed_at"))
    item["done_at"] = _iso(row.get("done_at"))
    item["last_error"] = row.get("last_error")
    return item


class DbPendingActionStore:
    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        pending_id = item.pop("id", None) or str(uuid.uuid4())
        run_at = item.pop("run_at")
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into pending_actions (id, status, run_at, data, created_at)
                values (%s, 'pending', %s, %s::jsonb, now())
                returning *
                """,
                [pending_id, run_at, _json_dumps(item)],
                query_name="pending_actions.insert",
            )
        return _pending_from_row(row)

    def claim_due(self, now: datetime, limit: int = 20) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                with candidates as (
                  select id from pending_actions
                  where status='pending' and run_at <= %s
                  order by run_at asc
                  for update skip locked
                  limit %s
                )
                update pending_actions p
                set status='claimed', claimed_at=now()
                from candidates c
                where p.id = c.id
                returning p.*
                """,
                [to_iso(now), limit],
                query_name="pending_actions.claim_due",
            )
        items = [_pending_from_row(r) for r in rows]
        items.sort(key=lambda i: i.get("run_at") or "")
        return items

    def mark_done(self, pending_id: str, error: str | None = None) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "update pending_actions set status='done', done_at=now(), last_error=%s where id=%s returning *",
                [error, pending_id],
                query_name="pending_actions.mark_done",
            )
        return _pending_from_row(row) if row else None

    def get(self, pending_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from pending_actions where id=%s", [pending_id], query_name="pending_actions.get")
        return _pending_from_row(row) if row else None

    def list(self, status: str | None = None) -> list[dict]:
        where = "where status=%s" if status else ""
        params = [status] if status else []
        with get_conn() as conn:
            rows = fetch_all(conn, f"select * from pending_actions {where} order by run_at asc", params, query_name="pending_actions.list")
        return [_pending_from_row(r) for r in rows]
