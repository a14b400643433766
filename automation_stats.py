"""Read-only queries over the automation log: filtering, pagination, execution summaries, stats."""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from fieldflow import parse_iso, utcnow


LOG_STATUSES = ("pending", "running", "completed", "failed", "skipped")
TOP_WORKFLOWS = 5


def _started(log: dict) -> datetime | None:
    return parse_iso(log.get("started_at") or log.get("created_at"))


def filter_logs(
    logs: Iterable[dict],
    *,
    workflow_id: str | None = None,
    status: str | None = None,
    action_type: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> List[dict]:
    start = parse_iso(start_date) if start_date else None
    end = parse_iso(end_date) if end_date else None
    if end is not None and end_date and len(end_date) == 10:
        # a bare date includes the whole day
        end = end + timedelta(days=1)
    out = []
    for log in logs:
        if workflow_id and log.get("workflow_id") != workflow_id:
            continue
        if status and log.get("status") != status:
            continue
        if action_type and log.get("action_type") != action_type:
            continue
        if entity_type and log.get("triggered_by_entity_type") != entity_type:
            continue
        if entity_id and log.get("triggered_by_entity_id") != entity_id:
            continue
        started = _started(log)
        if start is not None and (started is None or started < start):
            continue
        if end is not None and (started is None or started >= end):
            continue
        out.append(log)
    out.sort(key=lambda l: l.get("started_at") or l.get("created_at") or "", reverse=True)
    return out


def paginate(items: List[Any], page: int = 1, page_size: int = 20) -> tuple[List[Any], dict]:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 20), 1), 200)
    total = len(items)
    total_pages = max(math.ceil(total / page_size), 1)
    start = (page - 1) * page_size
    pagination = {
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
    }
    return items[start : start + page_size], pagination


def execution_status(logs: List[dict]) -> str:
    statuses = [l.get("status") for l in logs]
    if not statuses:
        return "scheduled"
    if "running" in statuses:
        return "running"
    if "pending" in statuses:
        return "scheduled"
    if "failed" in statuses:
        return "failed"
    if all(s == "skipped" for s in statuses):
        return "skipped"
    return "completed"


def summarize_execution(execution_id: str, logs: List[dict], workflow: dict | None = None) -> dict:
    ordered = sorted(logs, key=lambda l: (l.get("action_order") is None, l.get("action_order") or 0))
    first = ordered[0] if ordered else {}
    return {
        "execution_id": execution_id,
        "workflow_id": first.get("workflow_id") or (workflow or {}).get("id"),
        "workflow_name": (workflow or {}).get("name"),
        "status": execution_status(ordered),
        "started_at": min((l.get("started_at") or "" for l in ordered), default=None) or None,
        "logs": ordered,
    }


def _rate(successful: int, total: int) -> float:
    return round(successful * 100.0 / total, 2) if total else 0.0


def _durations(logs: List[dict]) -> List[int]:
    return [int(l["duration_ms"]) for l in logs if l.get("duration_ms") is not None and l.get("status") != "skipped"]


def get_stats(
    logs: Iterable[dict],
    workflows: Dict[str, dict] | None = None,
    days: int = 7,
    workflow_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    days = max(int(days or 7), 1)
    now = now or utcnow()
    since = (now - timedelta(days=days - 1)).replace(hour=0, minute=0, second=0, microsecond=0)
    workflows = workflows or {}

    window = []
    for log in logs:
        if workflow_id and log.get("workflow_id") != workflow_id:
            continue
        started = _started(log)
        if started is None or started < since or started > now:
            continue
        window.append(log)

    counts = defaultdict(int)
    for log in window:
        counts[log.get("status")] += 1
    durations = _durations(window)
    overall = {
        "total_executions": len(window),
        "successful": counts["completed"],
        "failed": counts["failed"],
        "skipped": counts["skipped"],
        "success_rate": _rate(counts["completed"], len(window)),
        "avg_duration_ms": round(sum(durations) / len(durations), 2) if durations else 0,
        "max_duration_ms": max(durations) if durations else 0,
        "min_duration_ms": min(durations) if durations else 0,
    }

    daily_index = {}
    daily = []
    for offset in range(days):
        day = (since + timedelta(days=offset)).date().isoformat()
        bucket = {"date": day, "total": 0, "successful": 0, "failed": 0}
        daily_index[day] = bucket
        daily.append(bucket)
    for log in window:
        bucket = daily_index.get(_started(log).date().isoformat())
        if bucket is None:
            continue
        bucket["total"] += 1
        if log.get("status") == "completed":
            bucket["successful"] += 1
        elif log.get("status") == "failed":
            bucket["failed"] += 1

    by_type: Dict[str, List[dict]] = defaultdict(list)
    for log in window:
        if log.get("action_type"):
            by_type[log["action_type"]].append(log)
    by_action_type = []
    for action_type, rows in by_type.items():
        type_durations = _durations(rows)
        by_action_type.append(
            {
                "action_type": action_type,
                "total": len(rows),
                "successful": sum(1 for r in rows if r.get("status") == "completed"),
                "failed": sum(1 for r in rows if r.get("status") == "failed"),
                "avg_duration_ms": round(sum(type_durations) / len(type_durations), 2) if type_durations else 0,
            }
        )
    by_action_type.sort(key=lambda r: (-r["total"], r["action_type"]))

    per_workflow: Dict[str, dict] = {}
    for log in window:
        wf_id = log.get("workflow_id")
        entry = per_workflow.setdefault(wf_id, {"executions": set(), "successful": 0, "failed": 0})
        entry["executions"].add(log.get("execution_id"))
        if log.get("status") == "completed":
            entry["successful"] += 1
        elif log.get("status") == "failed":
            entry["failed"] += 1
    top_workflows = [
        {
            "id": wf_id,
            "name": (workflows.get(wf_id) or {}).get("name"),
            "execution_count": len(entry["executions"]),
            "successful": entry["successful"],
            "failed": entry["failed"],
        }
        for wf_id, entry in per_workflow.items()
    ]
    top_workflows.sort(key=lambda r: (-r["execution_count"], r["name"] or ""))

    return {
        "period_days": days,
        "overall": overall,
        "daily": daily,
        "by_action_type": by_action_type,
        "top_workflows": top_workflows[:TOP_WORKFLOWS],
    }
