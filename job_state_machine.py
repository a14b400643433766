"""Job lifecycle state machine (single transition, transactional, audited)."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Protocol

from errors import FieldflowError, NotFoundError, PersistenceError, issue
from fieldflow import to_iso, utcnow


STATES = ("draft", "scheduled", "in_progress", "on_hold", "completed", "cancelled")
TERMINAL_STATES = ("completed", "cancelled")
CHANGE_SOURCES = ("manual", "automated", "system")

TRANSITIONS: Dict[str, tuple] = {
    "draft": ("scheduled", "cancelled"),
    "scheduled": ("in_progress", "on_hold", "cancelled"),
    "in_progress": ("on_hold", "completed", "cancelled"),
    "on_hold": ("scheduled", "cancelled"),
    "completed": (),
    "cancelled": (),
}

STATE_EVENTS = {
    "scheduled": "job_scheduled",
    "in_progress": "job_started",
    "completed": "job_completed",
    "cancelled": "job_cancelled",
}

PERMIT_OK = ("approved", "not_required")
DEPOSIT_OK = ("paid", "waived", "not_required")

logger = logging.getLogger("fieldflow.state_machine")

Hook = Callable[[dict, dict], Any]


class JobStateStore(Protocol):
    def transaction(self) -> Any: ...

    def get_job(self, job_id: str, tx: Any = None) -> dict | None: ...

    def update_job_if_status(self, tx: Any, job_id: str, expected_status: str, changes: dict) -> dict | None: ...

    def append_transition(self, tx: Any, record: dict) -> dict: ...

    def list_transitions(self, job_id: str) -> list[dict]: ...

    def list_open_time_entries(self, job_id: str, crew_ids: list[str] | None = None) -> list[dict]: ...


class Emitter(Protocol):
    def emit_business_event(self, event_type: str, payload: dict | None = None, **envelope: Any) -> Any: ...


def is_edge(from_state: str | None, to_state: str) -> bool:
    return to_state in TRANSITIONS.get(from_state or "", ())


def _fail(errors: List[dict]) -> dict:
    return {"success": False, "errors": errors}


class JobStateMachine:
    def __init__(
        self,
        store: JobStateStore,
        invoicing: Any = None,
        bus: Emitter | None = None,
        clock: Callable = utcnow,
    ) -> None:
        self._store = store
        self._invoicing = invoicing
        self._bus = bus
        self._clock = clock
        self._hooks: Dict[str, List[Hook]] = {}
        if invoicing is not None:
            self.register_on_enter("completed", self._auto_invoice)

    def register_on_enter(self, state: str, hook: Hook) -> None:
        if state not in STATES:
            raise ValueError(f"unknown state: {state}")
        self._hooks.setdefault(state, []).append(hook)

    def _load(self, job_id: str) -> dict:
        job = self._store.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found", "job_id", {"job_id": job_id})
        return job

    def guard_failures(self, job: dict, to_state: str) -> List[dict]:
        """Unmet business rules for entering ``to_state``; empty when allowed."""
        failures: List[dict] = []
        if to_state == "in_progress":
            if job.get("jha_required") and not job.get("jha_acknowledged_at"):
                failures.append(
                    issue("BUSINESS_RULE_VIOLATION", "Job hazard analysis must be acknowledged before starting", "jha_acknowledged_at")
                )
            if job.get("permit_required") and job.get("permit_status") not in PERMIT_OK:
                failures.append(
                    issue(
                        "BUSINESS_RULE_VIOLATION",
                        "Permit must be approved before starting",
                        "permit_status",
                        {"permit_status": job.get("permit_status")},
                    )
                )
        elif to_state == "scheduled":
            if job.get("deposit_required") and job.get("deposit_status") not in DEPOSIT_OK:
                failures.append(
                    issue(
                        "BUSINESS_RULE_VIOLATION",
                        "Deposit must be paid or waived before scheduling",
                        "deposit_status",
                        {"deposit_status": job.get("deposit_status")},
                    )
                )
        elif to_state == "completed":
            open_entries = self._store.list_open_time_entries(job["id"], job.get("crew_ids") or None)
            if open_entries:
                failures.append(
                    issue(
                        "BUSINESS_RULE_VIOLATION",
                        "All crew members must clock out before completion",
                        "time_entries",
                        {"open_time_entry_ids": [e.get("id") for e in open_entries]},
                    )
                )
        return failures

    def _validate(self, to_state: Any, change_source: Any, job_updates: Any) -> List[dict]:
        errors = []
        if to_state not in STATES:
            errors.append(issue("VALIDATION_ERROR", f"Unknown state: {to_state}", "to_state"))
        if change_source not in CHANGE_SOURCES:
            errors.append(issue("VALIDATION_ERROR", f"Unknown change source: {change_source}", "change_source"))
        if job_updates is not None:
            if not isinstance(job_updates, dict):
                errors.append(issue("VALIDATION_ERROR", "job_updates must be object", "job_updates"))
            else:
                for key in ("id", "status", "last_state_change_at"):
                    if key in job_updates:
                        errors.append(issue("VALIDATION_ERROR", f"job_updates may not set {key}", f"job_updates.{key}"))
        return errors

    def transition(
        self,
        job_id: str,
        to_state: str,
        *,
        changed_by: str | None,
        changed_by_role: str | None,
        change_source: str = "manual",
        reason: str | None = None,
        notes: str | None = None,
        job_updates: dict | None = None,
    ) -> dict:
        errors = self._validate(to_state, change_source, job_updates)
        if errors:
            return _fail(errors)

        job = self._load(job_id)
        from_state = job.get("status")
        if not is_edge(from_state, to_state):
            logger.info("job_transition_rejected job_id=%s from=%s to=%s", job_id, from_state, to_state)
            return _fail(
                [
                    issue(
                        "INVALID_TRANSITION",
                        f"Cannot transition job from {from_state} to {to_state}",
                        "to_state",
                        {"from_state": from_state, "to_state": to_state, "allowed": list(TRANSITIONS.get(from_state or "", ()))},
                    )
                ]
            )

        updates = dict(job_updates or {})
        failures = self.guard_failures({**job, **updates}, to_state)
        if failures:
            logger.info(
                "job_transition_guard_failed job_id=%s to=%s reasons=%s",
                job_id,
                to_state,
                [f.get("path") for f in failures],
            )
            return _fail(failures)

        now = to_iso(self._clock())
        try:
            with self._store.transaction() as tx:
                updated = self._store.update_job_if_status(
                    tx, job_id, from_state, {**updates, "status": to_state, "last_state_change_at": now}
                )
                if updated is None:
                    raise _StaleState()
                row = self._store.append_transition(
                    tx,
                    {
                        "job_id": job_id,
                        "from_state": from_state,
                        "to_state": to_state,
                        "changed_by": changed_by,
                        "changed_by_role": changed_by_role,
                        "change_source": change_source,
                        "reason": reason,
                        "notes": notes,
                        "created_at": now,
                    },
                )
        except _StaleState:
            logger.warning("job_transition_conflict job_id=%s expected=%s", job_id, from_state)
            return _fail(
                [
                    issue(
                        "INVALID_TRANSITION",
                        "Job state changed concurrently; reload and retry",
                        "to_state",
                        {"from_state": from_state, "to_state": to_state},
                    )
                ]
            )
        except FieldflowError:
            raise
        except Exception as exc:
            logger.exception("job_transition_persist_failed job_id=%s to=%s", job_id, to_state)
            raise PersistenceError("Failed to persist job transition", "job_id", {"job_id": job_id}) from exc

        logger.info(
            "job_transitioned job_id=%s from=%s to=%s source=%s by=%s transition_id=%s",
            job_id,
            from_state,
            to_state,
            change_source,
            changed_by,
            row.get("id"),
        )
        side_effects = self._after_commit(updated, row)
        return {
            "success": True,
            "job": updated,
            "transition": {"id": row.get("id"), "from": from_state, "to": to_state},
            "side_effects": side_effects,
        }

    def _after_commit(self, job: dict, row: dict) -> List[dict]:
        to_state = row["to_state"]
        side_effects: List[dict] = []
        for hook in self._hooks.get(to_state, []):
            name = getattr(hook, "__name__", repr(hook)).lstrip("_")
            try:
                result = hook(job, row)
                side_effects.append({"hook": name, "ok": True, "result": result})
            except Exception as exc:
                logger.exception("job_on_enter_hook_failed job_id=%s state=%s hook=%s", job.get("id"), to_state, name)
                side_effects.append({"hook": name, "ok": False, "error": str(exc)})

        event_type = STATE_EVENTS.get(to_state)
        if event_type and self._bus is not None:
            payload = {
                **job,
                "job_id": job.get("id"),
                "from_state": row.get("from_state"),
                "to_state": to_state,
                "change_source": row.get("change_source"),
                "changed_by": row.get("changed_by"),
            }
            try:
                self._bus.emit_business_event(event_type, payload, entity_type="job", entity_id=job.get("id"))
            except Exception:
                logger.exception("job_event_emit_failed job_id=%s event=%s", job.get("id"), event_type)
        return side_effects

    def _auto_invoice(self, job: dict, row: dict) -> dict:
        existing = self._invoicing.find_by_job(job["id"])
        if existing is not None:
            logger.info("job_auto_invoice_skipped job_id=%s invoice_id=%s", job["id"], existing.get("id"))
            return {"invoice_id": existing.get("id"), "created": False}
        result = self._invoicing.create_from_job(job)
        invoice = result.get("invoice") or {}
        logger.info("job_auto_invoice_created job_id=%s invoice_id=%s", job["id"], invoice.get("id"))
        return {"invoice_id": invoice.get("id"), "created": bool(result.get("created"))}

    def allowed_transitions(self, job_id: str) -> dict:
        job = self._load(job_id)
        current = job.get("status")
        allowed = []
        for to_state in TRANSITIONS.get(current or "", ()):
            reasons = [f["message"] for f in self.guard_failures(job, to_state)]
            allowed.append({"to_state": to_state, "allowed": not reasons, "unmet_reasons": reasons})
        return {"job_id": job_id, "current_state": current, "allowed": allowed}

    def state_history(self, job_id: str) -> dict:
        job = self._load(job_id)
        history = sorted(self._store.list_transitions(job_id), key=lambda r: r.get("created_at") or "")
        return {"job_id": job_id, "current_state": job.get("status"), "history": history}


class _StaleState(Exception):
    pass
