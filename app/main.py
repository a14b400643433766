"""FastAPI app for the fieldflow job lifecycle and automation core."""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.auth import resolve_actor
from app.context import AppContext, build_context
from app.db import close_pool, get_db_stats, reset_db_stats
from app.worker import run_forever
from app.workflow_templates import create_from_template
from app.workflow_validate import validate_workflow_payload
from automation_engine import RATE_LIMIT_WINDOW, manual_event
from automation_stats import filter_logs, get_stats, paginate, summarize_execution
from entities import EntityKind
from errors import FieldflowError
from event_bus import EventValidationError

logger = logging.getLogger("fieldflow.http")

RECENT_LOGS_LIMIT = 10


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    return _errors_response([{"code": code, "message": message, "path": path, "detail": detail}], status=status)


def _errors_response(errors: list[dict], status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


async def _safe_json(request: Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def create_app(ctx: AppContext | None = None) -> FastAPI:
    ctx = ctx or build_context()
    logging.basicConfig(level=getattr(logging, ctx.settings.log_level, logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx.bus.bind_loop(asyncio.get_running_loop())
        background = None
        if ctx.settings.inline_worker:
            background = asyncio.create_task(
                run_forever(ctx.worker, ctx.ticker, ctx.bus, ctx.settings.worker_poll_ms, clock=ctx.clock)
            )
            logger.info("inline_worker_started poll_ms=%s batch=%s", ctx.settings.worker_poll_ms, ctx.settings.worker_batch)
        try:
            yield
        finally:
            if background is not None:
                background.cancel()
                try:
                    await background
                except asyncio.CancelledError:
                    pass
                logger.info("inline_worker_stopped")
            await ctx.bus.drain()
            ctx.bus.bind_loop(None)
            ctx.bus.close()
            close = getattr(ctx.notifier, "aclose", None)
            if close is not None:
                await close()
            if ctx.settings.use_db:
                close_pool()

    app = FastAPI(title="fieldflow", lifespan=lifespan)
    app.state.ctx = ctx

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        reset_db_stats()
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        db_stats = get_db_stats()
        route = request.scope.get("route")
        route_name = getattr(route, "name", None) or "unknown"
        logger.info(
            "%s %s %s route=%s total_ms=%.1f db_q=%s db_ms=%.1f db_acquire_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            route_name,
            total_ms,
            db_stats.get("queries", 0),
            db_stats.get("total_ms", 0.0),
            db_stats.get("acquire_ms", 0.0),
        )
        if total_ms >= ctx.settings.req_slow_ms:
            logger.warning(
                "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
                request.method,
                request.url.path,
                route_name,
                total_ms,
                db_stats.get("total_ms", 0.0),
                response.status_code,
            )
        return response

    @app.exception_handler(FieldflowError)
    async def fieldflow_error_handler(request: Request, exc: FieldflowError):
        return _error_response(exc.code, exc.message, exc.path, exc.detail, status=exc.status)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
        return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)

    def _actor(request: Request) -> dict | JSONResponse:
        result = resolve_actor(request, disable_auth=ctx.settings.disable_auth)
        if not result.ok:
            return _errors_response([result.error], status=result.status)
        return result.actor

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    # jobs

    @app.post("/jobs/{job_id}/state-transitions")
    async def transition_job(job_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _safe_json(request)
        if body is None:
            return _error_response("VALIDATION_ERROR", "Expected JSON object", None, status=400)
        result = ctx.state_machine.transition(
            job_id,
            body.get("to_state"),
            changed_by=actor.get("user_id"),
            changed_by_role=actor.get("role"),
            change_source=body.get("change_source") or "manual",
            reason=body.get("reason"),
            notes=body.get("notes"),
            job_updates=body.get("job_updates"),
        )
        if not result.get("success"):
            return _errors_response(result.get("errors") or [], status=400)
        return _ok_response(
            {"job": result["job"], "transition": result["transition"], "side_effects": result.get("side_effects") or []}
        )

    @app.get("/jobs/{job_id}/allowed-transitions")
    async def allowed_transitions(job_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        return _ok_response(ctx.state_machine.allowed_transitions(job_id))

    @app.get("/jobs/{job_id}/state-history")
    async def state_history(job_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        return _ok_response(ctx.state_machine.state_history(job_id))

    # workflows

    @app.get("/workflows")
    async def list_workflows(
        request: Request,
        status: str | None = None,
        include_templates: str | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        if status is not None and status not in ("active", "inactive"):
            return _error_response("VALIDATION_ERROR", "status must be active or inactive", "status", status=400)
        items = ctx.workflows.list(status=status, include_templates=_truthy(include_templates), search=search)
        page_items, pagination = paginate(items, page, page_size)
        return _ok_response({"workflows": [_with_activity(w) for w in page_items], "pagination": pagination})

    @app.post("/workflows")
    async def create_workflow(request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _safe_json(request)
        if body is None:
            return _error_response("VALIDATION_ERROR", "Expected JSON object", None, status=400)
        errors = validate_workflow_payload(body)
        if errors:
            return _errors_response(errors, status=400)
        workflow = ctx.workflows.create({**body, "is_template": False, "created_by": actor.get("user_id")})
        logger.info("workflow_created workflow_id=%s by=%s", workflow.get("id"), actor.get("user_id"))
        return _ok_response({"workflow": workflow}, status=201)

    @app.get("/workflows/templates")
    async def list_templates(request: Request, category: str | None = None):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        return _ok_response({"templates": ctx.workflows.list_templates(category)})

    @app.post("/workflows/from-template/{template_id}")
    async def from_template(template_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _safe_json(request) or {}
        workflow = create_from_template(
            ctx.workflows,
            template_id,
            name=body.get("name"),
            description=body.get("description"),
            created_by=actor.get("user_id"),
        )
        return _ok_response({"workflow": workflow}, status=201)

    def _with_activity(workflow: dict) -> dict:
        since = ctx.clock() - RATE_LIMIT_WINDOW
        return {**workflow, "executions_24h": ctx.logs.count_executions_since(workflow["id"], since)}

    def _get_workflow(workflow_id: str) -> dict | JSONResponse:
        workflow = ctx.workflows.get(workflow_id)
        if workflow is None:
            return _error_response("NOT_FOUND", "Workflow not found", "workflow_id", status=404)
        return workflow

    @app.get("/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        workflow = _get_workflow(workflow_id)
        if isinstance(workflow, JSONResponse):
            return workflow
        detail = _with_activity(workflow)
        logs = ctx.logs.list(workflow_id=workflow_id)
        detail["recent_logs"] = list(reversed(logs[-RECENT_LOGS_LIMIT:]))
        return _ok_response({"workflow": detail})

    @app.put("/workflows/{workflow_id}")
    async def update_workflow(workflow_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _safe_json(request)
        if body is None:
            return _error_response("VALIDATION_ERROR", "Expected JSON object", None, status=400)
        errors = validate_workflow_payload(body, for_update=True)
        if errors:
            return _errors_response(errors, status=400)
        updates = {k: v for k, v in body.items() if k not in ("id", "is_template", "created_by", "created_at", "deleted_at")}
        workflow = ctx.workflows.update(workflow_id, updates)
        if workflow is None:
            return _error_response("NOT_FOUND", "Workflow not found", "workflow_id", status=404)
        return _ok_response({"workflow": workflow})

    @app.delete("/workflows/{workflow_id}")
    async def delete_workflow(workflow_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        if not ctx.workflows.soft_delete(workflow_id):
            return _error_response("NOT_FOUND", "Workflow not found", "workflow_id", status=404)
        logger.info("workflow_deleted workflow_id=%s by=%s", workflow_id, actor.get("user_id"))
        return _ok_response({"deleted": True, "workflow_id": workflow_id})

    @app.post("/workflows/{workflow_id}/toggle")
    async def toggle_workflow(workflow_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        workflow = _get_workflow(workflow_id)
        if isinstance(workflow, JSONResponse):
            return workflow
        if workflow.get("is_template"):
            return _error_response("VALIDATION_ERROR", "Templates cannot be activated", "workflow_id", status=400)
        return _ok_response({"workflow": ctx.workflows.toggle(workflow_id)})

    @app.post("/workflows/{workflow_id}/execute")
    async def execute_workflow(workflow_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        workflow = _get_workflow(workflow_id)
        if isinstance(workflow, JSONResponse):
            return workflow
        if workflow.get("is_template"):
            return _error_response("VALIDATION_ERROR", "Templates cannot be executed", "workflow_id", status=400)
        body = await _safe_json(request) or {}
        if body.get("entity_type") is not None:
            body["entity_type"] = EntityKind.parse(body.get("entity_type")).value
        try:
            event = manual_event(body)
        except EventValidationError as exc:
            return _error_response("VALIDATION_ERROR", exc.message, exc.path, status=400)
        result = await ctx.engine.execute(workflow, event, manual=True)
        logger.info(
            "workflow_executed_manually workflow_id=%s execution_id=%s status=%s by=%s",
            workflow_id,
            result.get("execution_id"),
            result.get("status"),
            actor.get("user_id"),
        )
        return _ok_response(
            {"execution_id": result["execution_id"], "status": result["status"], "logs": result["logs"]}
        )

    # automation logs

    @app.get("/automation-logs")
    async def list_logs(
        request: Request,
        workflow_id: str | None = None,
        status: str | None = None,
        action_type: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        logs = filter_logs(
            ctx.logs.list(),
            workflow_id=workflow_id,
            status=status,
            action_type=action_type,
            entity_type=entity_type,
            entity_id=entity_id,
            start_date=start_date,
            end_date=end_date,
        )
        page_items, pagination = paginate(logs, page, page_size)
        return _ok_response({"logs": page_items, "pagination": pagination})

    @app.get("/automation-logs/stats")
    async def log_stats(request: Request, days: int = 7, workflow_id: str | None = None):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        workflows = {w["id"]: w for w in ctx.workflows.list(include_templates=True)}
        stats = get_stats(ctx.logs.list(), workflows, days=days, workflow_id=workflow_id)
        return _ok_response({"stats": stats})

    @app.get("/automation-logs/{execution_id}")
    async def get_execution(execution_id: str, request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        logs = ctx.logs.list_by_execution(execution_id)
        if not logs:
            return _error_response("NOT_FOUND", "Execution not found", "execution_id", status=404)
        workflow = ctx.workflows.get(logs[0].get("workflow_id"), include_deleted=True)
        return _ok_response({"execution": summarize_execution(execution_id, logs, workflow)})

    # event ingress

    @app.post("/events")
    async def ingest_event(request: Request):
        actor = _actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _safe_json(request)
        if body is None:
            return _error_response("VALIDATION_ERROR", "Expected JSON object", None, status=400)
        event_type = body.get("type")
        if not isinstance(event_type, str) or not event_type:
            return _error_response("VALIDATION_ERROR", "type is required", "type", status=400)
        payload = body.get("payload")
        if payload is not None and not isinstance(payload, dict):
            return _error_response("VALIDATION_ERROR", "payload must be object", "payload", status=400)
        event = ctx.bus.emit_business_event(
            event_type,
            payload,
            entity_type=body.get("entity_type"),
            entity_id=body.get("entity_id"),
        )
        if event is None:
            return _error_response("VALIDATION_ERROR", "Invalid event", "payload", status=400)
        return _ok_response({"event_id": event["event_id"], "type": event["type"]}, status=202)

    return app


app = create_app()
