"""Process-wide wiring: one AppContext built at start-up and passed by reference."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from action_exec import ActionExecutor
from app.automations_runtime import register_automations
from app.config import Settings
from app.notify import HttpNotifier
from app.stores import (
    MemoryAutomationLogStore,
    MemoryJobStateStore,
    MemoryPendingActionStore,
    MemoryRecordStore,
    QuoteConversion,
    RecordInvoicing,
)
from app.template_render import render_config
from app.worker import DelayedActionWorker, ScheduleTicker
from app.workflow_templates import seed_templates
from automation_engine import AutomationEngine
from entities import EntityGateway
from event_bus import EventBus
from fieldflow import utcnow
from job_state_machine import JobStateMachine
from workflow_store import WorkflowStore

logger = logging.getLogger("fieldflow.context")


@dataclass
class AppContext:
    settings: Settings
    records: Any
    job_states: Any
    workflows: Any
    logs: Any
    pending: Any
    invoicing: RecordInvoicing
    job_creation: QuoteConversion
    entities: EntityGateway
    notifier: Any
    bus: EventBus
    executor: ActionExecutor
    engine: AutomationEngine
    state_machine: JobStateMachine
    worker: DelayedActionWorker
    ticker: ScheduleTicker
    clock: Callable[[], datetime] = utcnow


def _stores(settings: Settings) -> tuple:
    if not settings.use_db:
        records = MemoryRecordStore()
        return records, MemoryJobStateStore(records), WorkflowStore(), MemoryAutomationLogStore(), MemoryPendingActionStore()
    from app.db import ensure_schema, init_pool
    from app.stores_db import (
        DbAutomationLogStore,
        DbJobStateStore,
        DbPendingActionStore,
        DbRecordStore,
        DbWorkflowStore,
    )

    init_pool(settings.database_url, settings.db_pool_min, settings.db_pool_max)
    ensure_schema()
    records = DbRecordStore()
    return records, DbJobStateStore(records), DbWorkflowStore(), DbAutomationLogStore(), DbPendingActionStore()


def build_context(
    settings: Settings | None = None,
    *,
    notifier: Any = None,
    clock: Callable[[], datetime] = utcnow,
    seed: bool = True,
) -> AppContext:
    settings = settings or Settings.from_env()
    records, job_states, workflows, logs, pending = _stores(settings)
    invoicing = RecordInvoicing(records)
    job_creation = QuoteConversion(records)
    entities = EntityGateway(records)
    notifier = notifier or HttpNotifier(settings, records)
    bus = EventBus()
    executor = ActionExecutor(
        entities=entities,
        records=records,
        notifier=notifier,
        invoicing=invoicing,
        job_creation=job_creation,
        timeout_seconds=settings.action_timeout_s,
        render=render_config,
    )
    engine = AutomationEngine(workflows=workflows, logs=logs, pending=pending, executor=executor, clock=clock)
    state_machine = JobStateMachine(job_states, invoicing=invoicing, bus=bus, clock=clock)
    register_automations(bus, engine)
    if seed:
        seed_templates(workflows)
    logger.info(
        "context_ready use_db=%s action_timeout_s=%s inline_worker=%s",
        settings.use_db,
        settings.action_timeout_s,
        settings.inline_worker,
    )
    return AppContext(
        settings=settings,
        records=records,
        job_states=job_states,
        workflows=workflows,
        logs=logs,
        pending=pending,
        invoicing=invoicing,
        job_creation=job_creation,
        entities=entities,
        notifier=notifier,
        bus=bus,
        executor=executor,
        engine=engine,
        state_machine=state_machine,
        worker=DelayedActionWorker(engine, pending, settings.worker_batch),
        ticker=ScheduleTicker(bus),
        clock=clock,
    )
