from __future__ import annotations

import logging

from automation_engine import TRIGGER_TYPES, AutomationEngine
from event_bus import Event, EventBus

logger = logging.getLogger("fieldflow.automation")


def make_handler(engine: AutomationEngine):
    async def handle_business_event(event: Event) -> list[dict]:
        logger.info(
            "automation_event_received type=%s event_id=%s entity=%s:%s",
            event.get("type"),
            event.get("event_id"),
            event.get("entity_type"),
            event.get("entity_id"),
        )
        results = await engine.handle_event(event)
        for result in results:
            logger.info(
                "automation_event_handled event_id=%s execution_id=%s workflow_id=%s status=%s",
                event.get("event_id"),
                result.get("execution_id"),
                result.get("workflow_id"),
                result.get("status"),
            )
        return results

    return handle_business_event


def register_automations(bus: EventBus, engine: AutomationEngine) -> None:
    handler = make_handler(engine)
    for trigger_type in TRIGGER_TYPES:
        bus.subscribe(trigger_type, handler)
