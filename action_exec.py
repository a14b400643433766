"""Executes one workflow action against the delegate services."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Protocol

from entities import EntityGateway, EntityKind
from errors import ActionExecutionError
from fieldflow import json_safe


ACTION_TYPES = (
    "send_email",
    "send_sms",
    "create_task",
    "update_entity",
    "create_invoice",
    "create_job",
    "delete_source",
    "send_notification",
    "webhook",
    "delay",
)

logger = logging.getLogger("fieldflow.actions")


class Notifier(Protocol):
    async def send_email(self, message: dict) -> dict: ...

    async def send_sms(self, message: dict) -> dict: ...

    async def send_notification(self, message: dict) -> dict: ...

    async def call_webhook(self, request: dict) -> dict: ...


class InvoiceService(Protocol):
    def find_by_job(self, job_id: str) -> dict | None: ...

    def create_from_job(self, job: dict) -> dict: ...


class JobCreationService(Protocol):
    def create_from_quote(self, quote_id: str) -> dict: ...


def render_context(event: dict, workflow: dict | None = None) -> dict:
    return {
        "entity": event.get("payload") or {},
        "event": {
            "type": event.get("type"),
            "entity_type": event.get("entity_type"),
            "entity_id": event.get("entity_id"),
            "occurred_at": event.get("occurred_at"),
        },
        "workflow": {"id": (workflow or {}).get("id"), "name": (workflow or {}).get("name")},
    }


def _identity(config: Any, context: dict) -> Any:
    return config


def _recipients(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, list) else str(value).replace(";", ",").split(",")
    out: list[str] = []
    for item in items:
        text = str(item).strip()
        if text and text not in out:
            out.append(text)
    return out


class ActionExecutor:
    def __init__(
        self,
        *,
        entities: EntityGateway,
        records: Any,
        notifier: Notifier,
        invoicing: InvoiceService,
        job_creation: JobCreationService,
        timeout_seconds: float = 10.0,
        render: Callable[[Any, dict], Any] | None = None,
    ) -> None:
        self._entities = entities
        self._records = records
        self._notifier = notifier
        self._invoicing = invoicing
        self._job_creation = job_creation
        self._timeout = timeout_seconds
        self._render = render or _identity
        self._handlers: Dict[str, Callable[[dict, dict, dict], Awaitable[dict]]] = {
            "send_email": self._send_email,
            "send_sms": self._send_sms,
            "send_notification": self._send_notification,
            "webhook": self._webhook,
            "create_task": self._create_task,
            "update_entity": self._update_entity,
            "create_invoice": self._create_invoice,
            "create_job": self._create_job,
            "delete_source": self._delete_source,
            "delay": self._delay,
        }

    async def execute(self, action: dict, event: dict, workflow: dict | None = None) -> dict:
        action_type = action.get("action_type")
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionExecutionError(f"Unsupported action_type: {action_type}", "action_type")
        config = self._render(action.get("config") or {}, render_context(event, workflow))
        if not isinstance(config, dict):
            raise ActionExecutionError("config must be object", "config")
        output = await handler(action, config, event)
        return json_safe(output)

    async def _bounded(self, label: str, call: Awaitable[dict]) -> dict:
        try:
            result = await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("action_timeout action=%s timeout_s=%s", label, self._timeout)
            raise ActionExecutionError("timeout") from None
        if not isinstance(result, dict):
            result = {"delivered": bool(result)}
        return result

    def _check_delivered(self, label: str, result: dict, config: dict) -> dict:
        if not result.get("delivered") and not config.get("allow_undelivered"):
            reason = result.get("reason") or result.get("error") or "not delivered"
            raise ActionExecutionError(f"{label} not delivered: {reason}", detail=result)
        return result

    def _source(self, event: dict) -> tuple[EntityKind, str]:
        entity_id = event.get("entity_id")
        if not entity_id:
            raise ActionExecutionError("Triggering entity id missing", "entity_id")
        return EntityKind.parse(event.get("entity_type")), entity_id

    async def _send_email(self, action: dict, config: dict, event: dict) -> dict:
        payload = event.get("payload") or {}
        to = _recipients(config.get("to") or payload.get("email") or payload.get("client_email"))
        if not to:
            raise ActionExecutionError("Email recipients not resolved", "config.to")
        subject = config.get("subject")
        if not subject:
            raise ActionExecutionError("Email subject required", "config.subject")
        message = {
            "to": to,
            "cc": _recipients(config.get("cc")),
            "subject": subject,
            "body_text": config.get("body") or config.get("body_text") or "",
            "body_html": config.get("body_html"),
            "reply_to": config.get("reply_to"),
        }
        result = await self._bounded("send_email", self._notifier.send_email(message))
        return self._check_delivered("email", result, config)

    async def _send_sms(self, action: dict, config: dict, event: dict) -> dict:
        payload = event.get("payload") or {}
        to = config.get("to") or payload.get("phone") or payload.get("client_phone")
        body = config.get("message") or config.get("body")
        if not to:
            raise ActionExecutionError("SMS recipient not resolved", "config.to")
        if not body:
            raise ActionExecutionError("SMS message required", "config.message")
        result = await self._bounded("send_sms", self._notifier.send_sms({"to": str(to), "body": body}))
        return self._check_delivered("sms", result, config)

    async def _send_notification(self, action: dict, config: dict, event: dict) -> dict:
        recipients = _recipients(config.get("recipient_user_ids") or config.get("recipient_user_id"))
        if not recipients:
            raise ActionExecutionError("Notification recipients not resolved", "config.recipient_user_ids")
        message = {
            "recipient_user_ids": recipients,
            "title": config.get("title") or "Notification",
            "body": config.get("body") or "",
            "severity": config.get("severity") or "info",
            "link_to": config.get("link_to"),
            "source_event": {"type": event.get("type"), "entity_type": event.get("entity_type"), "entity_id": event.get("entity_id")},
        }
        result = await self._bounded("send_notification", self._notifier.send_notification(message))
        return self._check_delivered("notification", result, config)

    async def _webhook(self, action: dict, config: dict, event: dict) -> dict:
        url = config.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ActionExecutionError("Webhook url must be http(s)", "config.url")
        body = config.get("payload")
        if body is None:
            body = {
                "event": event.get("type"),
                "entity_type": event.get("entity_type"),
                "entity_id": event.get("entity_id"),
                "data": event.get("payload") or {},
                "occurred_at": event.get("occurred_at"),
            }
        request = {
            "url": url,
            "method": (config.get("method") or "POST").upper(),
            "headers": config.get("headers") or {},
            "json": body,
        }
        result = await self._bounded("webhook", self._notifier.call_webhook(request))
        return self._check_delivered("webhook", result, config)

    async def _create_task(self, action: dict, config: dict, event: dict) -> dict:
        title = config.get("title")
        if not title:
            raise ActionExecutionError("Task title required", "config.title")
        task = self._records.create(
            EntityKind.TASK.value,
            {
                "title": title,
                "description": config.get("description"),
                "assigned_to": config.get("assigned_to"),
                "priority": config.get("priority") or "normal",
                "due_in_days": config.get("due_in_days"),
                "status": "open",
                "related_entity_type": event.get("entity_type"),
                "related_entity_id": event.get("entity_id"),
            },
        )
        return {"task_id": task.get("id")}

    async def _update_entity(self, action: dict, config: dict, event: dict) -> dict:
        field = config.get("field")
        if not isinstance(field, str) or not field:
            raise ActionExecutionError("update_entity requires field", "config.field")
        if "value" not in config:
            raise ActionExecutionError("update_entity requires value", "config.value")
        kind, entity_id = self._source(event)
        self._entities.patch(kind, entity_id, {field: config.get("value")})
        return {"entity_type": kind.value, "entity_id": entity_id, "field": field, "value": config.get("value")}

    async def _create_invoice(self, action: dict, config: dict, event: dict) -> dict:
        payload = event.get("payload") or {}
        job_id = config.get("job_id") or payload.get("job_id")
        if not job_id and event.get("entity_type") == EntityKind.JOB.value:
            job_id = event.get("entity_id")
        if not job_id:
            raise ActionExecutionError("create_invoice requires a job", "config.job_id")
        job = self._entities.load(EntityKind.JOB, job_id)
        result = self._invoicing.create_from_job(job)
        invoice = result.get("invoice") or {}
        return {"invoice_id": invoice.get("id"), "job_id": job_id, "created": bool(result.get("created"))}

    async def _create_job(self, action: dict, config: dict, event: dict) -> dict:
        payload = event.get("payload") or {}
        quote_id = config.get("quote_id") or payload.get("quote_id")
        if not quote_id and event.get("entity_type") == EntityKind.QUOTE.value:
            quote_id = event.get("entity_id")
        if not quote_id:
            raise ActionExecutionError("create_job requires a quote", "config.quote_id")
        result = self._job_creation.create_from_quote(quote_id)
        job = result.get("job") or {}
        return {"job_id": job.get("id"), "quote_id": quote_id, "created": bool(result.get("created"))}

    async def _delete_source(self, action: dict, config: dict, event: dict) -> dict:
        kind, entity_id = self._source(event)
        self._entities.delete(kind, entity_id)
        logger.info("source_deleted entity=%s:%s", kind.value, entity_id)
        return {"deleted": True, "entity_type": kind.value, "entity_id": entity_id}

    async def _delay(self, action: dict, config: dict, event: dict) -> dict:
        return {"waited_minutes": int(action.get("delay_minutes") or config.get("minutes") or 0)}
