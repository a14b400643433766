"""Built-in template workflows and instantiation from a template."""

from __future__ import annotations

import copy
import logging

from errors import NotFoundError, ValidationError

logger = logging.getLogger("fieldflow.automation")


BUILTIN_TEMPLATES = [
    {
        "id": "tmpl-auto-invoice",
        "name": "Invoice completed jobs",
        "description": "Create a draft invoice as soon as a job is completed.",
        "template_category": "invoicing",
        "triggers": [{"trigger_type": "job_completed", "conditions": []}],
        "actions": [{"action_type": "create_invoice", "config": {}}],
    },
    {
        "id": "tmpl-quote-follow-up",
        "name": "Quote follow-up",
        "description": "Remind the client about a sent quote after three days.",
        "template_category": "sales",
        "cooldown_minutes": 1440,
        "triggers": [{"trigger_type": "quote_sent", "conditions": []}],
        "actions": [
            {
                "action_type": "send_email",
                "delay_minutes": 4320,
                "config": {
                    "subject": "Following up on your quote {{ entity.quote_number | default('') }}",
                    "body": "Hi {{ entity.client_name | default('there') }}, just checking whether you had any questions about our quote.",
                },
            }
        ],
    },
    {
        "id": "tmpl-lead-cleanup",
        "name": "Clean up converted leads",
        "description": "Delete a lead once it has been converted to a client.",
        "template_category": "sales",
        "triggers": [{"trigger_type": "lead_converted", "conditions": []}],
        "actions": [{"action_type": "delete_source", "config": {}}],
    },
    {
        "id": "tmpl-payment-thank-you",
        "name": "Payment thank-you",
        "description": "Thank the client when a payment is received.",
        "template_category": "invoicing",
        "triggers": [{"trigger_type": "payment_received", "conditions": []}],
        "actions": [
            {
                "action_type": "send_email",
                "config": {
                    "subject": "Thank you for your payment",
                    "body": "We received your payment of {{ entity.amount | currency }}. Thank you!",
                },
            }
        ],
    },
    {
        "id": "tmpl-overdue-reminder",
        "name": "Overdue invoice reminder",
        "description": "Email the client and create a follow-up task when an invoice becomes overdue.",
        "template_category": "invoicing",
        "cooldown_minutes": 10080,
        "triggers": [{"trigger_type": "invoice_overdue", "conditions": []}],
        "actions": [
            {
                "action_type": "send_email",
                "continue_on_error": True,
                "config": {
                    "subject": "Invoice {{ entity.invoice_number | default('') }} is overdue",
                    "body": "Our records show an outstanding balance of {{ entity.balance_due | currency }}.",
                },
            },
            {
                "action_type": "create_task",
                "config": {"title": "Call client about overdue invoice", "priority": "high", "due_in_days": 2},
            },
        ],
    },
]


def seed_templates(workflows) -> int:
    created = 0
    for template in BUILTIN_TEMPLATES:
        if workflows.get(template["id"], include_deleted=True) is not None:
            continue
        workflows.create({**copy.deepcopy(template), "is_template": True, "is_active": False})
        created += 1
    if created:
        logger.info("workflow_templates_seeded count=%s", created)
    return created


def _strip_ids(items: list[dict]) -> list[dict]:
    out = []
    for item in items or []:
        copied = copy.deepcopy(item)
        copied.pop("id", None)
        copied.pop("workflow_id", None)
        out.append(copied)
    return out


def create_from_template(
    workflows,
    template_id: str,
    name: str | None = None,
    description: str | None = None,
    created_by: str | None = None,
) -> dict:
    template = workflows.get(template_id)
    if template is None or not template.get("is_template"):
        raise NotFoundError("Template not found", "template_id", {"template_id": template_id})
    if name is not None and (not isinstance(name, str) or not name.strip()):
        raise ValidationError("name must be non-empty string", "name")
    workflow = workflows.create(
        {
            "name": name or template.get("name"),
            "description": description if description is not None else template.get("description"),
            "is_active": False,
            "is_template": False,
            "template_category": template.get("template_category"),
            "max_executions_per_day": template.get("max_executions_per_day"),
            "cooldown_minutes": template.get("cooldown_minutes"),
            "created_by": created_by,
            "triggers": _strip_ids(template.get("triggers")),
            "actions": _strip_ids(template.get("actions")),
        }
    )
    logger.info("workflow_created_from_template workflow_id=%s template_id=%s", workflow.get("id"), template_id)
    return workflow
