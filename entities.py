"""Entity variants the automation core may load, patch or delete."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from errors import BusinessRuleViolation, NotFoundError, ValidationError


class EntityKind(str, Enum):
    CLIENT = "client"
    LEAD = "lead"
    QUOTE = "quote"
    JOB = "job"
    INVOICE = "invoice"
    TASK = "task"
    PAYMENT = "payment"

    @classmethod
    def parse(cls, value: Any) -> "EntityKind":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("entity type required", "entity_type")
        text = value.strip().lower()
        for kind in cls:
            if text in (kind.value, kind.table):
                return kind
        raise ValidationError(f"unsupported entity type: {value}", "entity_type")

    @property
    def table(self) -> str:
        return f"{self.value}s"


# Fields owned by another component; a generic patch may not touch them.
PROTECTED_FIELDS = {
    EntityKind.JOB: {"status", "last_state_change_at"},
}


class RecordStore(Protocol):
    def get(self, kind: str, record_id: str) -> dict | None: ...

    def list(self, kind: str, **filters: Any) -> list[dict]: ...

    def create(self, kind: str, data: dict) -> dict: ...

    def update(self, kind: str, record_id: str, changes: dict) -> dict | None: ...

    def delete(self, kind: str, record_id: str) -> bool: ...


class EntityGateway:
    def __init__(self, records: RecordStore) -> None:
        self._records = records

    def load(self, kind: EntityKind | str, entity_id: str) -> dict:
        kind = EntityKind.parse(kind)
        record = self._records.get(kind.value, entity_id)
        if record is None:
            raise NotFoundError(f"{kind.value} not found", "entity_id", {"entity_id": entity_id})
        return record

    def patch(self, kind: EntityKind | str, entity_id: str, fields: dict) -> dict:
        kind = EntityKind.parse(kind)
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("fields must be non-empty object", "fields")
        blocked = sorted(PROTECTED_FIELDS.get(kind, set()) & set(fields))
        if blocked:
            raise BusinessRuleViolation(
                f"{kind.value}.{blocked[0]} can only change through the state machine",
                f"fields.{blocked[0]}",
            )
        updated = self._records.update(kind.value, entity_id, fields)
        if updated is None:
            raise NotFoundError(f"{kind.value} not found", "entity_id", {"entity_id": entity_id})
        return updated

    def delete(self, kind: EntityKind | str, entity_id: str) -> None:
        kind = EntityKind.parse(kind)
        if not self._records.delete(kind.value, entity_id):
            raise NotFoundError(f"{kind.value} not found", "entity_id", {"entity_id": entity_id})
