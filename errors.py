"""Error taxonomy shared by the state machine, the automation engine and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


Issue = Dict[str, Any]


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class FieldflowError(Exception):
    code: str
    message: str
    path: str | None = None
    detail: dict | None = field(default=None)

    status = 500

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> Issue:
        return issue(self.code, self.message, self.path, self.detail)


class ValidationError(FieldflowError):
    status = 400

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("VALIDATION_ERROR", message, path, detail)


class BusinessRuleViolation(FieldflowError):
    status = 400

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("BUSINESS_RULE_VIOLATION", message, path, detail)


class NotFoundError(FieldflowError):
    status = 404

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("NOT_FOUND", message, path, detail)


class PersistenceError(FieldflowError):
    status = 500

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("PERSISTENCE_ERROR", message, path, detail)


class ActionExecutionError(FieldflowError):
    """Raised by a single workflow action; never leaves the automation engine."""

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("ACTION_FAILED", message, path, detail)
