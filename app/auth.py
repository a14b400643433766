"""Actor identity from upstream gateway headers."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from starlette.requests import Request

from errors import issue

logger = logging.getLogger("fieldflow.http")

ROLES = ("owner", "admin", "manager", "dispatcher", "technician", "system")
_DEV_ACTOR = {"user_id": "test-user", "role": "owner"}


@dataclass(frozen=True)
class ActorResult:
    actor: dict | None = None
    error: dict | None = None
    status: int = 200

    @property
    def ok(self) -> bool:
        return self.actor is not None


def resolve_actor(request: Request, disable_auth: bool = False) -> ActorResult:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    role = (request.headers.get("X-User-Role") or "").strip().lower() or None
    if not user_id:
        if disable_auth:
            return ActorResult(actor=dict(_DEV_ACTOR))
        logger.warning("auth_missing_identity path=%s", request.url.path)
        return ActorResult(error=issue("AUTH_REQUIRED", "Authenticated user required", "X-User-Id"), status=401)
    if role is not None and role not in ROLES:
        logger.warning("auth_invalid_role path=%s role=%s", request.url.path, role)
        return ActorResult(error=issue("AUTH_INVALID_ROLE", f"Unknown role: {role}", "X-User-Role"), status=403)
    return ActorResult(actor={"user_id": user_id, "role": role or "technician"})
