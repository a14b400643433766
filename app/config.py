"""Process settings from the environment (optionally seeded by app/.env)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

_TRUE = ("1", "true", "yes")


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUE


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    use_db: bool = False
    database_url: str | None = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    action_timeout_s: float = 10.0
    worker_poll_ms: int = 1000
    worker_batch: int = 20
    inline_worker: bool = True
    log_level: str = "INFO"
    disable_auth: bool = False
    req_slow_ms: float = 250.0
    postmark_api_token: str | None = None
    email_from: str | None = None
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    sms_from: str | None = None

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "Settings":
        _load_env_file(env_file or ROOT / "app" / ".env")
        use_db = os.getenv("USE_DB", "").strip() == "1"
        return cls(
            use_db=use_db,
            database_url=os.getenv("DATABASE_URL") or None,
            db_pool_min=_int("FIELDFLOW_DB_POOL_MIN", 1),
            db_pool_max=_int("FIELDFLOW_DB_POOL_MAX", 10),
            action_timeout_s=_float("FIELDFLOW_ACTION_TIMEOUT_S", 10.0),
            worker_poll_ms=_int("FIELDFLOW_WORKER_POLL_MS", 1000),
            worker_batch=_int("FIELDFLOW_WORKER_BATCH", 20),
            inline_worker=_flag("FIELDFLOW_INLINE_WORKER") if os.getenv("FIELDFLOW_INLINE_WORKER") else not use_db,
            log_level=(os.getenv("FIELDFLOW_LOG_LEVEL", "").strip() or "INFO").upper(),
            disable_auth=_flag("FIELDFLOW_DISABLE_AUTH"),
            req_slow_ms=_float("FIELDFLOW_REQ_SLOW_MS", 250.0),
            postmark_api_token=os.getenv("POSTMARK_API_TOKEN") or None,
            email_from=os.getenv("EMAIL_FROM") or None,
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
            sms_from=os.getenv("SMS_FROM") or None,
        )
