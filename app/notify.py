"""Outbound delivery for workflow actions: Postmark email, Twilio SMS, webhooks, in-app notifications."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.config import Settings

logger = logging.getLogger("fieldflow.actions")

POSTMARK_URL = "https://api.postmarkapp.com/email"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def _undelivered(reason: str, **extra: Any) -> dict:
    return {"delivered": False, "reason": reason, **extra}


class HttpNotifier:
    """Delivery delegate for the action executor.

    Provider failures come back as ``delivered: False`` with a reason; only
    transport errors raise. Timeouts are enforced by the caller.
    """

    def __init__(self, settings: Settings, records: Any, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._records = records
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_email(self, message: dict) -> dict:
        token = self._settings.postmark_api_token
        sender = message.get("from_email") or self._settings.email_from
        if not token:
            return _undelivered("POSTMARK_API_TOKEN not configured")
        if not sender:
            return _undelivered("EMAIL_FROM not configured")
        payload = {
            "From": sender,
            "To": ",".join(message.get("to") or []),
            "Cc": ",".join(message.get("cc") or []),
            "Subject": message.get("subject"),
            "HtmlBody": message.get("body_html"),
            "TextBody": message.get("body_text"),
            "ReplyTo": message.get("reply_to"),
        }
        headers = {"X-Postmark-Server-Token": token, "Accept": "application/json"}
        resp = await self._http().post(POSTMARK_URL, json=payload, headers=headers)
        if resp.status_code >= 400:
            logger.warning("email_send_failed status=%s body=%s", resp.status_code, resp.text[:200])
            return _undelivered(f"Postmark error: {resp.status_code}", status_code=resp.status_code)
        data = resp.json()
        logger.info("email_sent to=%s message_id=%s", payload["To"], data.get("MessageID"))
        return {"delivered": True, "provider": "postmark", "message_id": data.get("MessageID")}

    async def send_sms(self, message: dict) -> dict:
        sid = self._settings.twilio_account_sid
        token = self._settings.twilio_auth_token
        sender = self._settings.sms_from
        if not sid or not token or not sender:
            return _undelivered("Twilio credentials not configured")
        resp = await self._http().post(
            TWILIO_URL.format(sid=sid),
            data={"From": sender, "To": message.get("to"), "Body": message.get("body")},
            auth=(sid, token),
        )
        if resp.status_code >= 400:
            logger.warning("sms_send_failed status=%s body=%s", resp.status_code, resp.text[:200])
            return _undelivered(f"Twilio error: {resp.status_code}", status_code=resp.status_code)
        data = resp.json()
        logger.info("sms_sent to=%s sid=%s", message.get("to"), data.get("sid"))
        return {"delivered": True, "provider": "twilio", "message_id": data.get("sid")}

    async def call_webhook(self, request: dict) -> dict:
        resp = await self._http().request(
            request.get("method") or "POST",
            request["url"],
            json=request.get("json"),
            headers=request.get("headers") or {},
        )
        ok = resp.status_code < 400
        logger.log(
            logging.INFO if ok else logging.WARNING,
            "webhook_called url=%s status=%s",
            request["url"],
            resp.status_code,
        )
        result = {"delivered": ok, "status_code": resp.status_code}
        if not ok:
            result["reason"] = f"HTTP {resp.status_code}"
        return result

    async def send_notification(self, message: dict) -> dict:
        ids = []
        for user_id in message.get("recipient_user_ids") or []:
            row = self._records.create(
                "notification",
                {
                    "recipient_user_id": user_id,
                    "title": message.get("title"),
                    "body": message.get("body"),
                    "severity": message.get("severity") or "info",
                    "link_to": message.get("link_to"),
                    "source_event": message.get("source_event"),
                    "read_at": None,
                },
            )
            ids.append(row.get("id"))
        return {"delivered": bool(ids), "notification_ids": ids}
