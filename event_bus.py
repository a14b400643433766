"""Business event envelope and the fire-and-forget bus the CRUD layer emits into."""

from __future__ import annotations

import asyncio
import concurrent.futures
import copy
import inspect
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Set

from fieldflow import canonical_dumps, now_iso


Event = Dict[str, Any]
Handler = Callable[[Event], "Awaitable[Any] | Any"]

WILDCARD = "*"

logger = logging.getLogger("fieldflow.event_bus")


@dataclass
class EventValidationError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _raise(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(code=code, message=message, path=path)


def _validate_occurred_at(value: Any) -> None:
    if not isinstance(value, str) or not value.endswith("Z"):
        _raise("EVENT_OCCURRED_AT_INVALID", "occurred_at must be ISO8601 string ending with 'Z'", "occurred_at")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _raise("EVENT_OCCURRED_AT_INVALID", "occurred_at must be ISO8601", "occurred_at")


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _raise("EVENT_INVALID", "event must be object")
    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        _raise("EVENT_TYPE_INVALID", "type must be non-empty string", "type")
    payload = event.get("payload")
    if not isinstance(payload, dict):
        _raise("EVENT_PAYLOAD_INVALID", "payload must be object", "payload")
    try:
        canonical_dumps(payload)
    except (TypeError, ValueError) as exc:
        _raise("EVENT_PAYLOAD_INVALID", str(exc), "payload")
    for key in ("entity_type", "entity_id"):
        value = event.get(key)
        if value is not None and not isinstance(value, str):
            _raise("EVENT_ENTITY_INVALID", f"{key} must be string or null", key)
    if not isinstance(event.get("event_id"), str):
        _raise("EVENT_ID_INVALID", "event_id must be string", "event_id")
    _validate_occurred_at(event.get("occurred_at"))


def _entity_type_for(event_type: str) -> str | None:
    # job_completed -> job, payment_received -> payment
    head = event_type.split("_", 1)[0]
    return head if head and head != event_type else None


def make_event(
    event_type: str,
    payload: dict | None,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    occurred_at: str | None = None,
) -> Event:
    payload = copy.deepcopy(payload or {})
    if entity_type is None:
        entity_type = payload.get("entity_type") if isinstance(payload.get("entity_type"), str) else _entity_type_for(event_type)
    if entity_id is None:
        for key in ("entity_id", "id"):
            if payload.get(key) is not None:
                entity_id = str(payload.get(key))
                break
    event = {
        "type": event_type,
        "entity_type": entity_type,
        "entity_id": str(entity_id) if entity_id is not None else None,
        "payload": payload,
        "occurred_at": occurred_at or now_iso(),
        "event_id": str(uuid.uuid4()),
    }
    validate_event(event)
    return event


def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    try:
        loop.run_forever()
    finally:
        loop.close()


class EventBus:
    """In-process dispatch from external mutations to the automation core.

    ``emit_business_event`` never raises and never waits for handlers. On a
    running loop each handler becomes a task. Sync callers hand the event to
    the bound loop (``bind_loop``) or, without one, to a daemon dispatch loop.
    ``drain`` and ``flush`` let shutdown and tests wait for in-flight work.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._handoffs: Set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()
        self._bound: asyncio.AbstractEventLoop | None = None
        self._background: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._bound = loop

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._subs.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> bool:
        handlers = self._subs.get(event_type)
        if not handlers:
            return False
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        if not handlers:
            del self._subs[event_type]
        return True

    def handlers_for(self, event_type: str) -> list[Handler]:
        return list(self._subs.get(event_type, [])) + list(self._subs.get(WILDCARD, []))

    def emit_business_event(self, event_type: str, payload: dict | None = None, **envelope: Any) -> Event | None:
        try:
            event = make_event(event_type, payload, **envelope)
        except EventValidationError as exc:
            logger.error("event_rejected type=%s error=%s", event_type, exc)
            return None
        self.publish(event)
        return event

    def publish(self, event: Event) -> None:
        handlers = self.handlers_for(event["type"])
        logger.info(
            "event_published type=%s event_id=%s entity=%s:%s handlers=%s",
            event["type"],
            event["event_id"],
            event.get("entity_type"),
            event.get("entity_id"),
            len(handlers),
        )
        if not handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._spawn(loop, event, handlers)
            return
        target = self._bound if self._bound is not None and self._bound.is_running() else self._dispatch_loop()
        future = asyncio.run_coroutine_threadsafe(self._dispatch_all(event, handlers), target)
        with self._lock:
            self._handoffs.add(future)
        future.add_done_callback(self._handoff_done)

    def _spawn(self, loop: asyncio.AbstractEventLoop, event: Event, handlers: list[Handler]) -> None:
        for handler in handlers:
            task = loop.create_task(self._dispatch(event, handler))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    def _handoff_done(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._handoffs.discard(future)

    def _dispatch_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._background is None or self._background.is_closed():
                loop = asyncio.new_event_loop()
                threading.Thread(target=_run_loop, args=(loop,), name="fieldflow-event-bus", daemon=True).start()
                self._background = loop
            return self._background

    async def _dispatch_all(self, event: Event, handlers: list[Handler]) -> None:
        for handler in handlers:
            await self._dispatch(event, handler)

    async def _dispatch(self, event: Event, handler: Handler) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "event_handler_failed type=%s event_id=%s handler=%s",
                event.get("type"),
                event.get("event_id"),
                getattr(handler, "__qualname__", repr(handler)),
            )

    async def drain(self) -> None:
        while True:
            with self._lock:
                handoffs = list(self._handoffs)
            if not self._inflight and not handoffs:
                return
            waiting = list(self._inflight) + [asyncio.wrap_future(f) for f in handoffs]
            await asyncio.gather(*waiting, return_exceptions=True)

    def flush(self, timeout: float | None = 5.0) -> bool:
        """Block a sync caller until handed-off events are dispatched. False on timeout."""
        with self._lock:
            handoffs = list(self._handoffs)
        _, not_done = concurrent.futures.wait(handoffs, timeout=timeout)
        return not not_done

    def close(self) -> None:
        with self._lock:
            loop, self._background = self._background, None
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(loop.stop)

    @property
    def inflight(self) -> int:
        with self._lock:
            handoffs = len(self._handoffs)
        return len(self._inflight) + handoffs
