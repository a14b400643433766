from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from automation_engine import AutomationEngine
from event_bus import EventBus
from fieldflow import to_iso, utcnow

logger = logging.getLogger("fieldflow.worker")

FREQUENCIES = ("hourly", "daily", "weekly")


def _boundary(frequency: str, now: datetime) -> str:
    if frequency == "hourly":
        return now.strftime("%Y-%m-%dT%H")
    if frequency == "daily":
        return now.strftime("%Y-%m-%d")
    year, week, _ = now.isocalendar()
    return f"{year}-W{week:02d}"


class DelayedActionWorker:
    """Fires persisted delayed actions once they are due. Fire-or-log: no retries."""

    def __init__(self, engine: AutomationEngine, pending, batch_size: int = 20) -> None:
        self._engine = engine
        self._pending = pending
        self._batch_size = batch_size

    async def run_due(self, now: datetime | None = None) -> list[dict]:
        now = now or utcnow()
        claimed = self._pending.claim_due(now, self._batch_size)
        results = []
        for item in claimed:
            try:
                result = await self._engine.resume(item)
            except Exception as exc:
                logger.exception(
                    "pending_action_failed pending_id=%s execution_id=%s", item.get("id"), item.get("execution_id")
                )
                self._pending.mark_done(item["id"], error=str(exc) or exc.__class__.__name__)
                continue
            self._pending.mark_done(item["id"])
            logger.info(
                "pending_action_done pending_id=%s execution_id=%s status=%s",
                item.get("id"),
                item.get("execution_id"),
                result.get("status"),
            )
            results.append(result)
        return results


class ScheduleTicker:
    """Emits ``scheduled`` business events when an hour, day or ISO week boundary is crossed."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._last: dict[str, str] = {}

    def tick(self, now: datetime | None = None) -> list[str]:
        now = now or utcnow()
        fired = []
        for frequency in FREQUENCIES:
            key = _boundary(frequency, now)
            previous = self._last.get(frequency)
            self._last[frequency] = key
            if previous is None or previous == key:
                continue
            self._bus.emit_business_event(
                "scheduled",
                {"frequency": frequency, "period": key, "fired_at": to_iso(now)},
            )
            fired.append(frequency)
        if fired:
            logger.info("schedule_tick fired=%s", fired)
        return fired


async def run_forever(
    worker: DelayedActionWorker,
    ticker: ScheduleTicker,
    bus: EventBus,
    poll_ms: int,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    while True:
        now = clock()
        ticker.tick(now)
        try:
            await worker.run_due(now)
        except Exception:
            logger.exception("worker_poll_failed")
        await bus.drain()
        await asyncio.sleep(poll_ms / 1000)


def main() -> None:
    from app.context import build_context

    ctx = build_context()
    logging.basicConfig(level=getattr(logging, ctx.settings.log_level, logging.INFO))
    if not ctx.settings.use_db:
        logger.warning("worker_memory_backend use_db=0 pending_actions=process_local")
    logger.info("worker_started poll_ms=%s batch=%s", ctx.settings.worker_poll_ms, ctx.settings.worker_batch)
    asyncio.run(run_forever(ctx.worker, ctx.ticker, ctx.bus, ctx.settings.worker_poll_ms, clock=ctx.clock))


if __name__ == "__main__":
    main()
