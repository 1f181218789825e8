from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from fieldops.db import SessionLocal
from fieldops.services.attendance import run_auto_checkout
from fieldops.services.clock import is_before_workday_end, local_day_of
from fieldops.services.notifications import send_pending_notifications
from fieldops.settings import get_settings

logger = logging.getLogger("fieldops.worker")

MIN_INTERVAL_SECONDS = 15


def auto_checkout_due(now_utc: datetime, last_run_day: date | None) -> bool:
    """The sweep runs once per local day, on the first tick at or after workday end."""
    if is_before_workday_end(now_utc):
        return False
    return last_run_day != local_day_of(now_utc)


def _run_auto_checkout_tick(now_utc: datetime) -> dict[str, Any]:
    with SessionLocal() as db:
        return run_auto_checkout(db, now=now_utc, request_id="auto-checkout-worker").to_dict()


@dataclass
class BackgroundWorker:
    """Auto-checkout sweep plus notification outbox dispatch on a fixed interval."""

    interval_seconds: int
    outbox_batch_size: int = 100
    last_auto_checkout_day: date | None = None
    _stop_event: asyncio.Event | None = field(default=None, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now_utc: datetime) -> None:
        if auto_checkout_due(now_utc, self.last_auto_checkout_day):
            try:
                summary = await asyncio.to_thread(_run_auto_checkout_tick, now_utc)
            except Exception:
                logger.exception("auto_checkout_tick_failed")
            else:
                self.last_auto_checkout_day = local_day_of(now_utc)
                logger.info("auto_checkout_tick", extra=summary)

        try:
            processed_jobs = await asyncio.to_thread(send_pending_notifications, self.outbox_batch_size, now_utc=now_utc)
        except Exception:
            logger.exception("notification_worker_tick_failed")
        else:
            if processed_jobs:
                logger.info("notification_worker_tick", extra={"processed_jobs": len(processed_jobs)})

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.tick(datetime.now(timezone.utc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))
        settings = get_settings()
        logger.info(
            "background_worker_started",
            extra={
                "interval_seconds": self.interval_seconds,
                "workday_end_hour": settings.workday_end_hour,
                "timezone": settings.attendance_timezone,
            },
        )

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._stop_event = None
        self._task = None


def build_worker() -> BackgroundWorker:
    settings = get_settings()
    return BackgroundWorker(interval_seconds=max(MIN_INTERVAL_SECONDS, int(settings.worker_interval_seconds)))
