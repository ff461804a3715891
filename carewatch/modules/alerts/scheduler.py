from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog

from carewatch.modules.alerts.dispatcher import AlertDispatcher
from carewatch.modules.alerts.lifecycle import AlertLifecycleManager
from carewatch.modules.alerts.models import utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SchedulerTick:
    escalated: int
    retried: int


class AlertScheduler:
    """Polls persisted timestamps for due escalations and delivery retries.

    Nothing is kept in memory between ticks, so a restart resumes where the
    store says work is due.
    """

    def __init__(
        self,
        lifecycle: AlertLifecycleManager,
        dispatcher: AlertDispatcher,
        interval_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> SchedulerTick:
        now = now or self._clock()
        escalated = await self._lifecycle.escalate_overdue(now)
        retried = await self._dispatcher.run_due_retries(now)
        if escalated or retried:
            logger.info("alert_scheduler_tick", escalated=len(escalated), retried=retried)
        return SchedulerTick(escalated=len(escalated), retried=retried)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="alert-scheduler")
        logger.info("alert_scheduler_started", interval=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=self._interval + 5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("alert_scheduler_stopped")

    async def _run(self) -> None:
        try:
            await self._dispatcher.recover_stale_attempts()
        except Exception:
            logger.exception("alert_scheduler_recovery_failed")

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("alert_scheduler_tick_failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
