import asyncio
from datetime import datetime
from typing import Optional

import structlog

from reminders import ReminderEvaluator

log = structlog.get_logger()


class ReminderScheduler:
    """Runs a reminder cycle every `interval_seconds` on the event loop."""

    def __init__(self, evaluator: ReminderEvaluator, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.evaluator = evaluator
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="reminder-scheduler")
        log.info("reminder_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("reminder_scheduler_stopped")

    async def _loop(self):
        while True:
            result = await self.evaluator.run_cycle(datetime.now())
            if not result.success:
                log.error("scheduled_reminder_cycle_failed", error=result.error)
            await asyncio.sleep(self.interval_seconds)
