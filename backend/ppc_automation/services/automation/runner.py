"""
In-process timer driving the RuleScheduler.

Every `automation_tick_seconds` the runner fires a scheduler tick; once per
local day, at `budget_reset_time`, it also runs the daily budget reset. The
cron endpoints drive the same scheduler instance when the timer is disabled.
"""

import asyncio
import logging
from datetime import date
from typing import Optional

from ppc_automation.services.automation.scheduler import RuleScheduler
from ppc_automation.utils import to_local

logger = logging.getLogger(__name__)


class AutomationRunner:
    def __init__(self, scheduler: RuleScheduler, interval_seconds: Optional[float] = None):
        self.scheduler = scheduler
        settings = scheduler.settings
        self.interval = settings.automation_tick_seconds if interval_seconds is None else interval_seconds
        self.reset_at = settings.budget_reset_hour_minute
        self._last_reset_day: Optional[date] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_started(self) -> bool:
        return self._task is not None and not self._task.done()

    def budget_reset_due(self) -> bool:
        local_now = to_local(self.scheduler.clock(), self.scheduler.settings.automation_timezone)
        if (local_now.hour, local_now.minute) < self.reset_at:
            return False
        return self._last_reset_day != local_now.date()

    async def run_once(self) -> None:
        """One timer iteration: rule tick, then the budget reset if it is due."""
        try:
            await self.scheduler.tick()
        except Exception:
            logger.exception("[RulesEngine] Tick failed")
        if self.budget_reset_due():
            self._last_reset_day = self.scheduler.today()
            try:
                result = await self.scheduler.reset_budgets()
                logger.info(f"[Budget Reset] Finished: {result}")
            except Exception:
                logger.exception("[Budget Reset] Reset failed")

    async def _loop(self) -> None:
        logger.info(f"Automation runner started (tick every {self.interval}s)")
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.interval <= 0:
            logger.info("Automation runner disabled (AUTOMATION_TICK_SECONDS=0); use the cron endpoints.")
            return
        if not self.is_started:
            self._task = asyncio.create_task(self._loop(), name="automation-runner")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Automation runner stopped")
