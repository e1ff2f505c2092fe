"""
Tests for the in-process automation timer.
"""

from datetime import timedelta

import pytest

from conftest import NOW
from ppc_automation.config import Settings
from ppc_automation.services.automation.runner import AutomationRunner
from ppc_automation.utils import local_today


class _StubScheduler:
    def __init__(self, now, fail_tick=False):
        self.settings = Settings(budget_reset_time="23:55", automation_tick_seconds=60)
        self.now = now
        self.fail_tick = fail_tick
        self.ticks = 0
        self.resets = 0

    def clock(self):
        return self.now

    def today(self, now=None):
        return local_today(self.settings.automation_timezone, now or self.now)

    async def tick(self):
        self.ticks += 1
        if self.fail_tick:
            raise RuntimeError("database unavailable")
        return []

    async def reset_budgets(self):
        self.resets += 1
        return {"pending": 0, "reverted": 0, "failed": 0}


@pytest.mark.anyio
async def test_budget_reset_waits_for_reset_time():
    scheduler = _StubScheduler(NOW)  # 11:00 local
    runner = AutomationRunner(scheduler)
    await runner.run_once()
    assert scheduler.ticks == 1
    assert scheduler.resets == 0


@pytest.mark.anyio
async def test_budget_reset_runs_once_per_local_day():
    reset_time = NOW + timedelta(hours=12, minutes=56)  # 23:56 local
    scheduler = _StubScheduler(reset_time)
    runner = AutomationRunner(scheduler)
    await runner.run_once()
    scheduler.now = reset_time + timedelta(minutes=2)
    await runner.run_once()
    assert scheduler.resets == 1


@pytest.mark.anyio
async def test_failed_tick_does_not_stop_the_loop():
    scheduler = _StubScheduler(NOW, fail_tick=True)
    runner = AutomationRunner(scheduler)
    await runner.run_once()
    await runner.run_once()
    assert scheduler.ticks == 2


@pytest.mark.anyio
async def test_zero_interval_disables_timer():
    runner = AutomationRunner(_StubScheduler(NOW), interval_seconds=0)
    runner.start()
    assert runner.is_started is False
    await runner.stop()
