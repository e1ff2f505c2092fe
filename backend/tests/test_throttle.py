"""
Tests for cooldown tracking and its persistence.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import NOW
from ppc_automation.models import AutomationActionThrottle, AutomationRule
from ppc_automation.services.automation.throttle import (
    ThrottleMark, ThrottleTracker, load_throttle, save_throttle,
)


def test_entity_is_throttled_until_cooldown_elapses():
    cooldown = timedelta(hours=24)
    tracker = ThrottleTracker({"k1": ThrottleMark(NOW, NOW + cooldown)})
    assert tracker.is_throttled("k1", NOW + timedelta(hours=23, minutes=59))
    assert not tracker.is_throttled("k1", NOW + cooldown)
    assert not tracker.is_throttled("other", NOW)


def test_marks_from_this_run_do_not_throttle_until_next_run():
    tracker = ThrottleTracker()
    tracker.mark("k1", NOW, timedelta(hours=1))
    assert not tracker.is_throttled("k1", NOW)
    assert tracker.marked_this_run("k1")


def test_clear_removes_active_mark():
    tracker = ThrottleTracker({"k1": ThrottleMark(NOW, NOW + timedelta(days=90))})
    tracker.clear("k1")
    assert not tracker.is_throttled("k1", NOW)
    assert tracker.cleared_keys == {"k1"}


async def _rule(db) -> int:
    rule = AutomationRule(name="r", rule_type="BID_ADJUSTMENT", scope={"campaignIds": ["C1"]}, config={})
    db.add(rule)
    await db.flush()
    return rule.id


@pytest.mark.anyio
async def test_save_and_load_round_trip_ignores_expired(db):
    rule_id = await _rule(db)
    tracker = ThrottleTracker()
    tracker.mark("fresh", NOW, timedelta(hours=24), {"note": "x"})
    tracker.mark("stale", NOW - timedelta(days=2), timedelta(hours=24))
    await save_throttle(db, rule_id, tracker)

    loaded = await load_throttle(db, rule_id, NOW)
    assert "fresh" in loaded and "stale" not in loaded
    assert loaded.get("fresh").details == {"note": "x"}


@pytest.mark.anyio
async def test_save_upserts_and_deletes_cleared(db):
    rule_id = await _rule(db)
    first = ThrottleTracker()
    first.mark("k1", NOW - timedelta(days=3), timedelta(hours=24))
    first.mark("k2", NOW, timedelta(hours=24))
    await save_throttle(db, rule_id, first)

    second = await load_throttle(db, rule_id, NOW)
    second.mark("k1", NOW, timedelta(hours=6))
    second.clear("k2")
    await save_throttle(db, rule_id, second)

    rows = (await db.execute(select(AutomationActionThrottle))).scalars().all()
    assert [(r.entity_key, r.throttle_until) for r in rows] == [("k1", NOW + timedelta(hours=6))]
