"""
Per-rule cooldown tracking.

ThrottleTracker holds the cooldown marks that were active when a rule run
started. Evaluators ask `is_throttled` against that snapshot, record new
actions with `mark`, and may `clear` a stale mark (harvest self-healing). Marks
recorded during a run only take effect from the next run; the scheduler
persists them when the run finishes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ppc_automation.models import AutomationActionThrottle

logger = logging.getLogger(__name__)


@dataclass
class ThrottleMark:
    acted_at: datetime
    throttle_until: datetime
    details: dict = field(default_factory=dict)


class ThrottleTracker:
    def __init__(self, marks: Optional[dict[str, ThrottleMark]] = None):
        self._marks: dict[str, ThrottleMark] = dict(marks or {})
        self._new: dict[str, ThrottleMark] = {}
        self._cleared: set[str] = set()

    def is_throttled(self, key: str, now: datetime) -> bool:
        """True while now < acted_at + cooldown."""
        mark = self._marks.get(key)
        return mark is not None and now < mark.throttle_until

    def get(self, key: str) -> Optional[ThrottleMark]:
        return self._marks.get(key)

    def mark(self, key: str, acted_at: datetime, cooldown: timedelta, details: Optional[dict] = None) -> None:
        self._new[key] = ThrottleMark(acted_at=acted_at, throttle_until=acted_at + cooldown, details=details or {})
        self._cleared.discard(key)

    def marked_this_run(self, key: str) -> bool:
        return key in self._new

    def clear(self, key: str) -> None:
        self._marks.pop(key, None)
        self._new.pop(key, None)
        self._cleared.add(key)

    @property
    def new_marks(self) -> dict[str, ThrottleMark]:
        return dict(self._new)

    @property
    def cleared_keys(self) -> set[str]:
        return set(self._cleared)

    def __contains__(self, key: str) -> bool:
        return key in self._marks

    def __len__(self) -> int:
        return len(self._marks)


async def load_throttle(db: AsyncSession, rule_id: int, now: datetime) -> ThrottleTracker:
    """Active (unexpired) marks for the rule."""
    result = await db.execute(
        select(AutomationActionThrottle).where(
            AutomationActionThrottle.rule_id == rule_id,
            AutomationActionThrottle.throttle_until > now,
        )
    )
    marks = {
        row.entity_key: ThrottleMark(row.acted_at, row.throttle_until, row.details or {})
        for row in result.scalars().all()
    }
    return ThrottleTracker(marks)


async def save_throttle(db: AsyncSession, rule_id: int, tracker: ThrottleTracker) -> None:
    """Apply cleared keys and upsert new marks."""
    if tracker.cleared_keys:
        await db.execute(
            delete(AutomationActionThrottle).where(
                AutomationActionThrottle.rule_id == rule_id,
                AutomationActionThrottle.entity_key.in_(list(tracker.cleared_keys)),
            )
        )
    new_marks = tracker.new_marks
    if not new_marks:
        return
    result = await db.execute(
        select(AutomationActionThrottle).where(
            AutomationActionThrottle.rule_id == rule_id,
            AutomationActionThrottle.entity_key.in_(list(new_marks)),
        )
    )
    existing = {row.entity_key: row for row in result.scalars().all()}
    for key, mark in new_marks.items():
        row = existing.get(key)
        if row is None:
            db.add(AutomationActionThrottle(
                rule_id=rule_id,
                entity_key=key,
                acted_at=mark.acted_at,
                throttle_until=mark.throttle_until,
                details=mark.details,
            ))
        else:
            row.acted_at = mark.acted_at
            row.throttle_until = mark.throttle_until
            row.details = mark.details
    await db.flush()
    logger.info(f"Rule {rule_id}: recorded {len(new_marks)} cooldown mark(s)")
