"""
Same-day budget overrides.

Budget Acceleration records the pre-change budget before raising it; the
nightly reset restores every un-reverted override for the day, one bulk call
per advertiser profile, and stamps only the campaigns Amazon confirmed.
"""

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient
from ppc_automation.models import DailyBudgetOverride

logger = logging.getLogger(__name__)


async def record_budget_override(
    db: AsyncSession,
    rule_id: Optional[int],
    profile_id: Optional[str],
    campaign_id: str,
    original_budget: float,
    override_date: date,
) -> DailyBudgetOverride:
    """
    Upsert on (campaign_id, override_date). A second acceleration on the same
    day keeps the first original budget and re-opens the override.
    """
    result = await db.execute(
        select(DailyBudgetOverride).where(
            DailyBudgetOverride.campaign_id == str(campaign_id),
            DailyBudgetOverride.override_date == override_date,
        )
    )
    override = result.scalar_one_or_none()
    if override is None:
        override = DailyBudgetOverride(
            rule_id=rule_id,
            profile_id=profile_id,
            campaign_id=str(campaign_id),
            original_budget=original_budget,
            override_date=override_date,
        )
        db.add(override)
    else:
        override.rule_id = rule_id
        override.profile_id = profile_id or override.profile_id
        override.reverted_at = None
    await db.flush()
    return override


async def reset_daily_budgets(
    db: AsyncSession,
    today: date,
    ads_client_factory: Callable[[str], AmazonAdsClient],
    now: datetime,
) -> dict:
    """Restore today's accelerated budgets. Returns counts per outcome."""
    result = await db.execute(
        select(DailyBudgetOverride).where(
            DailyBudgetOverride.override_date == today,
            DailyBudgetOverride.reverted_at.is_(None),
        )
    )
    overrides = result.scalars().all()
    if not overrides:
        logger.info("[Budget Reset] No budgets to reset today.")
        return {"pending": 0, "reverted": 0, "failed": 0}

    by_profile: dict[str, list[DailyBudgetOverride]] = defaultdict(list)
    for override in overrides:
        by_profile[override.profile_id or ""].append(override)

    reverted = failed = 0
    for profile_id, rows in by_profile.items():
        if not profile_id:
            logger.error(f"[Budget Reset] {len(rows)} override(s) have no profile id; cannot restore.")
            failed += len(rows)
            continue
        updates = [
            {"campaignId": row.campaign_id, "budget": {"budget": row.original_budget, "budgetType": "DAILY"}}
            for row in rows
        ]
        try:
            ads = ads_client_factory(profile_id)
            status = await ads.update_campaign_budgets(updates)
        except AdsApiError as e:
            logger.error(f"[Budget Reset] Restore failed for profile {profile_id}: {e}")
            failed += len(rows)
            continue

        confirmed = {r.entity_id for r in status.successes if r.entity_id}
        confirmed |= {rows[r.index].campaign_id for r in status.successes if not r.entity_id and 0 <= r.index < len(rows)}
        for row in rows:
            if row.campaign_id in confirmed:
                row.reverted_at = now
                reverted += 1
            else:
                failed += 1
        logger.info(f"[Budget Reset] Profile {profile_id}: restored {len(confirmed & {r.campaign_id for r in rows})} "
                    f"of {len(rows)} campaign(s).")

    await db.flush()
    return {"pending": len(overrides), "reverted": reverted, "failed": failed}
