"""
Tests for Budget Acceleration and the daily budget reset.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import NOW, TODAY, make_ctx
from ppc_automation.ads_client import AdsApiError, ItemResult, MultiStatus
from ppc_automation.models import DailyBudgetOverride
from ppc_automation.services.automation.budget_reset import record_budget_override, reset_daily_budgets
from ppc_automation.services.automation.data_fetcher import Entity, PerformanceSnapshot
from ppc_automation.services.automation.evaluators.budget_acceleration import (
    BudgetAccelerationEvaluator, compute_new_budget,
)
from ppc_automation.services.automation.metrics import DailyRecord
from ppc_automation.services.automation.rules import BudgetAction, parse_rule_config


def _campaign(campaign_id, spend, sales=0.0):
    return Entity(
        entity_id=campaign_id, entity_type="campaign", campaign_id=campaign_id,
        campaign_name=f"Campaign {campaign_id}", entity_text=campaign_id,
        daily_data=[DailyRecord(day=TODAY, spend=spend, sales=sales),
                    DailyRecord(day=TODAY - timedelta(days=1), spend=500.0)],
    )


def _config():
    return parse_rule_config("BUDGET_ACCELERATION", {"conditionGroups": [{
        "conditions": [
            {"metric": "budgetUtilization", "timeWindow": "TODAY", "operator": ">", "value": 70},
            {"metric": "roas", "timeWindow": "TODAY", "operator": ">", "value": 2},
        ],
        "action": {"type": "increaseBudgetPercent", "value": 50},
    }]})


def test_compute_new_budget():
    assert compute_new_budget(20.0, BudgetAction(type="increaseBudgetPercent", value=50)) == 30.0
    assert compute_new_budget(20.0, BudgetAction(type="setBudgetAmount", value=45.5)) == 45.5


@pytest.mark.anyio
async def test_accelerates_and_records_override(ads, db):
    ads.campaigns = [
        {"campaignId": "C1", "budget": {"budget": 20.0}},
        {"campaignId": "C2", "budget": {"budget": 100.0}},
    ]
    snapshot = PerformanceSnapshot(entities={"C1": _campaign("C1", 16.0, 64.0), "C2": _campaign("C2", 10.0, 50.0)})

    result = await BudgetAccelerationEvaluator(ads, db).evaluate(make_ctx(), _config(), snapshot)

    assert ads.called("update_campaign_budgets") == [[
        {"campaignId": "C1", "budget": {"budget": 30.0, "budgetType": "DAILY"}},
    ]]
    change = result.details["actions_by_campaign"]["C1"]["changes"][0]
    assert change["triggeringMetrics"][0] == {
        "metric": "budgetUtilization", "timeWindow": "TODAY", "value": 80.0, "condition": "> 70",
    }
    overrides = (await db.execute(select(DailyBudgetOverride))).scalars().all()
    assert [(o.campaign_id, o.original_budget, o.override_date) for o in overrides] == [("C1", 20.0, TODAY)]
    assert result.summary == "Accelerated budget for 1 campaign(s)."


@pytest.mark.anyio
async def test_override_upsert_keeps_first_original_budget(db):
    first = await record_budget_override(db, 1, "P1", "C1", 20.0, TODAY)
    first.reverted_at = NOW
    await db.flush()
    again = await record_budget_override(db, 2, "P1", "C1", 30.0, TODAY)

    assert again.id == first.id
    assert again.original_budget == 20.0
    assert again.reverted_at is None
    assert again.rule_id == 2


@pytest.mark.anyio
async def test_reset_marks_only_confirmed_campaigns(db):
    await record_budget_override(db, 1, "P1", "C1", 20.0, TODAY)
    await record_budget_override(db, 1, "P1", "C2", 40.0, TODAY)
    await record_budget_override(db, 1, "P2", "C3", 15.0, TODAY)
    await record_budget_override(db, 1, "P1", "C4", 10.0, TODAY - timedelta(days=1))  # another day

    class Client:
        def __init__(self, profile_id):
            self.profile_id = profile_id

        async def update_campaign_budgets(self, updates):
            calls.append((self.profile_id, updates))
            if self.profile_id == "P2":
                raise AdsApiError(500, "down")
            return MultiStatus(
                successes=[ItemResult(index=0, ok=True, entity_id="C1")],
                errors=[ItemResult(index=1, ok=False, code="INVALID")],
            )

    calls = []
    result = await reset_daily_budgets(db, TODAY, Client, NOW)

    assert result == {"pending": 3, "reverted": 1, "failed": 2}
    assert sorted(profile for profile, _ in calls) == ["P1", "P2"]
    rows = {o.campaign_id: o for o in (await db.execute(select(DailyBudgetOverride))).scalars().all()}
    assert rows["C1"].reverted_at == NOW
    assert rows["C2"].reverted_at is None
    assert rows["C3"].reverted_at is None
    assert rows["C4"].reverted_at is None


@pytest.mark.anyio
async def test_reset_with_nothing_pending(db):
    assert await reset_daily_budgets(db, TODAY, lambda p: None, NOW) == {"pending": 0, "reverted": 0, "failed": 0}
