"""
Budget Acceleration evaluator: raise a campaign's daily budget for the rest of
today when today's metrics match. Every raise is recorded as a
DailyBudgetOverride so the nightly reset can restore it.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient
from ppc_automation.services.automation.budget_reset import record_budget_override
from ppc_automation.services.automation.data_fetcher import PerformanceSnapshot
from ppc_automation.services.automation.evaluators.base import (
    ActedOn, CampaignActions, EvaluationResult, RuleContext,
)
from ppc_automation.services.automation.metrics import day_metrics, first_matching_group
from ppc_automation.services.automation.rules import BudgetAction, BudgetAccelerationConfig
from ppc_automation.utils import safe_float

logger = logging.getLogger(__name__)


def compute_new_budget(current_budget: float, action: BudgetAction) -> float:
    if action.type == "increaseBudgetPercent":
        return round(current_budget * (1 + action.value / 100), 2)
    return round(action.value, 2)


class BudgetAccelerationEvaluator:
    def __init__(self, ads: AmazonAdsClient, db: AsyncSession):
        self.ads = ads
        self.db = db

    async def _current_budgets(self, campaign_ids: list[str]) -> dict[str, float]:
        found = await self.ads.list_campaigns(campaign_ids)
        if found.failed_ids:
            logger.warning(f"[Budget Acceleration] Could not load {len(found.failed_ids)} campaign(s); skipping them.")
        budgets = {}
        for campaign in found.items:
            budget = safe_float((campaign.get("budget") or {}).get("budget"), default=-1.0)
            if budget >= 0:
                budgets[str(campaign.get("campaignId"))] = budget
        return budgets

    async def evaluate(
        self, ctx: RuleContext, config: BudgetAccelerationConfig, snapshot: PerformanceSnapshot,
    ) -> EvaluationResult:
        budgets = await self._current_budgets(list(snapshot.entities)) if snapshot.entities else {}

        pending: list[tuple[str, str, float, float, list]] = []
        for campaign_id, entity in snapshot.entities.items():
            current_budget = budgets.get(campaign_id)
            if current_budget is None or ctx.throttle.is_throttled(campaign_id, ctx.now):
                continue
            today = day_metrics(entity.daily_data, ctx.today)

            def metric_for(condition, today=today, budget=current_budget):
                if condition.metric == "budgetUtilization":
                    return today.spend / budget * 100 if budget > 0 else 0.0
                return today.get(condition.metric)

            match = first_matching_group(config.condition_groups, metric_for, lambda c: "TODAY")
            if match is None:
                continue
            group, trail = match
            new_budget = compute_new_budget(current_budget, group.action)
            if new_budget <= current_budget:
                logger.info(f"[Budget Acceleration] Campaign {campaign_id}: {new_budget} does not raise "
                            f"the current budget {current_budget}. Skipping.")
                continue
            pending.append((campaign_id, entity.campaign_name, current_budget, new_budget, trail))

        if not pending:
            return EvaluationResult(summary="Accelerated budget for 0 campaign(s).",
                                    details={"actions_by_campaign": {}})

        for campaign_id, _, current_budget, _, _ in pending:
            await record_budget_override(
                self.db, ctx.rule_id, ctx.profile_id, campaign_id, current_budget, ctx.today,
            )

        updates = [
            {"campaignId": campaign_id, "budget": {"budget": new_budget, "budgetType": "DAILY"}}
            for campaign_id, _, _, new_budget, _ in pending
        ]
        failures: list[dict] = []
        try:
            status = await self.ads.update_campaign_budgets(updates)
            failed = {err.index: err for err in status.errors}
        except AdsApiError as e:
            logger.error(f"[Budget Acceleration] Budget update failed: {e}")
            failed = {i: None for i in range(len(pending))}
            failures = [{"campaignId": p[0], "error": str(e), "rawError": e.details} for p in pending]
        else:
            failures = [
                {"campaignId": pending[i][0], "error": err.message, "code": err.code}
                for i, err in failed.items() if 0 <= i < len(pending)
            ]

        actions = CampaignActions()
        acted_on = []
        for i, (campaign_id, campaign_name, current_budget, new_budget, trail) in enumerate(pending):
            if i in failed:
                continue
            actions.add_change(campaign_id, campaign_name, {
                "entityType": "campaign",
                "entityId": campaign_id,
                "oldBudget": current_budget,
                "newBudget": new_budget,
                "triggeringMetrics": trail,
            })
            acted_on.append(ActedOn(campaign_id))

        details = {"actions_by_campaign": actions.to_dict()}
        if failures:
            details["failures"] = failures
        return EvaluationResult(
            summary=f"Accelerated budget for {len(acted_on)} campaign(s).",
            details=details,
            acted_on=acted_on,
            action_count=len(acted_on),
            failure_count=len(failures),
        )
