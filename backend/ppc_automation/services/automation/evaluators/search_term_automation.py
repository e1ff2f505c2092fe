"""
Search-Term Automation evaluator: negate search terms that match a rule's
condition groups in the ad group they came from.
"""

import logging
from datetime import timedelta

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient
from ppc_automation.services.automation.data_fetcher import Entity, PerformanceSnapshot
from ppc_automation.services.automation.evaluators.base import (
    ActedOn, CampaignActions, EvaluationResult, RuleContext,
)
from ppc_automation.services.automation.metrics import first_matching_group, windowed_metric_for
from ppc_automation.services.automation.rules import SearchTermAutomationConfig
from ppc_automation.utils import looks_like_asin

logger = logging.getLogger(__name__)

# search term reports settle two days behind
REPORT_LAG_DAYS = 2


def negation_key(entity: Entity) -> str:
    return f"{entity.entity_text}::{entity.ad_group_id or ''}"


class SearchTermAutomationEvaluator:
    def __init__(self, ads: AmazonAdsClient):
        self.ads = ads

    async def _submit(self, kind: str, payload: list[dict], pending: list[tuple]) -> tuple[list[tuple], list[dict]]:
        if not payload:
            return [], []
        try:
            if kind == "keyword":
                status = await self.ads.create_negative_keywords(payload)
            else:
                status = await self.ads.create_negative_targets(payload)
        except AdsApiError as e:
            logger.error(f"[Search Term Automation] Negative {kind} creation failed: {e}")
            return [], [{"searchTerm": p[0].entity_text, "error": str(e), "rawError": e.details} for p in pending]
        failed = {err.index: err for err in status.errors}
        failures = [
            {"searchTerm": pending[i][0].entity_text, "error": err.message, "code": err.code}
            for i, err in failed.items() if 0 <= i < len(pending)
        ]
        return [p for i, p in enumerate(pending) if i not in failed], failures

    async def evaluate(
        self, ctx: RuleContext, config: SearchTermAutomationConfig, snapshot: PerformanceSnapshot,
    ) -> EvaluationResult:
        reference_date = ctx.today - timedelta(days=REPORT_LAG_DAYS)

        seen: set[str] = set()
        keywords, keyword_pending = [], []
        targets, target_pending = [], []
        for entity in snapshot.entities.values():
            key = negation_key(entity)
            if ctx.throttle.is_throttled(key, ctx.now) or key in seen:
                continue
            if not entity.ad_group_id:
                continue
            match = first_matching_group(
                config.condition_groups, windowed_metric_for(entity.daily_data, reference_date),
            )
            if match is None:
                continue
            group, trail = match
            term = entity.entity_text
            if looks_like_asin(term):
                targets.append({
                    "campaignId": entity.campaign_id,
                    "adGroupId": entity.ad_group_id,
                    "expression": [{"type": "ASIN_SAME_AS", "value": term.upper()}],
                    "state": "ENABLED",
                })
                target_pending.append((entity, "NEGATIVE_PRODUCT_TARGET", trail))
            else:
                keywords.append({
                    "campaignId": entity.campaign_id,
                    "adGroupId": entity.ad_group_id,
                    "keywordText": term,
                    "matchType": group.action.match_type,
                    "state": "ENABLED",
                })
                keyword_pending.append((entity, group.action.match_type, trail))
            # one negation per (term, ad group) even if several ASIN rows match
            seen.add(key)

        created_keywords, keyword_failures = await self._submit("keyword", keywords, keyword_pending)
        created_targets, target_failures = await self._submit("target", targets, target_pending)

        actions = CampaignActions()
        acted_on = []
        for entity, match_type, trail in created_keywords + created_targets:
            actions.add_negative(entity.campaign_id, entity.campaign_name, {
                "searchTerm": entity.entity_text,
                "campaignId": entity.campaign_id,
                "adGroupId": entity.ad_group_id,
                "matchType": match_type,
                "triggeringMetrics": trail,
            })
            acted_on.append(ActedOn(negation_key(entity)))

        parts = []
        if created_keywords:
            parts.append(f"Created {len(created_keywords)} new negative keyword(s)")
        if created_targets:
            parts.append(f"Created {len(created_targets)} new negative product target(s)")
        summary = " and ".join(parts) + "." if parts else "No search terms met the criteria for negation."

        failures = keyword_failures + target_failures
        details = {"actions_by_campaign": actions.to_dict()}
        if failures:
            details["failures"] = failures
            summary += f" {len(failures)} negation(s) rejected."
        return EvaluationResult(
            summary=summary,
            details=details,
            acted_on=acted_on,
            action_count=len(acted_on),
            failure_count=len(failures),
        )
