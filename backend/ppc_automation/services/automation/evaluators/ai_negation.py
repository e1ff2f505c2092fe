"""
AI Search-Term Negation evaluator.

Works on a single settled report day (D-3, 1-day attribution). Terms that pass
the rule's condition groups are classified against the advertised product's
title and bullets; only terms judged NOT relevant are negated. Terms the model
could not classify are reported and left alone.
"""

import logging
from datetime import date, timedelta
from typing import Optional

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient
from ppc_automation.services.ai_service import Relevance, RelevanceClassifier
from ppc_automation.services.automation.data_fetcher import Entity, PerformanceSnapshot
from ppc_automation.services.automation.evaluators.base import (
    ActedOn, CampaignActions, EvaluationResult, RuleContext,
)
from ppc_automation.services.automation.metrics import first_matching_group, windowed_metric_for
from ppc_automation.services.automation.rules import AiNegationConfig
from ppc_automation.sp_api_client import SellingPartnerClient, SellingPartnerError
from ppc_automation.utils import looks_like_asin

logger = logging.getLogger(__name__)

REPORT_OFFSET_DAYS = 3


def report_date_for(today: date) -> date:
    return today - timedelta(days=REPORT_OFFSET_DAYS)


def ai_negation_key(entity: Entity) -> str:
    return f"{entity.entity_text}::{entity.source_asin or ''}"


class ProductDetailsCache:
    """Product title/bullets per ASIN, fetched at most once per rule run."""

    def __init__(self, sp: Optional[SellingPartnerClient]):
        self.sp = sp
        self._products: dict[str, Optional[dict]] = {}

    async def get(self, asin: str) -> Optional[dict]:
        if asin in self._products:
            return self._products[asin]
        product = None
        if self.sp is not None:
            try:
                product = await self.sp.get_product_text_attributes(asin)
            except SellingPartnerError as e:
                logger.warning(f"[AI Negation] Could not load product details for {asin}: {e}")
        self._products[asin] = product
        return product

    def __len__(self) -> int:
        return len(self._products)


class AiNegationEvaluator:
    def __init__(
        self,
        ads: AmazonAdsClient,
        classifier: RelevanceClassifier,
        sp: Optional[SellingPartnerClient] = None,
    ):
        self.ads = ads
        self.classifier = classifier
        self.products = ProductDetailsCache(sp)

    async def _shortlist(
        self, ctx: RuleContext, config: AiNegationConfig, snapshot: PerformanceSnapshot, reference_date: date,
    ) -> dict[str, list[tuple[Entity, str]]]:
        """(entity, negative match type) candidates per ASIN after cooldown, ASIN-term and condition filtering."""
        by_asin: dict[str, list[tuple[Entity, str]]] = {}
        for entity in snapshot.entities.values():
            if not entity.source_asin or not entity.ad_group_id:
                continue
            if looks_like_asin(entity.entity_text):
                continue
            if ctx.throttle.is_throttled(ai_negation_key(entity), ctx.now):
                continue
            match = first_matching_group(
                config.condition_groups, windowed_metric_for(entity.daily_data, reference_date),
            )
            if match is None:
                continue
            group, _ = match
            by_asin.setdefault(entity.source_asin, []).append((entity, group.action.match_type))
        return by_asin

    async def evaluate(
        self, ctx: RuleContext, config: AiNegationConfig, snapshot: PerformanceSnapshot,
    ) -> EvaluationResult:
        report_date = report_date_for(ctx.today)
        date_range = {"report": {"start": report_date.isoformat(), "end": report_date.isoformat()}}
        if not snapshot.entities:
            return EvaluationResult(
                summary=f"No search term data found for {report_date.isoformat()}.",
                details={"data_date_range": date_range},
            )

        # windows end the day after the report date so the D-3 row is inside them
        candidates = await self._shortlist(ctx, config, snapshot, report_date + timedelta(days=1))
        to_negate: list[tuple[Entity, str]] = []
        queued: set[tuple[str, str]] = set()
        unclassified: list[dict] = []
        relevant_count = 0
        for asin, entities in candidates.items():
            product = await self.products.get(asin)
            if not product or not product.get("title"):
                logger.info(f"[AI Negation] No product details for {asin}; skipping {len(entities)} term(s).")
                continue
            terms = list(dict.fromkeys(e.entity_text for e, _ in entities))
            verdicts = await self.classifier.classify(
                product, terms, mode=config.classification_mode, batch_size=config.batch_size,
            )
            for entity, match_type in entities:
                verdict = verdicts.get(entity.entity_text, Relevance.UNKNOWN)
                if verdict == Relevance.RELEVANT:
                    relevant_count += 1
                elif verdict == Relevance.UNKNOWN:
                    unclassified.append({"searchTerm": entity.entity_text, "asin": asin})
                elif (entity.entity_text, entity.ad_group_id) not in queued:
                    logger.info(f"[AI Negation] \"{entity.entity_text}\" is NOT RELEVANT for ASIN {asin}.")
                    queued.add((entity.entity_text, entity.ad_group_id))
                    to_negate.append((entity, match_type))

        failures: list[dict] = []
        negated: list[tuple[Entity, str]] = []
        if to_negate:
            payload = [{
                "campaignId": e.campaign_id,
                "adGroupId": e.ad_group_id,
                "keywordText": e.entity_text,
                "matchType": match_type,
                "state": "ENABLED",
            } for e, match_type in to_negate]
            try:
                status = await self.ads.create_negative_keywords(payload)
            except AdsApiError as e:
                logger.error(f"[AI Negation] Failed to apply negative keywords: {e}")
                failures = [{"searchTerm": ent.entity_text, "error": str(e), "rawError": e.details} for ent, _ in to_negate]
            else:
                failed = {err.index: err for err in status.errors}
                failures = [
                    {"searchTerm": to_negate[i][0].entity_text, "error": err.message, "code": err.code}
                    for i, err in failed.items() if 0 <= i < len(to_negate)
                ]
                negated = [ent for i, ent in enumerate(to_negate) if i not in failed]

        actions = CampaignActions()
        acted_on = []
        for entity, match_type in negated:
            actions.add_negative(entity.campaign_id, entity.campaign_name, {
                "searchTerm": entity.entity_text,
                "adGroupId": entity.ad_group_id,
                "asin": entity.source_asin,
                "matchType": match_type,
            })
            acted_on.append(ActedOn(ai_negation_key(entity)))

        summary = f"AI analysis complete. Negated {len(negated)} irrelevant search term(s)."
        if unclassified:
            summary += f" {len(unclassified)} term(s) could not be classified and were left alone."
        details = {
            "actions_by_campaign": actions.to_dict(),
            "data_date_range": date_range,
            "relevant_count": relevant_count,
        }
        if unclassified:
            details["unclassified"] = unclassified
        if failures:
            details["failures"] = failures
        return EvaluationResult(
            summary=summary,
            details=details,
            acted_on=acted_on,
            action_count=len(negated),
            failure_count=len(failures),
        )
