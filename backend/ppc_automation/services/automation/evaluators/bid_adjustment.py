"""
Bid Adjustment evaluator.

Per entity: not-yet-priced → priced (explicit bid, or the ad group's default
bid when the keyword/target inherits it) → matched (first condition group) →
updated (bulk PUT). Windows end at today in the reporting timezone.

Sponsored Brands and Sponsored Display rules run the same pipeline against
their own endpoints. Sponsored Display has no keywords and no ad group
default bid, so its targets without an explicit bid are left alone.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Optional

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient, MultiStatus
from ppc_automation.services.automation.data_fetcher import Entity, PerformanceSnapshot
from ppc_automation.services.automation.evaluators.base import (
    ActedOn, CampaignActions, EvaluationResult, RuleContext,
)
from ppc_automation.services.automation.metrics import first_matching_group, windowed_metric_for
from ppc_automation.services.automation.rules import BidAction, BidAdjustmentConfig
from ppc_automation.utils import money

logger = logging.getLogger(__name__)

PLATFORM_MIN_BID = 0.02
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class BidEndpoints:
    """AmazonAdsClient method names for one ad type; None where the ad type lacks the resource."""
    list_keywords: Optional[str]
    update_keywords: Optional[str]
    list_targets: str
    update_targets: str
    list_ad_groups: Optional[str]
    # SB updates must name the keyword/target's ad group and campaign
    full_update: bool = False


ENDPOINTS = {
    "SP": BidEndpoints("list_keywords", "update_keyword_bids", "list_targets", "update_target_bids", "list_ad_groups"),
    "SB": BidEndpoints(
        "list_sb_keywords", "update_sb_keyword_bids", "list_sb_targets", "update_sb_target_bids",
        "list_sb_ad_groups", full_update=True,
    ),
    "SD": BidEndpoints(None, None, "list_sd_targets", "update_sd_target_bids", None),
}


@dataclass
class BidDecision:
    new_bid: Optional[float]
    reason: str = ""
    skipped: bool = False


def _round_cents(value: float, rounding: str) -> float:
    # round(…, 6) drops float noise such as 0.55000000000000004 before directional rounding
    return float(Decimal(repr(round(value, 6))).quantize(_CENT, rounding=rounding))


def compute_new_bid(current_bid: float, action: BidAction) -> BidDecision:
    """
    Apply the action, round toward the intended direction (floor for decreases,
    ceil for increases), enforce the 0.02 platform floor, then minBid/maxBid.
    A decrease that minBid would turn into an increase is skipped; an unchanged
    bid yields new_bid=None.
    """
    value = action.value
    if action.type == "increaseBidPercent":
        raw = current_bid * (1 + value / 100)
    elif action.type == "decreaseBidPercent":
        raw = current_bid * (1 - value / 100)
    elif action.type == "increaseBidAmount":
        raw = current_bid + value
    else:
        raw = current_bid - value

    decreasing = raw < current_bid
    bid = _round_cents(raw, ROUND_FLOOR if decreasing else ROUND_CEILING)
    bid = max(PLATFORM_MIN_BID, bid)

    reason = ""
    if action.min_bid is not None and bid < action.min_bid:
        bid = action.min_bid
        reason = f"hit Min Bid of {money(action.min_bid)}"
    if action.max_bid is not None and bid > action.max_bid:
        bid = action.max_bid
        reason = f"hit Max Bid of {money(action.max_bid)}"

    if decreasing and bid > current_bid:
        return BidDecision(None, f"current bid {money(current_bid)} is below Min Bid", skipped=True)

    bid = round(bid, 2)
    if bid == round(current_bid, 2):
        return BidDecision(None)
    return BidDecision(bid, reason)


class BidAdjustmentEvaluator:
    def __init__(self, ads: AmazonAdsClient):
        self.ads = ads

    async def _price_entities(self, entities: list[Entity], api: BidEndpoints) -> None:
        """Fill current_bid from explicit bids, falling back to the ad group default bid."""
        keywords = {e.entity_id: e for e in entities if e.entity_type == "keyword"}
        targets = {e.entity_id: e for e in entities if e.entity_type == "target"}
        inheriting: list[Entity] = []

        if keywords:
            found = await getattr(self.ads, api.list_keywords)(list(keywords))
            inheriting += self._apply_bids(keywords, found.items, "keywordId")
        if targets:
            found = await getattr(self.ads, api.list_targets)(list(targets))
            inheriting += self._apply_bids(targets, found.items, "targetId")

        if not inheriting:
            return
        if api.list_ad_groups is None:
            logger.info(f"[Bid Adjustment] Skipping {len(inheriting)} entity/entities without an explicit bid")
            return
        ad_group_ids = sorted({e.ad_group_id for e in inheriting if e.ad_group_id})
        logger.info(f"[Bid Adjustment] {len(inheriting)} entity/entities inherit bids; "
                    f"fetching default bids for {len(ad_group_ids)} ad group(s)")
        if not ad_group_ids:
            return
        groups = await getattr(self.ads, api.list_ad_groups)(ad_group_ids)
        default_bids = {
            str(ag.get("adGroupId")): ag.get("defaultBid")
            for ag in groups.items
            if isinstance(ag.get("defaultBid"), (int, float))
        }
        for entity in inheriting:
            bid = default_bids.get(entity.ad_group_id or "")
            if bid is None:
                logger.warning(f"[Bid Adjustment] No default bid for ad group {entity.ad_group_id} "
                               f"(entity {entity.entity_id})")
                continue
            entity.current_bid = float(bid)

    @staticmethod
    def _apply_bids(by_id: dict[str, Entity], records: list[dict], id_field: str) -> list[Entity]:
        """Set explicit bids; return entities with no explicit bid (missing, or lookup chunk failed)."""
        priced = set()
        for record in records:
            entity = by_id.get(str(record.get(id_field)))
            if entity is not None and isinstance(record.get("bid"), (int, float)):
                entity.current_bid = float(record["bid"])
                priced.add(entity.entity_id)
        return [e for eid, e in by_id.items() if eid not in priced]

    @staticmethod
    def _update_payload(entity: Entity, new_bid: float, id_field: str, api: BidEndpoints) -> dict:
        payload = {id_field: entity.entity_id, "bid": new_bid}
        if api.full_update:
            payload["adGroupId"] = entity.ad_group_id
            payload["campaignId"] = entity.campaign_id
        return payload

    async def _submit(
        self, updates: list[dict], entities: list[Entity], kind: str, method: str,
    ) -> tuple[set[int], list[dict]]:
        """Bulk update; returns (indexes accepted, failure records)."""
        if not updates:
            return set(), []
        try:
            status: MultiStatus = await getattr(self.ads, method)(updates)
        except AdsApiError as e:
            logger.error(f"[Bid Adjustment] Failed to apply {kind} bid updates: {e}")
            return set(), [
                {"entityType": kind, "entityId": ent.entity_id, "error": str(e), "rawError": e.details}
                for ent in entities
            ]
        failed = {err.index: err for err in status.errors}
        failures = [
            {"entityType": kind, "entityId": entities[i].entity_id, "error": err.message, "code": err.code}
            for i, err in failed.items() if 0 <= i < len(entities)
        ]
        accepted = {i for i in range(len(updates)) if i not in failed}
        return accepted, failures

    async def evaluate(
        self, ctx: RuleContext, config: BidAdjustmentConfig, snapshot: PerformanceSnapshot,
    ) -> EvaluationResult:
        api = ENDPOINTS[ctx.ad_type]
        kinds = ("target",) if api.list_keywords is None else ("keyword", "target")
        entities = [e for e in snapshot.entities.values() if e.entity_type in kinds]
        await self._price_entities(entities, api)

        pending: dict[str, list[tuple[Entity, dict]]] = {"keyword": [], "target": []}
        skipped_min_bid = 0
        for entity in entities:
            if ctx.throttle.is_throttled(entity.entity_id, ctx.now):
                continue
            if entity.current_bid is None:
                continue
            match = first_matching_group(
                config.condition_groups, windowed_metric_for(entity.daily_data, ctx.today),
            )
            if match is None:
                continue
            group, trail = match
            decision = compute_new_bid(entity.current_bid, group.action)
            if decision.skipped:
                skipped_min_bid += 1
                logger.info(f"[Bid Adjustment] Skipped {entity.entity_type} {entity.entity_id}: {decision.reason}, "
                            f"rule intended a decrease")
                continue
            if decision.new_bid is None:
                continue
            change = {
                "entityType": entity.entity_type,
                "entityId": entity.entity_id,
                "entityText": entity.entity_text,
                "oldBid": entity.current_bid,
                "newBid": decision.new_bid,
                "reason": decision.reason,
                "triggeringMetrics": trail,
            }
            pending[entity.entity_type].append((entity, change))

        actions = CampaignActions()
        acted_on: list[ActedOn] = []
        failures: list[dict] = []
        for kind, id_field, method in (
            ("keyword", "keywordId", api.update_keywords),
            ("target", "targetId", api.update_targets),
        ):
            batch = pending[kind]
            if not batch:
                continue
            updates = [self._update_payload(ent, change["newBid"], id_field, api) for ent, change in batch]
            accepted, kind_failures = await self._submit(updates, [ent for ent, _ in batch], kind, method)
            failures += kind_failures
            for i in sorted(accepted):
                ent, change = batch[i]
                actions.add_change(ent.campaign_id, ent.campaign_name, change)
                acted_on.append(ActedOn(ent.entity_id))

        label = "" if ctx.ad_type == "SP" else f"{ctx.ad_type} "
        summary = f"Adjusted bids for {len(acted_on)} {label}target(s)/keyword(s)."
        if failures:
            summary += f" {len(failures)} update(s) rejected."
        details = {"actions_by_campaign": actions.to_dict()}
        if failures:
            details["failures"] = failures
        if skipped_min_bid:
            details["skipped_min_bid"] = skipped_min_bid
        return EvaluationResult(
            summary=summary,
            details=details,
            acted_on=acted_on,
            action_count=len(acted_on),
            failure_count=len(failures),
        )
