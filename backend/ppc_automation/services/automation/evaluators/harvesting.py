"""
Search-Term Harvesting evaluator.

Winning search terms are promoted into their own keyword/product target.
Creating a new destination is a linear sequence of platform calls:

    PENDING → CAMPAIGN_CREATED → AD_GROUP_CREATED → SKU_RESOLVED → AD_CREATED → TARGETED

Adding to an existing campaign starts at AD_CREATED. A failing step stops that
term's flow in FAILED with the last reached state recorded; objects created
before the failure are reported, not rolled back.

Source negation is keyed separately from creation. A term is negated in its
source ad group only once its harvested placement exists: created in this run
or already harvested within the cooldown. A failed creation leaves the source
term running.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient, MultiStatus
from ppc_automation.config import MissingCredentialsError
from ppc_automation.services.automation.data_fetcher import Entity, PerformanceSnapshot
from ppc_automation.services.automation.evaluators.base import (
    ActedOn, CampaignActions, EvaluationResult, RuleContext,
)
from ppc_automation.services.automation.evaluators.bid_adjustment import PLATFORM_MIN_BID
from ppc_automation.services.automation.metrics import first_matching_group, windowed_metric_for
from ppc_automation.services.automation.rules import BidOption, HarvestAction, HarvestingConfig
from ppc_automation.sp_api_client import SellingPartnerClient, SellingPartnerError
from ppc_automation.utils import looks_like_asin

logger = logging.getLogger(__name__)

REPORT_LAG_DAYS = 2
CAMPAIGN_NAME_LIMIT = 128
AD_GROUP_NAME_LIMIT = 255
DEFAULT_CPC = 0.50

_UNSAFE_NAME_CHARS = re.compile(r'[<>\\/|?*:"^]')


class HarvestState(str, enum.Enum):
    PENDING = "PENDING"
    CAMPAIGN_CREATED = "CAMPAIGN_CREATED"
    AD_GROUP_CREATED = "AD_GROUP_CREATED"
    SKU_RESOLVED = "SKU_RESOLVED"
    AD_CREATED = "AD_CREATED"
    TARGETED = "TARGETED"
    FAILED = "FAILED"


class HarvestStepError(Exception):
    """A harvest step failed; `state` is the last state reached before it."""

    def __init__(self, state: HarvestState, step: str, message: str, details: Any = None):
        super().__init__(message)
        self.state = state
        self.step = step
        self.details = details


@dataclass
class HarvestOutcome:
    search_term: str
    source_asin: Optional[str]
    state: HarvestState = HarvestState.PENDING
    reached: HarvestState = HarvestState.PENDING
    campaign_id: Optional[str] = None
    ad_group_id: Optional[str] = None
    sku: Optional[str] = None
    bid: Optional[float] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    raw_error: Any = None

    @property
    def succeeded(self) -> bool:
        return self.state == HarvestState.TARGETED

    def created_ids(self) -> dict:
        return {k: v for k, v in (("campaignId", self.campaign_id), ("adGroupId", self.ad_group_id)) if v}


# ── Naming / bidding ──────────────────────────────────────────────────

def sanitize_for_campaign_name(name: Optional[str]) -> str:
    if not name:
        return ""
    return _UNSAFE_NAME_CHARS.sub("", name).strip()


def harvest_campaign_name(asin: Optional[str], term: str, match_type: str) -> str:
    """'[H] - {asin} - {term} - {matchType}', truncating the term with '...' to fit."""
    term = sanitize_for_campaign_name(term)
    prefix, suffix = f"[H] - {asin or ''} - ", f" - {match_type}"
    name = f"{prefix}{term}{suffix}"
    if len(name) <= CAMPAIGN_NAME_LIMIT:
        return name
    room = max(0, CAMPAIGN_NAME_LIMIT - len(prefix) - len(suffix) - 3)
    return f"{prefix}{term[:room].rstrip()}...{suffix}"


def harvest_bid(option: BidOption, entity: Entity) -> float:
    if option.type == "CUSTOM_BID" and option.value is not None:
        bid = option.value
    else:
        clicks = sum(d.clicks for d in entity.daily_data)
        spend = sum(d.spend for d in entity.daily_data)
        avg_cpc = spend / clicks if clicks > 0 else DEFAULT_CPC
        bid = avg_cpc * (option.value if option.value is not None else 1.0)
        if option.max_bid is not None:
            bid = min(bid, option.max_bid)
    return round(max(PLATFORM_MIN_BID, bid), 2)


# ── Creation flow ─────────────────────────────────────────────────────

class HarvestFlow:
    """Runs one term through the creation states against the platform."""

    def __init__(
        self,
        ads: AmazonAdsClient,
        sp: Optional[SellingPartnerClient],
        entity: Entity,
        action: HarvestAction,
        start_date: str,
    ):
        self.ads = ads
        self.sp = sp
        self.entity = entity
        self.action = action
        self.start_date = start_date
        self.is_asin = looks_like_asin(entity.entity_text)
        self.outcome = HarvestOutcome(search_term=entity.entity_text, source_asin=entity.source_asin)

    def _advance(self, state: HarvestState) -> None:
        self.outcome.state = self.outcome.reached = state

    async def _call(self, step: str, coro):
        try:
            return await coro
        except (AdsApiError, SellingPartnerError) as e:
            raise HarvestStepError(self.outcome.reached, step, str(e), e.details) from e
        except MissingCredentialsError as e:
            raise HarvestStepError(self.outcome.reached, step, str(e)) from e

    def _created_id(self, step: str, status: MultiStatus, what: str) -> str:
        new_id = status.first_id
        if not new_id:
            errors = status.error_summary()
            message = errors[0]["message"] if errors and errors[0].get("message") else f"{what} creation failed."
            raise HarvestStepError(self.outcome.reached, step, message, errors or status.raw)
        return new_id

    async def _create_campaign(self) -> None:
        name = harvest_campaign_name(self.entity.source_asin, self.entity.entity_text, self.action.match_type)
        status = await self._call("create_campaign", self.ads.create_campaigns([{
            "name": name,
            "targetingType": "MANUAL",
            "state": "ENABLED",
            "budget": {"budget": float(self.action.new_campaign_budget), "budgetType": "DAILY"},
            "startDate": self.start_date,
        }]))
        self.outcome.campaign_id = self._created_id("create_campaign", status, "Campaign")
        self._advance(HarvestState.CAMPAIGN_CREATED)

    async def _create_ad_group(self) -> None:
        name = sanitize_for_campaign_name(self.entity.entity_text)[:AD_GROUP_NAME_LIMIT] or self.entity.entity_text
        status = await self._call("create_ad_group", self.ads.create_ad_groups([{
            "name": name,
            "campaignId": self.outcome.campaign_id,
            "state": "ENABLED",
            "defaultBid": self.outcome.bid,
        }]))
        self.outcome.ad_group_id = self._created_id("create_ad_group", status, "Ad group")
        self._advance(HarvestState.AD_GROUP_CREATED)

    async def _resolve_sku(self) -> None:
        asin = self.entity.source_asin
        if not asin:
            raise HarvestStepError(self.outcome.reached, "resolve_sku", "Search term has no advertised ASIN.")
        if self.sp is None:
            raise HarvestStepError(self.outcome.reached, "resolve_sku", "Selling Partner API is not configured.")
        sku = await self._call("resolve_sku", self.sp.get_sku_by_asin(asin))
        if not sku:
            raise HarvestStepError(self.outcome.reached, "resolve_sku", f"Could not find a SKU for ASIN {asin}.")
        self.outcome.sku = sku
        self._advance(HarvestState.SKU_RESOLVED)

    async def _create_product_ad(self) -> None:
        status = await self._call("create_product_ad", self.ads.create_product_ads([{
            "campaignId": self.outcome.campaign_id,
            "adGroupId": self.outcome.ad_group_id,
            "state": "ENABLED",
            "sku": self.outcome.sku,
        }]))
        self._created_id("create_product_ad", status, "Product ad")
        self._advance(HarvestState.AD_CREATED)

    async def _create_target(self) -> None:
        base = {
            "campaignId": self.outcome.campaign_id,
            "adGroupId": self.outcome.ad_group_id,
            "state": "ENABLED",
            "bid": self.outcome.bid,
        }
        if self.is_asin:
            status = await self._call("create_target", self.ads.create_targets([{
                **base,
                "expression": [{"type": "ASIN_SAME_AS", "value": self.entity.entity_text.upper()}],
                "expressionType": "MANUAL",
            }]))
        else:
            status = await self._call("create_keyword", self.ads.create_keywords([{
                **base,
                "keywordText": self.entity.entity_text,
                "matchType": self.action.match_type,
            }]))
        self._created_id(
            "create_target" if self.is_asin else "create_keyword", status, "Target" if self.is_asin else "Keyword",
        )
        self._advance(HarvestState.TARGETED)

    async def run(self) -> HarvestOutcome:
        self.outcome.bid = harvest_bid(self.action.bid_option, self.entity)
        try:
            if self.action.type == "CREATE_NEW_CAMPAIGN":
                await self._create_campaign()
                await self._create_ad_group()
                await self._resolve_sku()
                await self._create_product_ad()
            else:
                self.outcome.campaign_id = self.action.target_campaign_id
                self.outcome.ad_group_id = self.action.target_ad_group_id
                self._advance(HarvestState.AD_CREATED)
            await self._create_target()
        except HarvestStepError as e:
            self.outcome.state = HarvestState.FAILED
            self.outcome.error = str(e)
            self.outcome.failed_step = e.step
            self.outcome.raw_error = e.details
            logger.error(f"[Harvesting] \"{self.entity.entity_text}\" failed at {e.step} "
                         f"after {e.state.value}: {e}")
        return self.outcome


# ── Evaluator ─────────────────────────────────────────────────────────

def harvest_key(entity: Entity) -> str:
    return f"{entity.entity_text}::{entity.source_asin or ''}"


def source_negation_key(entity: Entity) -> str:
    return f"negate::{entity.entity_text}::{entity.ad_group_id or ''}"


@dataclass
class _Tally:
    created: int = 0
    skipped: int = 0
    negated: int = 0
    failures: list[dict] = field(default_factory=list)

    def summary(self) -> str:
        parts = []
        if self.created:
            parts.append(f"Harvested {self.created} new term(s)")
        if self.skipped:
            parts.append(f"skipped {self.skipped} already-harvested term(s)")
        if self.negated:
            parts.append(f"negated {self.negated} source term(s)")
        if self.failures:
            parts.append(f"failed on {len(self.failures)} term(s)")
        if not parts:
            return "No new search terms met the criteria for harvesting."
        return ", ".join(parts) + "."


class HarvestingEvaluator:
    def __init__(self, ads: AmazonAdsClient, sp: Optional[SellingPartnerClient] = None):
        self.ads = ads
        self.sp = sp

    async def _already_harvested(self, ctx: RuleContext, key: str) -> bool:
        """Cooldown check that heals itself when the harvested campaign was deleted."""
        if not ctx.throttle.is_throttled(key, ctx.now):
            return False
        mark = ctx.throttle.get(key)
        created_campaign_id = (mark.details or {}).get("createdCampaignId") if mark else None
        if await self.ads.campaign_exists(created_campaign_id):
            logger.info(f"[Harvesting] Campaign {created_campaign_id} for \"{key}\" still exists. Skipping harvest.")
            return True
        logger.info(f"[Harvesting] Campaign {created_campaign_id} for \"{key}\" was deleted. "
                    f"Healing throttle and harvesting again.")
        ctx.throttle.clear(key)
        return False

    async def _negate_source(self, entity: Entity) -> None:
        base = {"campaignId": entity.campaign_id, "adGroupId": entity.ad_group_id, "state": "ENABLED"}
        if looks_like_asin(entity.entity_text):
            status = await self.ads.create_negative_targets([{
                **base, "expression": [{"type": "ASIN_SAME_AS", "value": entity.entity_text.upper()}],
            }])
        else:
            status = await self.ads.create_negative_keywords([{
                **base, "keywordText": entity.entity_text, "matchType": "NEGATIVE_EXACT",
            }])
        if status.errors:
            err = status.errors[0]
            raise AdsApiError(400, err.message or "Source negation rejected.", status.error_summary())

    async def evaluate(
        self, ctx: RuleContext, config: HarvestingConfig, snapshot: PerformanceSnapshot,
    ) -> EvaluationResult:
        reference_date = ctx.today - timedelta(days=REPORT_LAG_DAYS)
        tally = _Tally()
        actions = CampaignActions()
        acted_on: list[ActedOn] = []
        harvested_this_run: set[str] = set()
        placed_this_run: set[str] = set()
        negated_this_run: set[str] = set()

        for entity in snapshot.entities.values():
            match = first_matching_group(
                config.condition_groups, windowed_metric_for(entity.daily_data, reference_date),
            )
            if match is None:
                continue
            group, trail = match
            action: HarvestAction = group.action
            key = harvest_key(entity)
            logger.info(f"[Harvesting] Term \"{entity.entity_text}\" for ASIN {entity.source_asin} is a winner.")

            if key in harvested_this_run:
                logger.info(f"[Harvesting] \"{key}\" already handled in this run.")
            elif await self._already_harvested(ctx, key):
                tally.skipped += 1
                placed_this_run.add(key)
            else:
                harvested_this_run.add(key)
                outcome = await HarvestFlow(self.ads, self.sp, entity, action, ctx.today.isoformat()).run()
                if outcome.succeeded:
                    tally.created += 1
                    placed_this_run.add(key)
                    acted_on.append(ActedOn(key, {"createdCampaignId": outcome.campaign_id}))
                    actions.add_change(entity.campaign_id, entity.campaign_name, {
                        "entityType": "searchTerm",
                        "searchTerm": entity.entity_text,
                        "sourceAsin": entity.source_asin,
                        "action": action.type,
                        "destinationCampaignId": outcome.campaign_id,
                        "destinationAdGroupId": outcome.ad_group_id,
                        "matchType": "ASIN_SAME_AS" if looks_like_asin(entity.entity_text) else action.match_type,
                        "bid": outcome.bid,
                        "triggeringMetrics": trail,
                    })
                else:
                    tally.failures.append({
                        "searchTerm": entity.entity_text,
                        "sourceAsin": entity.source_asin,
                        "error": outcome.error,
                        "rawError": outcome.raw_error,
                        "step": outcome.failed_step,
                        "stateReached": outcome.reached.value,
                        "createdIds": outcome.created_ids() if action.type == "CREATE_NEW_CAMPAIGN" else {},
                    })

            if key not in placed_this_run or not action.auto_negate or not entity.ad_group_id:
                continue
            neg_key = source_negation_key(entity)
            if neg_key in negated_this_run or ctx.throttle.is_throttled(neg_key, ctx.now):
                continue
            negated_this_run.add(neg_key)
            try:
                await self._negate_source(entity)
            except AdsApiError as e:
                logger.error(f"[Harvesting] Failed to negate \"{entity.entity_text}\" in ad group {entity.ad_group_id}: {e}")
                tally.failures.append({
                    "searchTerm": entity.entity_text,
                    "sourceAsin": entity.source_asin,
                    "error": str(e),
                    "rawError": e.details,
                    "step": "negate_source",
                })
                continue
            tally.negated += 1
            acted_on.append(ActedOn(neg_key))
            actions.add_negative(entity.campaign_id, entity.campaign_name, {
                "searchTerm": entity.entity_text,
                "campaignId": entity.campaign_id,
                "adGroupId": entity.ad_group_id,
                "matchType": "NEGATIVE_PRODUCT_TARGET" if looks_like_asin(entity.entity_text) else "NEGATIVE_EXACT",
            })

        return EvaluationResult(
            summary=tally.summary(),
            details={"actions_by_campaign": actions.to_dict(), "failures": tally.failures},
            acted_on=acted_on,
            action_count=tally.created + tally.negated,
            failure_count=len(tally.failures),
        )
