"""
Rule Scheduler — decides which rules are due, runs them one at a time, and
records the outcome of every run.

One RuleScheduler owns the in-flight flag: a tick (or manual run) arriving
while another is in progress is skipped, never queued. Each rule runs in its
own session; `last_run_at` advances whether the run succeeded or not.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ppc_automation.ads_client import AmazonAdsClient, create_ads_client
from ppc_automation.config import MissingCredentialsError, Settings, get_settings
from ppc_automation.models import AdType, AutomationRule, RunStatus
from ppc_automation.services.ai_service import RelevanceClassifier, create_relevance_classifier
from ppc_automation.services.automation.audit import log_action
from ppc_automation.services.automation.budget_reset import reset_daily_budgets
from ppc_automation.services.automation.data_fetcher import PerformanceDataFetcher, PerformanceSnapshot
from ppc_automation.services.automation.evaluators.ai_negation import AiNegationEvaluator, report_date_for
from ppc_automation.services.automation.evaluators.base import EvaluationResult, RuleContext
from ppc_automation.services.automation.evaluators.bid_adjustment import BidAdjustmentEvaluator
from ppc_automation.services.automation.evaluators.budget_acceleration import BudgetAccelerationEvaluator
from ppc_automation.services.automation.evaluators.harvesting import HarvestingEvaluator
from ppc_automation.services.automation.evaluators.price_adjustment import PriceAdjustmentEvaluator
from ppc_automation.services.automation.evaluators.search_term_automation import (
    REPORT_LAG_DAYS, SearchTermAutomationEvaluator,
)
from ppc_automation.services.automation.rules import (
    AiNegationConfig, BidAdjustmentConfig, BudgetAccelerationConfig, Frequency, HarvestingConfig,
    PriceAdjustmentConfig, RuleConfig, RuleConfigError, SearchTermAutomationConfig, parse_rule_config,
)
from ppc_automation.services.automation.throttle import load_throttle, save_throttle
from ppc_automation.sp_api_client import SellingPartnerClient, create_sp_api_client
from ppc_automation.utils import local_today, to_local, utcnow

logger = logging.getLogger(__name__)


class SchedulerBusyError(Exception):
    """A tick or manual run is already in progress."""


@dataclass
class RuleRunReport:
    rule_id: int
    rule_name: str
    status: RunStatus
    summary: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "status": self.status.value,
            "summary": self.summary,
            "details": self.details,
        }


# ── Due check ─────────────────────────────────────────────────────────

def is_rule_due(last_run_at: Optional[datetime], frequency: Frequency, now: datetime, tz_name: str) -> bool:
    """
    Minute/hour (and plain day) frequencies: due once `frequency` has elapsed
    since the last run. Daily with a start time: due at or after that local
    time, at most once per local calendar day (every `value` days).
    """
    if frequency.is_daily_at_time:
        local_now = to_local(now, tz_name)
        hour, minute = (int(p) for p in frequency.start_time.split(":"))
        if (local_now.hour, local_now.minute) < (hour, minute):
            return False
        if last_run_at is None:
            return True
        last_local_day = to_local(last_run_at, tz_name).date()
        return (local_now.date() - last_local_day).days >= frequency.value
    if last_run_at is None:
        return True
    return now - last_run_at >= frequency.interval


def _frequency_of(rule: AutomationRule) -> Frequency:
    try:
        return parse_rule_config(rule.rule_type, rule.config).frequency
    except RuleConfigError:
        # still due on the default cadence so the run can log the config error
        return Frequency()


# ── Scheduler ─────────────────────────────────────────────────────────

class RuleScheduler:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        ads_client_factory: Callable[[Optional[str]], AmazonAdsClient] = create_ads_client,
        sp_client_factory: Callable[[], SellingPartnerClient] = create_sp_api_client,
        classifier_factory: Callable[[], RelevanceClassifier] = create_relevance_classifier,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if session_factory is None:
            from ppc_automation.database import async_session
            session_factory = async_session
        self.session_factory = session_factory
        self.ads_client_factory = ads_client_factory
        self.sp_client_factory = sp_client_factory
        self.classifier_factory = classifier_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self._sleep = sleep
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def today(self, now: Optional[datetime] = None) -> date:
        return local_today(self.settings.automation_timezone, now or self.clock())

    # ── Entry points ──────────────────────────────────────────────────

    async def tick(self) -> Optional[list[RuleRunReport]]:
        """Run every due active rule sequentially. Returns None when skipped."""
        if self._running:
            logger.warning("[RulesEngine] Previous check is still running. Skipping this tick.")
            return None
        self._running = True
        try:
            now = self.clock()
            async with self.session_factory() as db:
                result = await db.execute(select(AutomationRule).where(AutomationRule.is_active.is_(True)))
                rules = result.scalars().all()
                due = [
                    (rule.id, rule.name) for rule in rules
                    if is_rule_due(rule.last_run_at, _frequency_of(rule), now, self.settings.automation_timezone)
                ]
            if not due:
                logger.info("[RulesEngine] No rules are due to run at this time.")
                return []
            logger.info(f"[RulesEngine] Found {len(due)} rule(s) to run: {', '.join(name for _, name in due)}")
            reports = []
            for rule_id, _ in due:
                reports.append(await self._process_rule(rule_id))
            return reports
        finally:
            self._running = False
            logger.info("[RulesEngine] Tick finished.")

    async def run_rule_now(self, rule_id: int) -> RuleRunReport:
        """Manual trigger; same lock and flow as a tick. Raises LookupError for unknown rules."""
        if self._running:
            raise SchedulerBusyError("Automation engine is busy; try again shortly.")
        self._running = True
        try:
            return await self._process_rule(rule_id)
        finally:
            self._running = False

    async def reset_budgets(self) -> dict:
        """Restore today's accelerated budgets."""
        now = self.clock()
        today = self.today(now)
        logger.info(f"[Budget Reset] Running daily budget reset for {today.isoformat()}.")
        async with self.session_factory() as db:
            result = await reset_daily_budgets(db, today, self.ads_client_factory, now)
            await db.commit()
        return result

    # ── Per-rule flow ─────────────────────────────────────────────────

    async def _process_rule(self, rule_id: int) -> RuleRunReport:
        async with self.session_factory() as db:
            rule = await db.get(AutomationRule, rule_id)
            if rule is None:
                raise LookupError(f"Automation rule {rule_id} not found")
            rule_name = rule.name
            now = self.clock()
            logger.info(f"[RulesEngine] Processing rule \"{rule_name}\" (ID: {rule_id}).")

            status = RunStatus.FAILURE
            summary = "Rule processing was interrupted."
            details: dict = {}
            try:
                result = await self._evaluate(db, rule, now)
                status = RunStatus.SUCCESS if result.action_count > 0 else RunStatus.NO_ACTION
                summary, details = result.summary, result.details
                await db.commit()
            except RuleConfigError as e:
                await db.rollback()
                summary, details = "Rule configuration is invalid.", {"error": str(e)}
            except MissingCredentialsError as e:
                await db.rollback()
                status, summary, details = RunStatus.NO_ACTION, f"Rule skipped: {e}", {"error": str(e)}
            except Exception as e:
                logger.exception(f"[RulesEngine] Error processing rule {rule_id}")
                await db.rollback()
                summary = "Rule processing failed due to an error."
                details = {"error": str(e), "details": getattr(e, "details", None)}
            finally:
                await log_action(db, rule_id, status, summary, details)
                await db.execute(
                    update(AutomationRule).where(AutomationRule.id == rule_id).values(last_run_at=now)
                )
                await db.commit()
        return RuleRunReport(rule_id, rule_name, status, summary, details)

    async def _evaluate(self, db: AsyncSession, rule: AutomationRule, now: datetime) -> EvaluationResult:
        config = parse_rule_config(rule.rule_type, rule.config)
        tracker = await load_throttle(db, rule.id, now)
        ctx = RuleContext(
            rule_id=rule.id,
            rule_name=rule.name,
            profile_id=rule.profile_id,
            campaign_ids=rule.campaign_ids,
            now=now,
            today=self.today(now),
            cooldown=config.effective_cooldown,
            throttle=tracker,
            ad_type=(rule.ad_type or AdType.SP.value).upper(),
        )
        if ctx.ad_type not in {t.value for t in AdType}:
            raise RuleConfigError(f"Unknown ad type {ctx.ad_type!r}")
        if ctx.ad_type != AdType.SP.value and not isinstance(config, BidAdjustmentConfig):
            raise RuleConfigError(f"{rule.rule_type} rules only support Sponsored Products, not {ctx.ad_type}")

        if isinstance(config, PriceAdjustmentConfig):
            evaluator = PriceAdjustmentEvaluator(
                self.sp_client_factory(),
                sku_delay=self.settings.price_sku_delay_seconds,
                not_found_retry_delay=self.settings.listing_not_found_retry_seconds,
                sleep=self._sleep,
            )
            return await evaluator.evaluate(ctx, config)

        if not ctx.campaign_ids:
            logger.info(f"[RulesEngine] Skipping rule \"{rule.name}\": empty campaign scope.")
            return EvaluationResult(summary="Rule skipped: no campaigns in scope.")

        ads = self.ads_client_factory(rule.profile_id)
        snapshot = await self._fetch(PerformanceDataFetcher(db), config, ctx)
        if not snapshot.entities and not isinstance(config, AiNegationConfig):
            return EvaluationResult(
                summary="No performance data found for the specified scope.",
                details={"actions_by_campaign": {}, "data_date_range": None},
            )

        match config:
            case BidAdjustmentConfig():
                result = await BidAdjustmentEvaluator(ads).evaluate(ctx, config, snapshot)
            case SearchTermAutomationConfig():
                result = await SearchTermAutomationEvaluator(ads).evaluate(ctx, config, snapshot)
            case HarvestingConfig():
                result = await HarvestingEvaluator(ads, self._optional_sp_client()).evaluate(ctx, config, snapshot)
            case BudgetAccelerationConfig():
                result = await BudgetAccelerationEvaluator(ads, db).evaluate(ctx, config, snapshot)
            case AiNegationConfig():
                evaluator = AiNegationEvaluator(ads, self.classifier_factory(), self._optional_sp_client())
                result = await evaluator.evaluate(ctx, config, snapshot)

        if snapshot.date_range is not None:
            result.details.setdefault("data_date_range", snapshot.date_range)
        if ctx.cooldown > timedelta(0):
            for acted in result.acted_on:
                tracker.mark(acted.key, now, ctx.cooldown, acted.details)
        await save_throttle(db, rule.id, tracker)
        return result

    async def _fetch(
        self, fetcher: PerformanceDataFetcher, config: RuleConfig, ctx: RuleContext,
    ) -> PerformanceSnapshot:
        lookback = timedelta(days=config.lookback_days)
        match config:
            case BidAdjustmentConfig():
                return await fetcher.fetch_keyword_performance(
                    ctx.campaign_ids, ctx.today - lookback, ctx.today, ad_type=ctx.ad_type,
                )
            case SearchTermAutomationConfig() | HarvestingConfig():
                reference = ctx.today - timedelta(days=REPORT_LAG_DAYS)
                return await fetcher.fetch_search_term_performance(ctx.campaign_ids, reference - lookback, reference)
            case BudgetAccelerationConfig():
                return await fetcher.fetch_campaign_performance(
                    ctx.campaign_ids, ctx.today, ctx.today + timedelta(days=1),
                )
            case AiNegationConfig():
                report_date = report_date_for(ctx.today)
                return await fetcher.fetch_search_term_performance(
                    ctx.campaign_ids, report_date, report_date + timedelta(days=1), attribution="1d",
                )
        raise RuleConfigError(f"No performance source for {type(config).__name__}")

    def _optional_sp_client(self) -> Optional[SellingPartnerClient]:
        try:
            return self.sp_client_factory()
        except MissingCredentialsError as e:
            logger.warning(f"[RulesEngine] {e} Steps that need the Selling Partner API will fail.")
            return None
