"""
Price Adjustment evaluator: sawtooth pricing per configured SKU.

Each run steps the listing price up by `priceStep`; once the next step would
reach `priceLimit` the price drops 0.50 below the highest rung that could still
step (limit - step), or below the current price if that is lower. No
performance data is involved.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ppc_automation.services.automation.evaluators.base import EvaluationResult, RuleContext
from ppc_automation.services.automation.rules import PriceAdjustmentConfig
from ppc_automation.sp_api_client import ListingNotFoundError, SellingPartnerClient, SellingPartnerError

logger = logging.getLogger(__name__)

SAWTOOTH_DROP = 0.5


def next_sawtooth_price(price: float, step: float, limit: float) -> float:
    potential = price + step
    if potential >= limit:
        return round(min(price, limit - step) - SAWTOOTH_DROP, 2)
    return round(potential, 2)


class PriceAdjustmentEvaluator:
    def __init__(
        self,
        sp: SellingPartnerClient,
        sku_delay: float = 1.5,
        not_found_retry_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sp = sp
        self.sku_delay = sku_delay
        self.not_found_retry_delay = not_found_retry_delay
        self._sleep = sleep

    async def _listing_info(self, sku: str) -> tuple[Optional[float], str]:
        """Price lookup with a single delayed retry when the listing is briefly NOT_FOUND."""
        try:
            return await self.sp.get_listing_info_by_sku(sku)
        except ListingNotFoundError:
            logger.warning(f"[Price Evaluator] SKU {sku} not found. Retrying once in {self.not_found_retry_delay:.0f}s.")
            await self._sleep(self.not_found_retry_delay)
            return await self.sp.get_listing_info_by_sku(sku)

    async def evaluate(self, ctx: RuleContext, config: PriceAdjustmentConfig, snapshot=None) -> EvaluationResult:
        if not config.skus:
            return EvaluationResult(summary="No SKUs configured for this rule.")

        changes: list[dict] = []
        errors: list[dict] = []
        logger.info(f"[Price Evaluator] Starting price check for {len(config.skus)} SKU(s).")

        for i, sku in enumerate(config.skus):
            if i:
                await self._sleep(self.sku_delay)
            try:
                price, seller_id = await self._listing_info(sku)
                if price is None:
                    logger.warning(f"[Price Evaluator] Could not retrieve current price for SKU {sku}. Skipping.")
                    errors.append({"sku": sku, "reason": "Could not retrieve current price."})
                    continue

                new_price = next_sawtooth_price(price, config.price_step, config.price_limit)
                if new_price <= 0 or new_price == price:
                    logger.info(f"[Price Evaluator] No price change needed for SKU {sku}. "
                                f"Current: {price}, calculated: {new_price}")
                    continue

                logger.info(f"[Price Evaluator] Updating SKU {sku}: {price} -> {new_price}")
                await self.sp.update_price(sku, new_price, seller_id)
                changes.append({"sku": sku, "oldPrice": price, "newPrice": new_price})
            except SellingPartnerError as e:
                logger.error(f"[Price Evaluator] Error processing SKU {sku}: {e}")
                errors.append({"sku": sku, "reason": str(e)})

        summary = ""
        if changes:
            summary += f"Successfully updated price for {len(changes)} SKU(s). "
        if errors:
            summary += f"Failed to process {len(errors)} SKU(s)."
        return EvaluationResult(
            summary=summary.strip() or "No price changes were necessary.",
            details={"changes": changes, "errors": errors},
            action_count=len(changes),
            failure_count=len(errors),
        )
