"""
Cron / Scheduled Jobs — endpoints for an external scheduler.

Used when the in-process timer is disabled (AUTOMATION_TICK_SECONDS=0) or as
a backup trigger. Requests must carry the cron secret:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>
"""

import logging
from fastapi import APIRouter, Depends, Header, HTTPException

from ppc_automation.config import get_settings
from ppc_automation.routers.automation import get_scheduler
from ppc_automation.services.automation.scheduler import RuleScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify request came from the cron caller with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


@router.post("/automation/tick")
async def cron_tick(
    _: None = Depends(_require_cron_secret),
    scheduler: RuleScheduler = Depends(get_scheduler),
):
    """
    Run every due automation rule once.
    POST /api/cron/automation/tick
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    reports = await scheduler.tick()
    if reports is None:
        return {"status": "skipped", "reason": "A previous tick is still running."}
    logger.info(f"Cron tick completed: {len(reports)} rule(s) run")
    return {"status": "ok", "rules_run": len(reports), "results": [r.to_dict() for r in reports]}


@router.post("/automation/budget-reset")
async def cron_budget_reset(
    _: None = Depends(_require_cron_secret),
    scheduler: RuleScheduler = Depends(get_scheduler),
):
    """Restore every campaign budget accelerated today."""
    try:
        result = await scheduler.reset_budgets()
    except Exception as e:
        logger.exception("Cron budget reset failed")
        raise HTTPException(500, str(e))
    logger.info(f"Cron budget reset completed: {result}")
    return {"status": "ok", "result": result}
