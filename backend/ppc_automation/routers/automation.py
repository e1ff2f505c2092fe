"""
Automation Router — manual rule runs and the automation audit log.
Both require the API key.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ppc_automation.database import get_db
from ppc_automation.models import AutomationLog
from ppc_automation.services.automation.audit import list_logs
from ppc_automation.services.automation.scheduler import RuleScheduler, SchedulerBusyError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_scheduler(request: Request) -> RuleScheduler:
    """The app-wide scheduler created in the lifespan; HTTP triggers and the timer share its lock."""
    return request.app.state.scheduler


def _serialize_log(entry: AutomationLog) -> dict:
    return {
        "id": entry.id,
        "rule_id": entry.rule_id,
        "status": entry.status,
        "summary": entry.summary,
        "details": entry.details or {},
        "run_at": entry.run_at.isoformat() if entry.run_at else None,
    }


@router.post("/rules/{rule_id}/run")
async def run_rule(rule_id: int, scheduler: RuleScheduler = Depends(get_scheduler)):
    """Run one rule now, regardless of its frequency."""
    try:
        report = await scheduler.run_rule_now(rule_id)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Automation rule {rule_id} not found")
    except SchedulerBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return report.to_dict()


@router.get("/logs")
async def get_logs(
    rule_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None, description="SUCCESS | NO_ACTION | FAILURE"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    logs = await list_logs(db, rule_id=rule_id, status=status, limit=limit, offset=offset)
    return {"logs": [_serialize_log(entry) for entry in logs], "count": len(logs)}
