"""
Automation audit log — one append-only AutomationLog row per rule execution.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ppc_automation.models import AutomationLog, RunStatus
from ppc_automation.utils import utcnow

logger = logging.getLogger(__name__)


async def log_action(
    db: AsyncSession,
    rule_id: int,
    status: RunStatus,
    summary: str,
    details: Optional[dict] = None,
) -> AutomationLog:
    entry = AutomationLog(
        rule_id=rule_id,
        status=status.value,
        summary=summary,
        details=details or {},
        run_at=utcnow(),
    )
    db.add(entry)
    await db.flush()
    logger.info(f"[Audit] Rule {rule_id}: {status.value} - {summary}")
    return entry


async def list_logs(
    db: AsyncSession,
    rule_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[AutomationLog]:
    """Newest first."""
    stmt = select(AutomationLog)
    if rule_id is not None:
        stmt = stmt.where(AutomationLog.rule_id == rule_id)
    if status:
        stmt = stmt.where(AutomationLog.status == status.upper())
    stmt = stmt.order_by(AutomationLog.run_at.desc(), AutomationLog.id.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
