"""
Amazon PPC Automation — FastAPI Backend
Runs user-defined automation rules (bids, negatives, harvesting, budgets,
prices) against the Amazon Ads and Selling Partner APIs on a schedule.
Rules, throttle state and the run audit log are persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from ppc_automation.config import get_settings
from ppc_automation.database import init_db, check_db_connection
from ppc_automation.auth import require_auth
from ppc_automation.routers import automation, cron
from ppc_automation.services.automation.runner import AutomationRunner
from ppc_automation.services.automation.scheduler import RuleScheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting PPC Automation...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    scheduler = RuleScheduler(settings=settings)
    runner = AutomationRunner(scheduler)
    app.state.scheduler = scheduler
    app.state.runner = runner
    runner.start()
    yield
    logger.info("Shutting down...")
    await runner.stop()


app = FastAPI(
    title="Amazon PPC Automation",
    description="Rule-driven automation for Amazon Sponsored Products",
    version="1.0.0",
    lifespan=lifespan,
)

# ── Register Routers ─────────────────────────────────────────────────
app.include_router(
    automation.router, prefix="/api/automation", tags=["Automation"], dependencies=[Depends(require_auth)],
)
app.include_router(cron.router, prefix="/api")  # cron secret, not the API key


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon PPC Automation",
        "database": "connected" if db_ok else "disconnected",
    }
