"""
Shared fixtures. The engine is created at import time from DATABASE_URL, so
the test database must be configured before any ppc_automation import.
"""

import os

os.environ.setdefault("ENVIRONMENT", "development")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ADS_API_CLIENT_ID", "test-client")
os.environ.setdefault("ADS_API_ACCESS_TOKEN", "test-token")

from datetime import date, datetime, timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ppc_automation.ads_client import ItemResult, ListResult, MultiStatus
from ppc_automation.database import Base
from ppc_automation.services.automation.data_fetcher import Entity
from ppc_automation.services.automation.evaluators.base import RuleContext
from ppc_automation.services.automation.metrics import DailyRecord
from ppc_automation.services.automation.throttle import ThrottleTracker
from ppc_automation.sp_api_client import SellingPartnerClient

NOW = datetime(2026, 3, 10, 18, 0, 0)  # naive UTC: 11:00 in Los Angeles
TODAY = date(2026, 3, 10)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory():
    import ppc_automation.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


def make_ctx(throttle: ThrottleTracker = None, cooldown: timedelta = timedelta(hours=24), **overrides) -> RuleContext:
    values = dict(
        rule_id=1,
        rule_name="Test rule",
        profile_id="PROFILE1",
        campaign_ids=["C1"],
        now=NOW,
        today=TODAY,
        cooldown=cooldown,
        throttle=throttle or ThrottleTracker(),
    )
    values.update(overrides)
    return RuleContext(**values)


def days(reference: date, count: int, **metrics) -> list[DailyRecord]:
    """`count` identical daily records ending the day before `reference`."""
    return [DailyRecord(day=reference - timedelta(days=i), **metrics) for i in range(1, count + 1)]


def make_entity(entity_id: str, entity_type: str = "keyword", **fields) -> Entity:
    values = dict(
        entity_id=entity_id,
        entity_type=entity_type,
        campaign_id="C1",
        campaign_name="Campaign One",
        ad_group_id="AG1",
        entity_text=entity_id,
    )
    values.update(fields)
    return Entity(**values)


def ok(*ids: str) -> MultiStatus:
    return MultiStatus(successes=[ItemResult(index=i, ok=True, entity_id=v) for i, v in enumerate(ids)])


class FakeAdsClient:
    """Records every call; responses are configured per method."""

    def __init__(self):
        self.calls: list[tuple[str, object]] = []
        self.keywords: list[dict] = []
        self.targets: list[dict] = []
        self.ad_groups: list[dict] = []
        self.campaigns: list[dict] = []
        self.sb_keywords: list[dict] = []
        self.sb_targets: list[dict] = []
        self.sb_ad_groups: list[dict] = []
        self.sd_targets: list[dict] = []
        self.responses: dict[str, object] = {}
        self.existing_campaigns: set[str] = set()
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    async def _respond(self, name: str, payload: list[dict], prefix: str) -> MultiStatus:
        self.calls.append((name, payload))
        response = self.responses.get(name)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(payload)
        if response is not None:
            return response
        return ok(*(self._next_id(prefix) for _ in payload))

    async def list_keywords(self, ids):
        self.calls.append(("list_keywords", ids))
        return ListResult(items=[k for k in self.keywords if str(k["keywordId"]) in ids])

    async def list_targets(self, ids):
        self.calls.append(("list_targets", ids))
        return ListResult(items=[t for t in self.targets if str(t["targetId"]) in ids])

    async def list_ad_groups(self, ids):
        self.calls.append(("list_ad_groups", ids))
        return ListResult(items=[a for a in self.ad_groups if str(a["adGroupId"]) in ids])

    async def list_campaigns(self, ids):
        self.calls.append(("list_campaigns", ids))
        return ListResult(items=[c for c in self.campaigns if str(c["campaignId"]) in ids])

    async def list_sb_keywords(self, ids):
        self.calls.append(("list_sb_keywords", ids))
        return ListResult(items=[k for k in self.sb_keywords if str(k["keywordId"]) in ids])

    async def list_sb_targets(self, ids):
        self.calls.append(("list_sb_targets", ids))
        return ListResult(items=[t for t in self.sb_targets if str(t["targetId"]) in ids])

    async def list_sb_ad_groups(self, ids):
        self.calls.append(("list_sb_ad_groups", ids))
        return ListResult(items=[a for a in self.sb_ad_groups if str(a["adGroupId"]) in ids])

    async def list_sd_targets(self, ids):
        self.calls.append(("list_sd_targets", ids))
        return ListResult(items=[t for t in self.sd_targets if str(t["targetId"]) in ids])

    async def campaign_exists(self, campaign_id):
        self.calls.append(("campaign_exists", campaign_id))
        return campaign_id in self.existing_campaigns

    async def update_keyword_bids(self, updates):
        return await self._respond("update_keyword_bids", updates, "K")

    async def update_target_bids(self, updates):
        return await self._respond("update_target_bids", updates, "T")

    async def update_sb_keyword_bids(self, updates):
        return await self._respond("update_sb_keyword_bids", updates, "K")

    async def update_sb_target_bids(self, updates):
        return await self._respond("update_sb_target_bids", updates, "T")

    async def update_sd_target_bids(self, updates):
        return await self._respond("update_sd_target_bids", updates, "T")

    async def update_campaign_budgets(self, updates):
        return await self._respond("update_campaign_budgets", updates, "C")

    async def create_campaigns(self, payload):
        return await self._respond("create_campaigns", payload, "NEWC")

    async def create_ad_groups(self, payload):
        return await self._respond("create_ad_groups", payload, "NEWAG")

    async def create_product_ads(self, payload):
        return await self._respond("create_product_ads", payload, "AD")

    async def create_keywords(self, payload):
        return await self._respond("create_keywords", payload, "KW")

    async def create_targets(self, payload):
        return await self._respond("create_targets", payload, "TG")

    async def create_negative_keywords(self, payload):
        return await self._respond("create_negative_keywords", payload, "NK")

    async def create_negative_targets(self, payload):
        return await self._respond("create_negative_targets", payload, "NT")

    def called(self, name: str) -> list:
        return [payload for call, payload in self.calls if call == name]


@pytest.fixture
def ads():
    return FakeAdsClient()


async def _no_sleep(delay):
    return None


def make_sp_client(handler, max_retries: int = 1) -> SellingPartnerClient:
    """Selling Partner client over httpx.MockTransport; retries do not wait."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SellingPartnerClient(
        access_token="sp-token", marketplace_id="ATVPDKIKX0DER", seller_id="SELLER1",
        http=http, max_retries=max_retries, sleep=_no_sleep,
    )
