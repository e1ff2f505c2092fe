"""
Performance Data Fetcher — reads the daily report store for a rule's campaign
scope and groups the rows into per-entity daily series.

Entities with no rows in the requested range are simply absent, so evaluators
never see partially-populated metrics.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ppc_automation.models import CampaignReportRow, SearchTermReportRow, TargetingReportRow
from ppc_automation.services.automation.metrics import DailyRecord
from ppc_automation.utils import safe_float, safe_int

logger = logging.getLogger(__name__)

KEYWORD_MATCH_TYPES = {"BROAD", "PHRASE", "EXACT"}


@dataclass
class Entity:
    entity_id: str
    entity_type: str  # keyword | target | searchTerm | campaign
    campaign_id: str
    entity_text: str
    campaign_name: Optional[str] = None
    ad_group_id: Optional[str] = None
    ad_group_name: Optional[str] = None
    daily_data: list[DailyRecord] = field(default_factory=list)
    current_bid: Optional[float] = None
    source_asin: Optional[str] = None


@dataclass
class PerformanceSnapshot:
    entities: dict[str, Entity] = field(default_factory=dict)
    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def date_range(self) -> Optional[dict]:
        if self.start is None:
            return None
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    def __len__(self) -> int:
        return len(self.entities)


def build_entities(
    rows: Iterable[dict],
    key_for: Callable[[dict], Optional[str]],
    make_entity: Callable[[str, dict], Entity],
) -> PerformanceSnapshot:
    """
    Group per-day rows (already summed per entity and day) into Entities.
    Rows whose key is empty are dropped.
    """
    snapshot = PerformanceSnapshot()
    for row in rows:
        key = key_for(row)
        if not key:
            continue
        entity = snapshot.entities.get(key)
        if entity is None:
            entity = snapshot.entities[key] = make_entity(key, row)
        day = row["report_date"]
        entity.daily_data.append(DailyRecord(
            day=day,
            impressions=safe_int(row.get("impressions")),
            clicks=safe_int(row.get("clicks")),
            spend=safe_float(row.get("spend")),
            sales=safe_float(row.get("sales")),
            orders=safe_int(row.get("orders")),
        ))
        snapshot.start = day if snapshot.start is None or day < snapshot.start else snapshot.start
        snapshot.end = day if snapshot.end is None or day > snapshot.end else snapshot.end
    for entity in snapshot.entities.values():
        entity.daily_data.sort(key=lambda r: r.day)
    return snapshot


def search_term_key(row: dict) -> Optional[str]:
    term = row.get("customer_search_term")
    if not term:
        return None
    return f"{term}::{row.get('asin') or ''}::{row['campaign_id']}::{row.get('ad_group_id') or ''}"


def _keyword_entity(key: str, row: dict) -> Entity:
    keyword_type = (row.get("keyword_type") or "").upper()
    return Entity(
        entity_id=key,
        entity_type="keyword" if keyword_type in KEYWORD_MATCH_TYPES else "target",
        campaign_id=str(row["campaign_id"]),
        campaign_name=row.get("campaign_name"),
        ad_group_id=str(row["ad_group_id"]) if row.get("ad_group_id") else None,
        ad_group_name=row.get("ad_group_name"),
        entity_text=row.get("keyword_text") or row.get("targeting") or key,
    )


def _search_term_entity(key: str, row: dict) -> Entity:
    return Entity(
        entity_id=key,
        entity_type="searchTerm",
        campaign_id=str(row["campaign_id"]),
        campaign_name=row.get("campaign_name"),
        ad_group_id=str(row["ad_group_id"]) if row.get("ad_group_id") else None,
        ad_group_name=row.get("ad_group_name"),
        entity_text=row["customer_search_term"],
        source_asin=row.get("asin"),
    )


def _campaign_entity(key: str, row: dict) -> Entity:
    return Entity(
        entity_id=key,
        entity_type="campaign",
        campaign_id=key,
        campaign_name=row.get("campaign_name"),
        entity_text=row.get("campaign_name") or key,
    )


class PerformanceDataFetcher:
    """Report-store queries for one rule run; ranges are [start, end)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _rows(self, stmt) -> list[dict]:
        result = await self.db.execute(stmt)
        return [dict(r._mapping) for r in result.all()]

    async def fetch_keyword_performance(
        self, campaign_ids: list[str], start: date, end: date, ad_type: str = "SP",
    ) -> PerformanceSnapshot:
        """Keywords and product targets of one ad type, keyed by keyword/target id."""
        R = TargetingReportRow
        stmt = (
            select(
                R.keyword_id, R.campaign_id, R.ad_group_id, R.report_date,
                func.max(R.keyword_text).label("keyword_text"),
                func.max(R.keyword_type).label("keyword_type"),
                func.max(R.targeting).label("targeting"),
                func.max(R.campaign_name).label("campaign_name"),
                func.max(R.ad_group_name).label("ad_group_name"),
                func.coalesce(func.sum(R.impressions), 0).label("impressions"),
                func.coalesce(func.sum(R.clicks), 0).label("clicks"),
                func.coalesce(func.sum(R.cost), 0).label("spend"),
                func.coalesce(func.sum(R.sales_7d), 0).label("sales"),
                func.coalesce(func.sum(R.purchases_7d), 0).label("orders"),
            )
            .where(
                R.campaign_id.in_(campaign_ids), R.ad_type == ad_type,
                R.report_date >= start, R.report_date < end,
            )
            .group_by(R.keyword_id, R.campaign_id, R.ad_group_id, R.report_date)
        )
        rows = await self._rows(stmt)
        snapshot = build_entities(rows, lambda r: str(r["keyword_id"]) if r.get("keyword_id") else None, _keyword_entity)
        logger.info(f"Fetched {len(snapshot)} {ad_type} keyword/target entities from {len(rows)} daily rows")
        return snapshot

    async def fetch_search_term_performance(
        self,
        campaign_ids: list[str],
        start: date,
        end: date,
        attribution: str = "7d",
    ) -> PerformanceSnapshot:
        """Search terms per (term, advertised ASIN, campaign, ad group)."""
        R = SearchTermReportRow
        sales_col, orders_col = (R.sales_1d, R.purchases_1d) if attribution == "1d" else (R.sales_7d, R.purchases_7d)
        stmt = (
            select(
                R.customer_search_term, R.asin, R.campaign_id, R.ad_group_id, R.report_date,
                func.max(R.campaign_name).label("campaign_name"),
                func.max(R.ad_group_name).label("ad_group_name"),
                func.coalesce(func.sum(R.impressions), 0).label("impressions"),
                func.coalesce(func.sum(R.clicks), 0).label("clicks"),
                func.coalesce(func.sum(R.cost), 0).label("spend"),
                func.coalesce(func.sum(sales_col), 0).label("sales"),
                func.coalesce(func.sum(orders_col), 0).label("orders"),
            )
            .where(
                R.campaign_id.in_(campaign_ids),
                R.customer_search_term.is_not(None),
                R.report_date >= start,
                R.report_date < end,
            )
            .group_by(R.customer_search_term, R.asin, R.campaign_id, R.ad_group_id, R.report_date)
        )
        rows = await self._rows(stmt)
        snapshot = build_entities(rows, search_term_key, _search_term_entity)
        logger.info(f"Fetched {len(snapshot)} search term entities from {len(rows)} daily rows")
        return snapshot

    async def fetch_campaign_performance(self, campaign_ids: list[str], start: date, end: date) -> PerformanceSnapshot:
        """Campaign daily totals (1-day attribution, so today's row is meaningful)."""
        R = CampaignReportRow
        stmt = (
            select(
                R.campaign_id, R.report_date,
                func.max(R.campaign_name).label("campaign_name"),
                func.coalesce(func.sum(R.impressions), 0).label("impressions"),
                func.coalesce(func.sum(R.clicks), 0).label("clicks"),
                func.coalesce(func.sum(R.cost), 0).label("spend"),
                func.coalesce(func.sum(R.sales_1d), 0).label("sales"),
                func.coalesce(func.sum(R.purchases_1d), 0).label("orders"),
            )
            .where(R.campaign_id.in_(campaign_ids), R.report_date >= start, R.report_date < end)
            .group_by(R.campaign_id, R.report_date)
        )
        rows = await self._rows(stmt)
        return build_entities(rows, lambda r: str(r["campaign_id"]), _campaign_entity)
