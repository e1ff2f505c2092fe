"""
PPC Automation — Database Models
Rules, audit logs, throttle marks and budget overrides written by the engine,
plus the daily report tables it reads (populated by the report-fetching jobs).
"""

import enum
from datetime import date, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from ppc_automation.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class RuleType(str, enum.Enum):
    BID_ADJUSTMENT = "BID_ADJUSTMENT"
    SEARCH_TERM_AUTOMATION = "SEARCH_TERM_AUTOMATION"
    SEARCH_TERM_HARVESTING = "SEARCH_TERM_HARVESTING"
    BUDGET_ACCELERATION = "BUDGET_ACCELERATION"
    PRICE_ADJUSTMENT = "PRICE_ADJUSTMENT"
    AI_SEARCH_TERM_NEGATION = "AI_SEARCH_TERM_NEGATION"


class AdType(str, enum.Enum):
    SP = "SP"
    SB = "SB"
    SD = "SD"


class RunStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    NO_ACTION = "NO_ACTION"
    FAILURE = "FAILURE"


# ══════════════════════════════════════════════════════════════════════
#  AUTOMATION RULES
# ══════════════════════════════════════════════════════════════════════

class AutomationRule(Base):
    """User-defined automation rule. `config` is parsed by services.automation.rules."""
    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    ad_type: Mapped[str] = mapped_column(String(4), default="SP", server_default="SP")  # SP, SB or SD
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    scope: Mapped[dict] = mapped_column(JSON, default=dict)    # {"campaignIds": [...]}
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_automation_rules_is_active", "is_active"),
        Index("ix_automation_rules_rule_type", "rule_type"),
    )

    @property
    def campaign_ids(self) -> list[str]:
        return [str(c) for c in (self.scope or {}).get("campaignIds") or []]

    def __repr__(self):
        return f"<AutomationRule {self.id} {self.rule_type} '{self.name}'>"


class AutomationLog(Base):
    """One append-only row per rule execution."""
    __tablename__ = "automation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_automation_logs_rule_id", "rule_id"),
        Index("ix_automation_logs_run_at", "run_at"),
    )


class AutomationActionThrottle(Base):
    """Cooldown mark: the rule acted on entity_key and must not act again before throttle_until."""
    __tablename__ = "automation_action_throttle"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(512), nullable=False)
    acted_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    throttle_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("rule_id", "entity_key", name="uq_throttle_rule_entity"),
        Index("ix_throttle_throttle_until", "throttle_until"),
    )


class DailyBudgetOverride(Base):
    """Same-day budget raise, reverted by the nightly budget reset."""
    __tablename__ = "daily_budget_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_budget: Mapped[float] = mapped_column(Float, nullable=False)
    override_date: Mapped[date] = mapped_column(Date, nullable=False)
    reverted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "override_date", name="uq_budget_override_campaign_day"),
        Index("ix_budget_overrides_override_date", "override_date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  REPORT STORE (read-only for the engine)
# ══════════════════════════════════════════════════════════════════════

class SearchTermReportRow(Base):
    """
    Daily Sponsored Products search term report row.
    Each row is a (search term, keyword/target, campaign, ad group, advertised ASIN, day).
    """
    __tablename__ = "sp_search_term_report"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)

    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ad_group_name: Mapped[str] = mapped_column(String(512), nullable=True)
    keyword_id: Mapped[str] = mapped_column(String(255), nullable=True)
    keyword_text: Mapped[str] = mapped_column(Text, nullable=True)
    keyword_type: Mapped[str] = mapped_column(String(100), nullable=True)  # BROAD, PHRASE, EXACT, TARGETING_EXPRESSION
    targeting: Mapped[str] = mapped_column(Text, nullable=True)
    customer_search_term: Mapped[str] = mapped_column(Text, nullable=True)
    asin: Mapped[str] = mapped_column(String(20), nullable=True)  # advertised ASIN

    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    sales_1d: Mapped[float] = mapped_column(Float, default=0.0)
    purchases_1d: Mapped[int] = mapped_column(Integer, default=0)
    sales_7d: Mapped[float] = mapped_column(Float, default=0.0)
    purchases_7d: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_sp_st_report_date", "report_date"),
        Index("ix_sp_st_report_campaign_date", "campaign_id", "report_date"),
    )


class TargetingReportRow(Base):
    """Daily keyword / product-target performance row."""
    __tablename__ = "sp_targeting_report"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)

    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ad_group_name: Mapped[str] = mapped_column(String(512), nullable=True)
    ad_type: Mapped[str] = mapped_column(String(4), default="SP", server_default="SP")
    keyword_id: Mapped[str] = mapped_column(String(255), nullable=False)  # keywordId or targetId
    keyword_text: Mapped[str] = mapped_column(Text, nullable=True)
    keyword_type: Mapped[str] = mapped_column(String(100), nullable=True)
    targeting: Mapped[str] = mapped_column(Text, nullable=True)

    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    sales_7d: Mapped[float] = mapped_column(Float, default=0.0)
    purchases_7d: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_sp_targeting_report_date", "report_date"),
        Index("ix_sp_targeting_report_campaign_date", "campaign_id", "report_date"),
    )


class CampaignReportRow(Base):
    """Daily campaign totals, including the intraday row for today."""
    __tablename__ = "sp_campaign_report"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)

    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    sales_1d: Mapped[float] = mapped_column(Float, default=0.0)
    purchases_1d: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_sp_campaign_report_campaign_date", "campaign_id", "report_date"),
    )
