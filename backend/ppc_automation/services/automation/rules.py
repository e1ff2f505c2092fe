"""
Typed, immutable views of AutomationRule.config.

The stored JSON is camelCase as written by the rule builder. Parsing produces
frozen pydantic models; every normalization (legacy timeWindow key, legacy
runAtTime, legacy signed adjustBidPercent, ACOS percent → ratio) yields new
objects instead of touching the stored config.
"""

from datetime import timedelta
from typing import Annotated, ClassVar, Generic, Literal, Optional, TypeVar, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError,
    field_validator, model_validator,
)

Metric = Literal[
    "impressions", "clicks", "spend", "sales", "orders",
    "acos", "cpc", "ctr", "cvr", "roas", "budgetUtilization",
]
TimeUnit = Literal["minutes", "hours", "days"]

_UNIT_SECONDS = {"minutes": 60, "hours": 3600, "days": 86400}

LOOKBACK_MARGIN_DAYS = 3


class RuleConfigError(ValueError):
    """Stored rule config cannot be parsed into its typed form."""


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# ── Conditions ────────────────────────────────────────────────────────

class Condition(_Frozen):
    metric: Metric
    time_window_days: int = Field(
        default=30, ge=0,
        validation_alias=AliasChoices("timeWindowDays", "timeWindow", "time_window_days"),
    )
    operator: Literal[">", "<", "="]
    value: float
    # threshold as entered (ACOS stays a percentage here, for audit output)
    display_value: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        window = data.get("timeWindowDays", data.get("timeWindow"))
        if isinstance(window, str) and window.upper() == "TODAY":
            data["timeWindowDays"] = 0
            data.pop("timeWindow", None)
        if data.get("display_value") is None:
            data["display_value"] = data.get("value")
        # ACOS thresholds above 1 are percentages from the UI
        if data.get("metric") == "acos" and data.get("value") is not None:
            value = float(data["value"])
            data["value"] = value / 100 if value > 1 else value
        return data

    def describe(self) -> str:
        shown = self.display_value if self.display_value is not None else self.value
        return f"{self.operator} {shown}"


# ── Actions ───────────────────────────────────────────────────────────

class BidAction(_Frozen):
    type: Literal["increaseBidPercent", "decreaseBidPercent", "increaseBidAmount", "decreaseBidAmount"]
    value: float = 0.0
    min_bid: Optional[float] = Field(default=None, alias="minBid")
    max_bid: Optional[float] = Field(default=None, alias="maxBid")

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, data):
        """adjustBidPercent carries its direction in the sign of value."""
        if isinstance(data, dict) and data.get("type") == "adjustBidPercent":
            value = float(data.get("value") or 0)
            data = {**data, "type": "increaseBidPercent" if value >= 0 else "decreaseBidPercent", "value": abs(value)}
        return data

    @field_validator("value")
    @classmethod
    def _absolute(cls, v: float) -> float:
        return abs(v)

    @property
    def is_decrease(self) -> bool:
        return self.type.startswith("decrease")


class NegateAction(_Frozen):
    type: Literal["negateSearchTerm"] = "negateSearchTerm"
    match_type: Literal["NEGATIVE_EXACT", "NEGATIVE_PHRASE"] = Field(default="NEGATIVE_EXACT", alias="matchType")


class BidOption(_Frozen):
    type: Literal["CUSTOM_BID", "CPC_MULTIPLIER"] = "CPC_MULTIPLIER"
    value: Optional[float] = None
    max_bid: Optional[float] = Field(default=None, alias="maxBid")


class HarvestAction(_Frozen):
    type: Literal["CREATE_NEW_CAMPAIGN", "ADD_TO_EXISTING_CAMPAIGN"] = "CREATE_NEW_CAMPAIGN"
    match_type: Literal["EXACT", "PHRASE", "BROAD"] = Field(default="EXACT", alias="matchType")
    bid_option: BidOption = Field(default_factory=BidOption, alias="bidOption")
    new_campaign_budget: float = Field(default=10.0, alias="newCampaignBudget")
    target_campaign_id: Optional[str] = Field(default=None, alias="targetCampaignId")
    target_ad_group_id: Optional[str] = Field(default=None, alias="targetAdGroupId")
    auto_negate: bool = Field(default=True, alias="autoNegate")

    @field_validator("target_campaign_id", "target_ad_group_id", mode="before")
    @classmethod
    def _ids_as_str(cls, v):
        return str(v) if v not in (None, "") else None

    @model_validator(mode="after")
    def _existing_needs_destination(self) -> "HarvestAction":
        if self.type == "ADD_TO_EXISTING_CAMPAIGN" and not (self.target_campaign_id and self.target_ad_group_id):
            raise ValueError("ADD_TO_EXISTING_CAMPAIGN requires targetCampaignId and targetAdGroupId")
        return self


class BudgetAction(_Frozen):
    type: Literal["increaseBudgetPercent", "setBudgetAmount"]
    value: float


class AiNegateAction(_Frozen):
    type: Literal["negateIfIrrelevant", "negateSearchTerm"] = "negateIfIrrelevant"
    match_type: Literal["NEGATIVE_EXACT", "NEGATIVE_PHRASE"] = Field(default="NEGATIVE_EXACT", alias="matchType")


ActionT = TypeVar("ActionT", bound=BaseModel)


class ConditionGroup(_Frozen, Generic[ActionT]):
    """AND-combined conditions with exactly one action."""
    conditions: tuple[Condition, ...] = ()
    action: ActionT


# ── Frequency / cooldown ──────────────────────────────────────────────

class Frequency(_Frozen):
    unit: TimeUnit = "hours"
    value: int = Field(default=1, ge=1)
    start_time: Optional[str] = Field(default=None, alias="startTime")

    @field_validator("start_time")
    @classmethod
    def _hh_mm(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        hour, _, minute = v.partition(":")
        if not (hour.isdigit() and minute[:2].isdigit() and 0 <= int(hour) < 24 and 0 <= int(minute[:2]) < 60):
            raise ValueError(f"startTime must be HH:MM, got {v!r}")
        return f"{int(hour):02d}:{int(minute[:2]):02d}"

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=_UNIT_SECONDS[self.unit] * self.value)

    @property
    def is_daily_at_time(self) -> bool:
        return self.unit == "days" and self.start_time is not None


class Cooldown(_Frozen):
    unit: TimeUnit = "hours"
    value: int = Field(default=24, ge=0)

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=_UNIT_SECONDS[self.unit] * self.value)


# ── Per-type configs (tagged union on `kind`) ─────────────────────────

class _RuleConfig(_Frozen):
    frequency: Frequency = Field(default_factory=Frequency)
    cooldown: Optional[Cooldown] = None

    default_cooldown: ClassVar[Cooldown] = Cooldown(unit="hours", value=24)

    @property
    def effective_cooldown(self) -> timedelta:
        return (self.cooldown or self.default_cooldown).duration

    @property
    def lookback_days(self) -> int:
        windows = [c.time_window_days for g in getattr(self, "condition_groups", ()) for c in g.conditions]
        return max(windows + [1]) + LOOKBACK_MARGIN_DAYS


class BidAdjustmentConfig(_RuleConfig):
    kind: Literal["BID_ADJUSTMENT"] = "BID_ADJUSTMENT"
    condition_groups: tuple[ConditionGroup[BidAction], ...] = Field(default=(), alias="conditionGroups")


class SearchTermAutomationConfig(_RuleConfig):
    kind: Literal["SEARCH_TERM_AUTOMATION"] = "SEARCH_TERM_AUTOMATION"
    condition_groups: tuple[ConditionGroup[NegateAction], ...] = Field(default=(), alias="conditionGroups")


class HarvestingConfig(_RuleConfig):
    kind: Literal["SEARCH_TERM_HARVESTING"] = "SEARCH_TERM_HARVESTING"
    condition_groups: tuple[ConditionGroup[HarvestAction], ...] = Field(default=(), alias="conditionGroups")

    default_cooldown: ClassVar[Cooldown] = Cooldown(unit="days", value=90)


class BudgetAccelerationConfig(_RuleConfig):
    kind: Literal["BUDGET_ACCELERATION"] = "BUDGET_ACCELERATION"
    condition_groups: tuple[ConditionGroup[BudgetAction], ...] = Field(default=(), alias="conditionGroups")

    # no throttle unless the rule sets a cooldown
    default_cooldown: ClassVar[Cooldown] = Cooldown(unit="hours", value=0)


class AiNegationConfig(_RuleConfig):
    kind: Literal["AI_SEARCH_TERM_NEGATION"] = "AI_SEARCH_TERM_NEGATION"
    condition_groups: tuple[ConditionGroup[AiNegateAction], ...] = Field(default=(), alias="conditionGroups")
    batch_size: Optional[int] = Field(default=None, alias="batchSize", ge=1)
    classification_mode: Literal["batch", "single"] = Field(default="batch", alias="classificationMode")

    @model_validator(mode="before")
    @classmethod
    def _default_actions(cls, data):
        if isinstance(data, dict) and data.get("conditionGroups"):
            data = {
                **data,
                "conditionGroups": [
                    g if not isinstance(g, dict) or g.get("action") else {**g, "action": {}}
                    for g in data["conditionGroups"]
                ],
            }
        return data


class PriceAdjustmentConfig(_RuleConfig):
    kind: Literal["PRICE_ADJUSTMENT"] = "PRICE_ADJUSTMENT"
    skus: tuple[str, ...] = ()
    price_step: float = Field(default=0.0, alias="priceStep")
    price_limit: float = Field(default=0.0, alias="priceLimit")

    @model_validator(mode="before")
    @classmethod
    def _run_at_time_to_daily(cls, data):
        """Legacy price rules store runAtTime instead of a daily frequency."""
        if isinstance(data, dict) and data.get("runAtTime"):
            data = {
                **data,
                "frequency": {**(data.get("frequency") or {}), "unit": "days", "value": 1, "startTime": data["runAtTime"]},
            }
        return data


RuleConfig = Annotated[
    Union[
        BidAdjustmentConfig,
        SearchTermAutomationConfig,
        HarvestingConfig,
        BudgetAccelerationConfig,
        AiNegationConfig,
        PriceAdjustmentConfig,
    ],
    Field(discriminator="kind"),
]

_rule_config_adapter = TypeAdapter(RuleConfig)


def parse_rule_config(rule_type: str, config: Optional[dict]) -> RuleConfig:
    """Parse stored config for the given rule type; raises RuleConfigError on invalid input."""
    try:
        return _rule_config_adapter.validate_python({**(config or {}), "kind": rule_type})
    except ValidationError as e:
        raise RuleConfigError(f"Invalid {rule_type} config: {e.errors(include_url=False)}") from e
