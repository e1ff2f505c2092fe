"""
Shared evaluator types: the per-run context handed to every evaluator and the
result it returns to the scheduler.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from ppc_automation.services.automation.throttle import ThrottleTracker


@dataclass
class RuleContext:
    rule_id: int
    rule_name: str
    profile_id: Optional[str]
    campaign_ids: list[str]
    now: datetime          # naive UTC
    today: date            # calendar date in the reporting timezone
    cooldown: timedelta
    throttle: ThrottleTracker = field(default_factory=ThrottleTracker)
    ad_type: str = "SP"    # SP, SB or SD


@dataclass
class ActedOn:
    """Entity the run acted on; the scheduler turns these into cooldown marks."""
    key: str
    details: dict = field(default_factory=dict)


@dataclass
class EvaluationResult:
    summary: str
    details: dict = field(default_factory=dict)
    acted_on: list[ActedOn] = field(default_factory=list)
    action_count: int = 0
    failure_count: int = 0


class CampaignActions:
    """Builder for details.actions_by_campaign."""

    def __init__(self):
        self._by_campaign: dict[str, dict] = {}

    def _bucket(self, campaign_id: str, campaign_name: Optional[str]) -> dict:
        campaign_id = str(campaign_id)
        if campaign_id not in self._by_campaign:
            self._by_campaign[campaign_id] = {
                "campaignName": campaign_name or f"Campaign {campaign_id}",
                "changes": [],
                "newNegatives": [],
            }
        return self._by_campaign[campaign_id]

    def add_change(self, campaign_id: str, campaign_name: Optional[str], change: dict) -> None:
        self._bucket(campaign_id, campaign_name)["changes"].append(change)

    def add_negative(self, campaign_id: str, campaign_name: Optional[str], negative: dict) -> None:
        self._bucket(campaign_id, campaign_name)["newNegatives"].append(negative)

    def to_dict(self) -> dict:
        return self._by_campaign

    def __len__(self) -> int:
        return len(self._by_campaign)
