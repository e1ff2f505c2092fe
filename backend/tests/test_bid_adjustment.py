"""
Tests for bid computation and the Bid Adjustment evaluator.
"""

from datetime import timedelta

import pytest

from conftest import NOW, TODAY, days, make_ctx, make_entity
from ppc_automation.ads_client import AdsApiError, ItemResult, MultiStatus
from ppc_automation.services.automation.data_fetcher import PerformanceSnapshot
from ppc_automation.services.automation.evaluators.bid_adjustment import BidAdjustmentEvaluator, compute_new_bid
from ppc_automation.services.automation.rules import BidAction, parse_rule_config
from ppc_automation.services.automation.throttle import ThrottleMark, ThrottleTracker


def _action(**kw) -> BidAction:
    return BidAction.model_validate(kw)


def test_percent_decrease_rounds_down():
    decision = compute_new_bid(0.99, _action(type="decreaseBidPercent", value=15))
    assert decision.new_bid == 0.84  # 0.8415 floored


def test_percent_increase_rounds_up():
    decision = compute_new_bid(0.99, _action(type="increaseBidPercent", value=15))
    assert decision.new_bid == 1.14  # 1.1385 ceiled


def test_amount_actions_and_platform_floor():
    assert compute_new_bid(1.00, _action(type="increaseBidAmount", value=0.25)).new_bid == 1.25
    assert compute_new_bid(0.05, _action(type="decreaseBidAmount", value=0.10)).new_bid == 0.02


def test_max_bid_caps_increase():
    decision = compute_new_bid(1.00, _action(type="increaseBidPercent", value=50, maxBid=1.20))
    assert decision.new_bid == 1.20
    assert "Max Bid" in decision.reason


def test_min_bid_clamps_decrease():
    decision = compute_new_bid(1.00, _action(type="decreaseBidPercent", value=50, minBid=0.75))
    assert decision.new_bid == 0.75


def test_min_bid_never_turns_decrease_into_increase():
    decision = compute_new_bid(0.40, _action(type="decreaseBidPercent", value=10, minBid=0.50))
    assert decision.skipped
    assert decision.new_bid is None


def test_unchanged_bid_is_no_op():
    assert compute_new_bid(0.02, _action(type="decreaseBidAmount", value=0.5)).new_bid is None


def _config(action=None):
    return parse_rule_config("BID_ADJUSTMENT", {"conditionGroups": [{
        "conditions": [{"metric": "clicks", "timeWindow": 7, "operator": ">", "value": 5}],
        "action": action or {"type": "decreaseBidPercent", "value": 10},
    }]})


def _snapshot(*entities) -> PerformanceSnapshot:
    return PerformanceSnapshot(entities={e.entity_id: e for e in entities})


@pytest.mark.anyio
async def test_evaluator_updates_matching_keywords(ads):
    ads.keywords = [{"keywordId": "k1", "bid": 1.00}, {"keywordId": "k2", "bid": 2.00}]
    snapshot = _snapshot(
        make_entity("k1", daily_data=days(TODAY, 7, clicks=2)),
        make_entity("k2", daily_data=days(TODAY, 7, clicks=0)),
    )
    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(), _config(), snapshot)

    assert ads.called("update_keyword_bids") == [[{"keywordId": "k1", "bid": 0.90}]]
    assert [a.key for a in result.acted_on] == ["k1"]
    change = result.details["actions_by_campaign"]["C1"]["changes"][0]
    assert change["oldBid"] == 1.00 and change["newBid"] == 0.90
    assert change["triggeringMetrics"][0]["metric"] == "clicks"
    assert result.summary == "Adjusted bids for 1 target(s)/keyword(s)."


@pytest.mark.anyio
async def test_inherited_bid_falls_back_to_ad_group_default(ads):
    ads.targets = [{"targetId": "t1"}]  # no explicit bid
    ads.ad_groups = [{"adGroupId": "AG1", "defaultBid": 0.60}]
    snapshot = _snapshot(make_entity("t1", "target", daily_data=days(TODAY, 7, clicks=3)))

    result = await BidAdjustmentEvaluator(ads).evaluate(
        make_ctx(), _config({"type": "increaseBidAmount", "value": 0.15}), snapshot,
    )
    assert ads.called("update_target_bids") == [[{"targetId": "t1", "bid": 0.75}]]
    assert result.action_count == 1


@pytest.mark.anyio
async def test_throttled_entity_is_skipped(ads):
    ads.keywords = [{"keywordId": "k1", "bid": 1.00}]
    throttle = ThrottleTracker({"k1": ThrottleMark(NOW - timedelta(hours=23), NOW + timedelta(hours=1))})
    snapshot = _snapshot(make_entity("k1", daily_data=days(TODAY, 7, clicks=2)))

    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(throttle=throttle), _config(), snapshot)
    assert ads.called("update_keyword_bids") == []
    assert result.action_count == 0


@pytest.mark.anyio
async def test_rejected_items_are_not_acted_on(ads):
    ads.keywords = [{"keywordId": "k1", "bid": 1.00}, {"keywordId": "k2", "bid": 1.00}]
    ads.responses["update_keyword_bids"] = MultiStatus(
        successes=[ItemResult(index=0, ok=True, entity_id="k1")],
        errors=[ItemResult(index=1, ok=False, code="INVALID_ARGUMENT", message="bid too low")],
    )
    snapshot = _snapshot(
        make_entity("k1", daily_data=days(TODAY, 7, clicks=2)),
        make_entity("k2", daily_data=days(TODAY, 7, clicks=2)),
    )
    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(), _config(), snapshot)

    assert [a.key for a in result.acted_on] == ["k1"]
    assert result.details["failures"][0]["entityId"] == "k2"
    assert result.failure_count == 1


@pytest.mark.anyio
async def test_whole_call_failure_fails_every_item(ads):
    ads.keywords = [{"keywordId": "k1", "bid": 1.00}]
    ads.responses["update_keyword_bids"] = AdsApiError(400, "PUT /sp/keywords returned 400", {"code": "BAD"})
    snapshot = _snapshot(make_entity("k1", daily_data=days(TODAY, 7, clicks=2)))

    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(), _config(), snapshot)
    assert result.acted_on == []
    assert result.details["failures"][0]["rawError"] == {"code": "BAD"}


@pytest.mark.anyio
async def test_sponsored_brands_keywords_use_sb_endpoints(ads):
    ads.sb_keywords = [{"keywordId": "k1", "bid": 2.00}]
    ads.sb_targets = [{"targetId": "t1"}]  # inherits
    ads.sb_ad_groups = [{"adGroupId": "AG1", "defaultBid": 1.00}]
    snapshot = _snapshot(
        make_entity("k1", daily_data=days(TODAY, 7, clicks=2)),
        make_entity("t1", "target", daily_data=days(TODAY, 7, clicks=2)),
    )
    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(ad_type="SB"), _config(), snapshot)

    assert ads.called("update_sb_keyword_bids") == [
        [{"keywordId": "k1", "bid": 1.80, "adGroupId": "AG1", "campaignId": "C1"}],
    ]
    assert ads.called("update_sb_target_bids") == [
        [{"targetId": "t1", "bid": 0.90, "adGroupId": "AG1", "campaignId": "C1"}],
    ]
    assert ads.called("list_keywords") == [] and ads.called("update_keyword_bids") == []
    assert [a.key for a in result.acted_on] == ["k1", "t1"]
    assert result.summary == "Adjusted bids for 2 SB target(s)/keyword(s)."


@pytest.mark.anyio
async def test_sponsored_display_skips_targets_without_a_bid(ads):
    ads.sd_targets = [{"targetId": "t1", "bid": 1.00}, {"targetId": "t2"}]
    snapshot = _snapshot(
        make_entity("t1", "target", daily_data=days(TODAY, 7, clicks=2)),
        make_entity("t2", "target", daily_data=days(TODAY, 7, clicks=2)),
        make_entity("k1", daily_data=days(TODAY, 7, clicks=2)),
    )
    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(ad_type="SD"), _config(), snapshot)

    assert ads.called("list_sd_targets") == [["t1", "t2"]]
    assert ads.called("update_sd_target_bids") == [[{"targetId": "t1", "bid": 0.90}]]
    assert ads.called("list_sb_ad_groups") == [] and ads.called("list_ad_groups") == []
    assert [a.key for a in result.acted_on] == ["t1"]
    assert result.summary == "Adjusted bids for 1 SD target(s)/keyword(s)."


@pytest.mark.anyio
async def test_sponsored_display_rejected_target_is_a_failure(ads):
    ads.sd_targets = [{"targetId": "t1", "bid": 1.00}, {"targetId": "t2", "bid": 1.00}]
    ads.responses["update_sd_target_bids"] = MultiStatus(
        successes=[ItemResult(index=1, ok=True, entity_id="t2")],
        errors=[ItemResult(index=0, ok=False, code="INVALID_ARGUMENT", message="archived")],
    )
    snapshot = _snapshot(
        make_entity("t1", "target", daily_data=days(TODAY, 7, clicks=2)),
        make_entity("t2", "target", daily_data=days(TODAY, 7, clicks=2)),
    )
    result = await BidAdjustmentEvaluator(ads).evaluate(make_ctx(ad_type="SD"), _config(), snapshot)

    assert [a.key for a in result.acted_on] == ["t2"]
    assert result.details["failures"] == [
        {"entityType": "target", "entityId": "t1", "error": "archived", "code": "INVALID_ARGUMENT"},
    ]
    assert result.summary == "Adjusted bids for 1 SD target(s)/keyword(s). 1 update(s) rejected."
