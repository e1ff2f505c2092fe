"""
Tests for metric windows and condition evaluation.
"""

import math
from datetime import date

import pytest

from ppc_automation.services.automation.metrics import (
    DailyRecord, WindowMetrics, check_condition, day_metrics, first_matching_group, window_metrics,
    windowed_metric_for,
)
from ppc_automation.services.automation.rules import parse_rule_config

REF = date(2026, 3, 10)


def _records():
    return [
        DailyRecord(day=date(2026, 3, 10), clicks=100, spend=100.0),  # reference day, excluded
        DailyRecord(day=date(2026, 3, 9), impressions=1000, clicks=10, spend=5.0, sales=20.0, orders=2),
        DailyRecord(day=date(2026, 3, 8), impressions=1000, clicks=10, spend=5.0, sales=0.0, orders=0),
        DailyRecord(day=date(2026, 3, 1), clicks=50, spend=50.0),  # outside a 7-day window
    ]


def test_window_excludes_reference_date_and_older_days():
    metrics = window_metrics(_records(), 7, REF)
    assert metrics.clicks == 20
    assert metrics.spend == 10.0
    assert metrics.sales == 20.0


def test_derived_ratios_from_window_sums():
    metrics = window_metrics(_records(), 7, REF)
    assert metrics.acos == pytest.approx(0.5)
    assert metrics.cpc == pytest.approx(0.5)
    assert metrics.ctr == pytest.approx(0.01)
    assert metrics.cvr == pytest.approx(0.1)
    assert metrics.roas == pytest.approx(2.0)


def test_acos_is_infinite_with_spend_and_no_sales():
    assert WindowMetrics(spend=3.0).acos == math.inf
    assert WindowMetrics().acos == 0.0
    assert WindowMetrics().cpc == 0.0


def test_day_metrics_only_counts_that_day():
    assert day_metrics(_records(), REF).spend == 100.0


def test_check_condition_operators():
    assert check_condition(2.0, ">", 1.0)
    assert not check_condition(1.0, ">", 1.0)
    assert check_condition(0.1 + 0.2, "=", 0.3)
    assert check_condition(math.inf, ">", 0.5)
    assert not check_condition(math.inf, "<", 0.5)
    assert not check_condition(float("nan"), "<", 1.0)


def test_first_matching_group_in_declaration_order():
    config = parse_rule_config("BID_ADJUSTMENT", {"conditionGroups": [
        {"conditions": [{"metric": "clicks", "timeWindow": 7, "operator": ">", "value": 100}],
         "action": {"type": "increaseBidPercent", "value": 10}},
        {"conditions": [{"metric": "clicks", "timeWindow": 7, "operator": ">", "value": 5},
                        {"metric": "acos", "timeWindow": 7, "operator": ">", "value": 40}],
         "action": {"type": "decreaseBidPercent", "value": 20}},
        {"conditions": [], "action": {"type": "decreaseBidAmount", "value": 0.05}},
    ]})
    group, trail = first_matching_group(config.condition_groups, windowed_metric_for(_records(), REF))
    assert group.action.type == "decreaseBidPercent"
    assert [t["metric"] for t in trail] == ["clicks", "acos"]
    assert trail[1]["condition"] == "> 40"


def test_no_group_matches():
    config = parse_rule_config("BID_ADJUSTMENT", {"conditionGroups": [
        {"conditions": [{"metric": "orders", "timeWindow": 30, "operator": ">", "value": 50}],
         "action": {"type": "increaseBidPercent", "value": 10}},
    ]})
    assert first_matching_group(config.condition_groups, windowed_metric_for(_records(), REF)) is None
