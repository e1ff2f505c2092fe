"""
Metric windows and condition checks.

A window of N days ending at a reference date covers [reference - N, reference):
the reference date itself is excluded, so "as of yesterday" rules never see a
partial day. Derived ratios are computed from the window's sums on demand.
"""

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Iterable, Optional, Sequence

from ppc_automation.services.automation.rules import Condition, ConditionGroup
from ppc_automation.utils import json_number


@dataclass(frozen=True)
class DailyRecord:
    day: date
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0


@dataclass(frozen=True)
class WindowMetrics:
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0

    @property
    def acos(self) -> float:
        if self.sales > 0:
            return self.spend / self.sales
        # spend with no sales is the worst possible ACOS
        return math.inf if self.spend > 0 else 0.0

    @property
    def cpc(self) -> float:
        return self.spend / self.clicks if self.clicks > 0 else 0.0

    @property
    def ctr(self) -> float:
        return self.clicks / self.impressions if self.impressions > 0 else 0.0

    @property
    def cvr(self) -> float:
        return self.orders / self.clicks if self.clicks > 0 else 0.0

    @property
    def roas(self) -> float:
        return self.sales / self.spend if self.spend > 0 else 0.0

    def get(self, metric: str) -> float:
        if metric not in ("impressions", "clicks", "spend", "sales", "orders", "acos", "cpc", "ctr", "cvr", "roas"):
            raise KeyError(f"Unknown metric: {metric}")
        return getattr(self, metric)


def _sum(records: Iterable[DailyRecord]) -> WindowMetrics:
    impressions = clicks = orders = 0
    spend = sales = 0.0
    for r in records:
        impressions += r.impressions
        clicks += r.clicks
        spend += r.spend
        sales += r.sales
        orders += r.orders
    return WindowMetrics(impressions, clicks, spend, sales, orders)


def window_metrics(daily: Sequence[DailyRecord], window_days: int, reference_date: date) -> WindowMetrics:
    """Sum the records in [reference_date - window_days, reference_date)."""
    start = reference_date - timedelta(days=window_days)
    return _sum(r for r in daily if start <= r.day < reference_date)


def day_metrics(daily: Sequence[DailyRecord], day: date) -> WindowMetrics:
    """Metrics for one calendar day (same-day budget rules)."""
    return _sum(r for r in daily if r.day == day)


def check_condition(value: float, operator: str, threshold: float) -> bool:
    """Total over >, <, =; infinity compares as larger than any finite threshold, NaN never passes."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return False
    if operator == ">":
        return value > threshold
    if operator == "<":
        return value < threshold
    if operator == "=":
        if math.isinf(value) or math.isinf(threshold):
            return value == threshold
        return math.isclose(value, threshold, rel_tol=1e-9, abs_tol=1e-9)
    raise ValueError(f"Unknown operator: {operator}")


def evaluate_group(
    group: ConditionGroup,
    metric_for: Callable[[Condition], float],
    window_label: Optional[Callable[[Condition], object]] = None,
) -> tuple[bool, list[dict]]:
    """
    Check a group's conditions in order, stopping at the first failure.
    Returns (all passed, trail of evaluated conditions for the audit log).
    """
    trail = []
    for condition in group.conditions:
        value = metric_for(condition)
        trail.append({
            "metric": condition.metric,
            "timeWindow": window_label(condition) if window_label else condition.time_window_days,
            "value": json_number(round(value, 4) if isinstance(value, float) and math.isfinite(value) else value),
            "condition": condition.describe(),
        })
        if not check_condition(value, condition.operator, condition.value):
            return False, trail
    return True, trail


def first_matching_group(
    groups: Sequence[ConditionGroup],
    metric_for: Callable[[Condition], float],
    window_label: Optional[Callable[[Condition], object]] = None,
) -> Optional[tuple[ConditionGroup, list[dict]]]:
    """First group (in declaration order) whose every condition passes, with its trail."""
    for group in groups:
        passed, trail = evaluate_group(group, metric_for, window_label)
        if passed:
            return group, trail
    return None


def windowed_metric_for(daily: Sequence[DailyRecord], reference_date: date) -> Callable[[Condition], float]:
    """metric_for callback computing each condition over its own trailing window."""
    def metric_for(condition: Condition) -> float:
        return window_metrics(daily, condition.time_window_days, reference_date).get(condition.metric)

    return metric_for
