"""Monthly rollup with month-over-month change and growth percentage."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from fractions import Fraction

from repopulse.engines.metrics.series import DailyMetricPoint

# Monthly metric name -> daily point attribute.
MONTHLY_METRICS: dict[str, str] = {
    "stars": "total_stars",
    "forks": "total_forks",
    "contributors": "total_contributors",
    "issues_opened": "total_issues_opened",
    "issues_closed": "total_issues_closed",
    "prs_opened": "total_prs_opened",
    "prs_closed": "total_prs_closed",
    "prs_merged": "total_prs_merged",
}


@dataclass(frozen=True)
class MetricChange:
    value: int | None
    change: int | None = None
    pct: float | None = None


@dataclass(frozen=True)
class MonthlyMetricPoint:
    month: date  # first day of the month
    as_of: date  # last daily point that fed this month
    metrics: dict[str, MetricChange] = field(default_factory=dict)

    def __getitem__(self, name: str) -> MetricChange:
        return self.metrics[name]


def growth_pct(previous: int | None, current: int | None) -> float | None:
    """Percent change rounded half-up to two decimals; None without a base."""
    if previous is None or current is None or previous == 0:
        return None
    scaled = Fraction(current - previous, previous) * 10000
    return math.floor(scaled + Fraction(1, 2)) / 100


def monthly_rollup(points: Iterable[DailyMetricPoint]) -> list[MonthlyMetricPoint]:
    """One point per calendar month present, from the month's last daily point."""
    month_end: dict[date, DailyMetricPoint] = {}
    for point in sorted(points, key=lambda p: p.date):
        month_end[point.date.replace(day=1)] = point

    result: list[MonthlyMetricPoint] = []
    previous: DailyMetricPoint | None = None
    for month in sorted(month_end):
        point = month_end[month]
        metrics: dict[str, MetricChange] = {}
        for name, attr in MONTHLY_METRICS.items():
            value = getattr(point, attr)
            if previous is None:
                metrics[name] = MetricChange(value=value)
                continue
            prev_value = getattr(previous, attr)
            metrics[name] = MetricChange(
                value=value,
                change=value - prev_value,
                pct=growth_pct(prev_value, value),
            )
        result.append(MonthlyMetricPoint(month=month, as_of=point.date, metrics=metrics))
        previous = point
    return result
