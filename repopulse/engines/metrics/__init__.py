"""Metrics engine — aggregation, merge and monthly rollup (pure, no I/O)."""

from repopulse.engines.metrics.aggregator import aggregate_daily, new_contributors
from repopulse.engines.metrics.merge import MergeInconsistency, MergeResult, merge_series
from repopulse.engines.metrics.rollup import MetricChange, MonthlyMetricPoint, monthly_rollup
from repopulse.engines.metrics.series import DailyMetricPoint, DailySeries

__all__ = [
    "DailyMetricPoint",
    "DailySeries",
    "MergeInconsistency",
    "MergeResult",
    "MetricChange",
    "MonthlyMetricPoint",
    "aggregate_daily",
    "merge_series",
    "monthly_rollup",
    "new_contributors",
]
