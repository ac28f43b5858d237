"""Cross-run merge of daily series.

Both sides are converted to per-day increments, combined per metric, then
integrated back into a cumulative series.  Cumulative totals themselves are
never added or maxed.

Stars and forks are additive: two harvests that covered *disjoint* segments
of the collection (e.g. ``forks@page:1`` and ``forks@page:11``) are summed.
When the new side's segments were already merged into the existing side,
the larger increment wins instead, which makes re-merging the same data a
no-op.  Every other counter is computed cumulatively by its source and
always takes the larger increment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

import structlog

from repopulse.engines.metrics.series import (
    ADDITIVE_METRICS,
    METRIC_FIELDS,
    DailyMetricPoint,
    DailySeries,
)

log = structlog.get_logger("repopulse.engine")

CombineMode = Literal["sum", "max"]


@dataclass(frozen=True)
class MergeInconsistency:
    date: date | None
    metric: str
    delta: int
    reason: str = "negative_increment"


@dataclass(frozen=True)
class MergeResult:
    series: DailySeries
    inconsistencies: tuple[MergeInconsistency, ...] = ()


def merge_series(existing: DailySeries, new: DailySeries) -> MergeResult:
    """Merge *new* into *existing* without double counting.

    Dates present on one side only keep that side's increment.  Negative
    combined increments are clamped to zero and reported; interior gaps are
    filled by carrying the previous totals forward.
    """
    inconsistencies: list[MergeInconsistency] = []
    segments = _union_segments(existing, new)

    if not new.points:
        return MergeResult(series=DailySeries(existing.points, segments))
    if not existing.points:
        return MergeResult(series=DailySeries(new.points, segments))

    modes: dict[str, CombineMode] = {}
    for metric in METRIC_FIELDS:
        mode, overlap = _combine_mode(metric, existing, new)
        modes[metric] = mode
        if overlap:
            inconsistencies.append(
                MergeInconsistency(
                    date=new.first_date, metric=metric, delta=0, reason="segment_overlap"
                )
            )

    old_inc = _increments(existing)
    new_inc = _increments(new)

    totals = dict.fromkeys(METRIC_FIELDS, 0)
    merged: list[DailyMetricPoint] = []
    for day in sorted(old_inc.keys() | new_inc.keys()):
        a = old_inc.get(day)
        b = new_inc.get(day)
        for metric in METRIC_FIELDS:
            if a is None:
                delta = b[metric]
            elif b is None:
                delta = a[metric]
            elif modes[metric] == "sum":
                delta = a[metric] + b[metric]
            else:
                delta = max(a[metric], b[metric])
            if delta < 0:
                inconsistencies.append(MergeInconsistency(date=day, metric=metric, delta=delta))
                delta = 0
            totals[metric] += delta
        merged.append(DailyMetricPoint(date=day, **totals))

    for item in inconsistencies:
        log.warning(
            "merge.inconsistency",
            date=item.date.isoformat() if item.date else None,
            metric=item.metric,
            delta=item.delta,
            reason=item.reason,
        )

    return MergeResult(
        series=DailySeries(_fill_gaps(merged), segments),
        inconsistencies=tuple(inconsistencies),
    )


def _combine_mode(metric: str, existing: DailySeries, new: DailySeries) -> tuple[CombineMode, bool]:
    """Return ``(mode, overlapping)`` for one metric."""
    if metric not in ADDITIVE_METRICS:
        return "max", False
    old_seg = existing.segments_for(metric)
    new_seg = new.segments_for(metric)
    if not new_seg or new_seg <= old_seg:
        return "max", False
    if new_seg.isdisjoint(old_seg):
        return "sum", False
    return "max", True


def _increments(series: DailySeries) -> dict[date, dict[str, int]]:
    result: dict[date, dict[str, int]] = {}
    previous = dict.fromkeys(METRIC_FIELDS, 0)
    for point in series.points:
        current = point.metrics()
        result[point.date] = {m: current[m] - previous[m] for m in METRIC_FIELDS}
        previous = current
    return result


def _fill_gaps(points: list[DailyMetricPoint]) -> tuple[DailyMetricPoint, ...]:
    if not points:
        return ()
    filled = [points[0]]
    for point in points[1:]:
        day = filled[-1].date + timedelta(days=1)
        while day < point.date:
            filled.append(filled[-1].with_date(day))
            day += timedelta(days=1)
        filled.append(point)
    return tuple(filled)


def _union_segments(existing: DailySeries, new: DailySeries) -> dict[str, frozenset[str]]:
    segments: dict[str, frozenset[str]] = {}
    for metric in existing.segments.keys() | new.segments.keys():
        segments[metric] = existing.segments_for(metric) | new.segments_for(metric)
    return segments
