"""Daily time-series types shared by the aggregator, merge and rollup."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date

METRIC_FIELDS: tuple[str, ...] = (
    "total_stars",
    "total_forks",
    "total_contributors",
    "total_issues_opened",
    "total_issues_closed",
    "total_prs_opened",
    "total_prs_closed",
    "total_prs_merged",
)

# Counters whose increments come from disjoint harvest segments and may be summed.
ADDITIVE_METRICS: frozenset[str] = frozenset({"total_stars", "total_forks"})

# Which resource kind feeds each metric (provenance segments are per kind).
METRIC_SOURCE: dict[str, str] = {
    "total_stars": "stars",
    "total_forks": "forks",
    "total_contributors": "commits",
    "total_issues_opened": "issues",
    "total_issues_closed": "issues",
    "total_prs_opened": "prs",
    "total_prs_closed": "prs",
    "total_prs_merged": "prs",
}


@dataclass(frozen=True)
class DailyMetricPoint:
    date: date
    total_stars: int = 0
    total_forks: int = 0
    total_contributors: int = 0
    total_issues_opened: int = 0
    total_issues_closed: int = 0
    total_prs_opened: int = 0
    total_prs_closed: int = 0
    total_prs_merged: int = 0

    @property
    def open_issues(self) -> int:
        return self.total_issues_opened - self.total_issues_closed

    @property
    def open_prs(self) -> int:
        return self.total_prs_opened - self.total_prs_closed

    def metrics(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}

    def with_date(self, day: date) -> DailyMetricPoint:
        return replace(self, date=day)


@dataclass(frozen=True)
class DailySeries:
    """Ordered daily points plus per-metric provenance segment ids."""

    points: tuple[DailyMetricPoint, ...] = ()
    segments: dict[str, frozenset[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "points", tuple(self.points))

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self):
        return iter(self.points)

    @property
    def first_date(self) -> date | None:
        return self.points[0].date if self.points else None

    @property
    def last_date(self) -> date | None:
        return self.points[-1].date if self.points else None

    @property
    def last(self) -> DailyMetricPoint | None:
        return self.points[-1] if self.points else None

    def segments_for(self, metric: str) -> frozenset[str]:
        return self.segments.get(metric, frozenset())

    def by_date(self) -> dict[date, DailyMetricPoint]:
        return {p.date: p for p in self.points}


def segment_id(kind: str, position_token: str) -> str:
    """Provenance id of one harvest segment, e.g. ``forks@page:11``."""
    return f"{kind}@{position_token}"


def segments_for_kinds(kind_segments: dict[str, frozenset[str]]) -> dict[str, frozenset[str]]:
    """Expand per-kind segment ids to the metrics each kind feeds."""
    return {
        metric: kind_segments[kind]
        for metric, kind in METRIC_SOURCE.items()
        if kind_segments.get(kind)
    }

