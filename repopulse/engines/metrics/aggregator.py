"""Daily aggregation — raw events to a dense cumulative series."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone

import structlog

from repopulse.engines.harvester.models import (
    CommitEvent,
    ForkEvent,
    IssueEvent,
    PullRequestEvent,
    StarEvent,
)
from repopulse.engines.metrics.series import METRIC_FIELDS, DailyMetricPoint, DailySeries
from repopulse.exceptions import MissingRepositoryMetadata

log = structlog.get_logger("repopulse.engine")


def utc_day(ts: datetime) -> date:
    """Calendar day of *ts* in UTC; naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(timezone.utc).date()


class _Buckets:
    """Per-day increments, restricted to ``[created_on, as_of]``."""

    def __init__(self, created_on: date, as_of: date) -> None:
        self.created_on = created_on
        self.as_of = as_of
        self.increments: dict[str, Counter[date]] = {name: Counter() for name in METRIC_FIELDS}
        self.discarded: Counter[str] = Counter()

    def day(self, ts: datetime | None, kind: str) -> date | None:
        if ts is None:
            return None
        day = utc_day(ts)
        if day < self.created_on or day > self.as_of:
            self.discarded[kind] += 1
            return None
        return day

    def add(self, metric: str, ts: datetime | None, kind: str) -> None:
        day = self.day(ts, kind)
        if day is not None:
            self.increments[metric][day] += 1


def aggregate_daily(
    created_on: date | None,
    as_of: date,
    *,
    stars: Iterable[StarEvent] = (),
    forks: Iterable[ForkEvent] = (),
    issues: Iterable[IssueEvent] = (),
    prs: Iterable[PullRequestEvent] = (),
    commits: Iterable[CommitEvent] = (),
    known_contributors: Iterable[str] | None = None,
    segments: dict[str, frozenset[str]] | None = None,
) -> DailySeries:
    """Bucket raw events into one point per UTC day from *created_on* to *as_of*.

    Every timestamp is checked against the range on its own, so an issue
    opened before creation may still count as closed.  Contributors count
    once, on the earliest in-range day they authored a commit, unless they
    are already in *known_contributors*.

    Raises :class:`MissingRepositoryMetadata` without a creation date and
    ``ValueError`` when *as_of* precedes it.
    """
    if created_on is None:
        raise MissingRepositoryMetadata("repository creation date is unknown")
    if as_of < created_on:
        raise ValueError(f"as_of {as_of} precedes creation date {created_on}")

    buckets = _Buckets(created_on, as_of)

    for star in stars:
        buckets.add("total_stars", star.starred_at, "stars")
    for fork in forks:
        buckets.add("total_forks", fork.created_at, "forks")
    for issue in issues:
        buckets.add("total_issues_opened", issue.opened_at, "issues")
        if issue.closed_at is not None:
            buckets.add("total_issues_closed", issue.closed_at, "issues")
    for pr in prs:
        buckets.add("total_prs_opened", pr.opened_at, "prs")
        if pr.closed_at is not None:
            buckets.add("total_prs_closed", pr.closed_at, "prs")
        if pr.merged_at is not None:
            buckets.add("total_prs_merged", pr.merged_at, "prs")

    seen = set(known_contributors or ())
    for commit in sorted(commits, key=lambda c: _as_utc(c.authored_at)):
        if not commit.author or commit.author in seen:
            continue
        day = buckets.day(commit.authored_at, "commits")
        if day is None:
            continue
        seen.add(commit.author)
        buckets.increments["total_contributors"][day] += 1

    for kind, count in buckets.discarded.items():
        log.warning(
            "aggregator.discarded",
            kind=kind,
            count=count,
            created_on=created_on.isoformat(),
            as_of=as_of.isoformat(),
        )

    totals = dict.fromkeys(METRIC_FIELDS, 0)
    points: list[DailyMetricPoint] = []
    day = created_on
    while day <= as_of:
        for name in METRIC_FIELDS:
            totals[name] += buckets.increments[name][day]
        points.append(DailyMetricPoint(date=day, **totals))
        day += timedelta(days=1)

    return DailySeries(points=tuple(points), segments=dict(segments or {}))


def new_contributors(
    commits: Iterable[CommitEvent],
    known: Iterable[str] | None = None,
    *,
    created_on: date | None = None,
    as_of: date | None = None,
) -> set[str]:
    """Return *known* extended with every commit author in range."""
    logins = set(known or ())
    for commit in commits:
        if not commit.author:
            continue
        day = utc_day(commit.authored_at)
        if created_on is not None and day < created_on:
            continue
        if as_of is not None and day > as_of:
            continue
        logins.add(commit.author)
    return logins


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts
