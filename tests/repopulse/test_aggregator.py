"""Tests for the daily aggregator."""

import random
from datetime import date, datetime, timedelta, timezone

import pytest

from repopulse.engines.harvester.models import (
    CommitEvent,
    ForkEvent,
    IssueEvent,
    PullRequestEvent,
    StarEvent,
)
from repopulse.engines.metrics.aggregator import aggregate_daily, new_contributors
from repopulse.engines.metrics.series import METRIC_FIELDS
from repopulse.exceptions import MissingRepositoryMetadata


def _ts(day: str, hour: int = 12) -> datetime:
    return datetime.fromisoformat(day).replace(hour=hour, tzinfo=timezone.utc)


def _commit(sha: str, author: str | None, day: str, hour: int = 12) -> CommitEvent:
    return CommitEvent(sha=sha, author=author, authored_at=_ts(day, hour))


# ── TestEndToEnd ──────────────────────────────────────────────────────────


class TestEndToEnd:
    def test_small_repository(self):
        series = aggregate_daily(
            date(2023, 1, 1),
            date(2023, 1, 10),
            stars=[StarEvent(user=u, starred_at=_ts("2023-01-02")) for u in "abc"],
            issues=[
                IssueEvent(number=1, state="open", opened_at=_ts("2023-01-03")),
                IssueEvent(
                    number=2,
                    state="closed",
                    opened_at=_ts("2023-01-03"),
                    closed_at=_ts("2023-01-10"),
                ),
            ],
        )

        points = series.points
        assert len(points) == 10
        assert points[0].date == date(2023, 1, 1)
        assert points[-1].date == date(2023, 1, 10)
        assert points[0].total_stars == 0
        assert [p.total_stars for p in points[1:]] == [3] * 9
        assert points[2].total_issues_opened == 2
        assert points[8].total_issues_closed == 0
        assert points[9].total_issues_closed == 1
        assert points[9].open_issues == 1


# ── TestDensityAndMonotonicity ────────────────────────────────────────────


class TestDensityAndMonotonicity:
    def test_dense_and_non_decreasing(self):
        created, as_of = date(2022, 12, 25), date(2023, 2, 3)
        series = aggregate_daily(
            created,
            as_of,
            stars=[StarEvent(user=str(i), starred_at=_ts("2023-01-05", i % 24)) for i in range(30)],
            forks=[ForkEvent(owner="x", created_at=_ts("2023-01-20"))],
            prs=[
                PullRequestEvent(
                    number=1,
                    state="closed",
                    opened_at=_ts("2023-01-01"),
                    closed_at=_ts("2023-01-15"),
                    merged_at=_ts("2023-01-15"),
                )
            ],
            commits=[_commit("a", "alice", "2023-01-02"), _commit("b", "bob", "2023-02-01")],
        )

        dates = [p.date for p in series.points]
        assert dates[0] == created
        assert dates[-1] == as_of
        assert all(b - a == timedelta(days=1) for a, b in zip(dates, dates[1:]))
        for metric in METRIC_FIELDS:
            values = [getattr(p, metric) for p in series.points]
            assert values == sorted(values), metric

    def test_pr_can_close_and_merge_same_day(self):
        series = aggregate_daily(
            date(2023, 1, 1),
            date(2023, 1, 5),
            prs=[
                PullRequestEvent(
                    number=1,
                    state="closed",
                    opened_at=_ts("2023-01-02"),
                    closed_at=_ts("2023-01-04"),
                    merged_at=_ts("2023-01-04"),
                ),
                PullRequestEvent(number=2, state="open", opened_at=_ts("2023-01-03")),
            ],
        )
        day4 = series.points[3]
        assert day4.total_prs_opened == 2
        assert day4.total_prs_closed == 1
        assert day4.total_prs_merged == 1
        assert day4.open_prs == 1


# ── TestRangeHandling ─────────────────────────────────────────────────────


class TestRangeHandling:
    def test_each_timestamp_checked_individually(self):
        series = aggregate_daily(
            date(2023, 1, 1),
            date(2023, 1, 5),
            issues=[
                IssueEvent(
                    number=1,
                    state="closed",
                    opened_at=_ts("2022-12-30"),
                    closed_at=_ts("2023-01-03"),
                )
            ],
        )
        last = series.last
        assert last.total_issues_opened == 0
        assert last.total_issues_closed == 1

    def test_events_after_as_of_discarded(self):
        series = aggregate_daily(
            date(2023, 1, 1),
            date(2023, 1, 3),
            stars=[StarEvent(user="a", starred_at=_ts("2023-01-04"))],
        )
        assert series.last.total_stars == 0

    def test_utc_day_bucketing(self):
        late_evening_west = datetime(2023, 1, 1, 20, tzinfo=timezone(timedelta(hours=-8)))
        series = aggregate_daily(
            date(2023, 1, 1),
            date(2023, 1, 3),
            stars=[StarEvent(user="a", starred_at=late_evening_west)],
        )
        assert series.points[0].total_stars == 0
        assert series.points[1].total_stars == 1

    def test_single_day_range(self):
        series = aggregate_daily(date(2023, 1, 1), date(2023, 1, 1))
        assert len(series) == 1

    def test_missing_created_on(self):
        with pytest.raises(MissingRepositoryMetadata):
            aggregate_daily(None, date(2023, 1, 1))

    def test_as_of_before_creation(self):
        with pytest.raises(ValueError):
            aggregate_daily(date(2023, 1, 2), date(2023, 1, 1))


# ── TestContributors ──────────────────────────────────────────────────────


class TestContributors:
    def test_first_seen_by_time_not_input_order(self):
        commits = [
            _commit("late", "alice", "2023-01-04"),
            _commit("early", "alice", "2023-01-02"),
            _commit("bob", "bob", "2023-01-04"),
        ]
        series = aggregate_daily(date(2023, 1, 1), date(2023, 1, 5), commits=commits)
        totals = [p.total_contributors for p in series.points]
        assert totals == [0, 1, 1, 2, 2]

    def test_out_of_range_commit_does_not_claim_author(self):
        commits = [
            _commit("old", "alice", "2022-12-01"),
            _commit("new", "alice", "2023-01-03"),
        ]
        series = aggregate_daily(date(2023, 1, 1), date(2023, 1, 5), commits=commits)
        assert series.points[2].total_contributors == 1
        assert series.points[1].total_contributors == 0

    def test_known_contributors_not_recounted(self):
        commits = [_commit("a", "alice", "2023-01-02"), _commit("b", "bob", "2023-01-03")]
        series = aggregate_daily(
            date(2023, 1, 1), date(2023, 1, 5), commits=commits, known_contributors={"alice"}
        )
        assert series.last.total_contributors == 1

    def test_anonymous_commits_ignored(self):
        series = aggregate_daily(
            date(2023, 1, 1), date(2023, 1, 2), commits=[_commit("x", None, "2023-01-02")]
        )
        assert series.last.total_contributors == 0

    def test_new_contributors(self):
        commits = [
            _commit("a", "alice", "2023-01-02"),
            _commit("b", None, "2023-01-02"),
            _commit("c", "carol", "2024-01-01"),
        ]
        assert new_contributors(commits, {"bob"}) == {"alice", "bob", "carol"}
        assert new_contributors(commits, {"bob"}, as_of=date(2023, 6, 1)) == {"alice", "bob"}


class TestSegments:
    def test_segments_are_attached(self):
        segments = {"total_stars": frozenset({"stars@cursor:"})}
        series = aggregate_daily(date(2023, 1, 1), date(2023, 1, 2), segments=segments)
        assert series.segments_for("total_stars") == frozenset({"stars@cursor:"})
        assert series.segments_for("total_forks") == frozenset()


# ── TestRandomizedEvents ──────────────────────────────────────────────────

AUTHORS = ("alice", "bob", "carol", "dave", None)


def _random_moment(rng: random.Random, created: date, as_of: date) -> datetime:
    """A UTC timestamp up to five days either side of ``[created, as_of]``."""
    span = (as_of - created).days
    day = created + timedelta(days=rng.randint(-5, span + 5))
    return datetime(day.year, day.month, day.day, rng.randint(0, 23), tzinfo=timezone.utc)


class TestRandomizedEvents:
    @pytest.mark.parametrize("seed", range(25))
    def test_totals_match_in_range_events(self, seed):
        rng = random.Random(seed)
        created = date(2023, 1, 1) + timedelta(days=rng.randint(0, 30))
        as_of = created + timedelta(days=rng.randint(0, 20))

        def in_range(ts: datetime | None) -> bool:
            return ts is not None and created <= ts.date() <= as_of

        stars = [
            StarEvent(user=f"u{i}", starred_at=_random_moment(rng, created, as_of))
            for i in range(rng.randint(0, 40))
        ]
        issues = [
            IssueEvent(
                number=i,
                state="closed",
                opened_at=_random_moment(rng, created, as_of),
                closed_at=_random_moment(rng, created, as_of) if rng.random() < 0.5 else None,
            )
            for i in range(rng.randint(0, 15))
        ]
        commits = [
            CommitEvent(
                sha=f"c{i}",
                author=rng.choice(AUTHORS),
                authored_at=_random_moment(rng, created, as_of),
            )
            for i in range(rng.randint(0, 30))
        ]
        known = {a for a in AUTHORS[:-1] if rng.random() < 0.25}

        series = aggregate_daily(
            created,
            as_of,
            stars=stars,
            issues=issues,
            commits=commits,
            known_contributors=known,
        )

        assert [p.date for p in series.points] == [
            created + timedelta(days=i) for i in range((as_of - created).days + 1)
        ]
        for metric in METRIC_FIELDS:
            values = [getattr(p, metric) for p in series.points]
            assert values == sorted(values), metric

        last = series.last
        assert last.total_stars == sum(in_range(s.starred_at) for s in stars)
        assert last.total_issues_opened == sum(in_range(i.opened_at) for i in issues)
        assert last.total_issues_closed == sum(in_range(i.closed_at) for i in issues)
        authors = {c.author for c in commits if c.author and in_range(c.authored_at)}
        assert last.total_contributors == len(authors - known)
        assert new_contributors(commits, known, created_on=created, as_of=as_of) == (
            authors | known
        )
