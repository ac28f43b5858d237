"""Tests for the resource harvesters (fake client, no network)."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from repopulse.core.config import HarvestSettings
from repopulse.engines.harvester.github_client import RestPage
from repopulse.engines.harvester.governor import QuotaState
from repopulse.engines.harvester.harvesters import (
    CommitsHarvester,
    ForksHarvester,
    IssuesHarvester,
    PullRequestsHarvester,
    StarsHarvester,
)
from repopulse.engines.harvester.models import (
    CommitEvent,
    CursorPosition,
    DatePosition,
    ForkEvent,
    IssueEvent,
    PagePosition,
)
from repopulse.engines.harvester.progress import CancelToken, ProgressChannel
from repopulse.engines.metrics.aggregator import aggregate_daily
from repopulse.engines.metrics.merge import merge_series
from repopulse.engines.metrics.series import segment_id
from repopulse.exceptions import (
    PaginationCeilingExceeded,
    RateLimitExceeded,
    ResourceFetchFailed,
    TransientNetworkError,
)

pytestmark = pytest.mark.anyio

NOW = datetime(2023, 6, 1, 12, 0, tzinfo=timezone.utc)


def _settings(**overrides) -> HarvestSettings:
    values = {"per_page": 2, "page_batch_size": 5}
    values.update(overrides)
    return HarvestSettings(**values)


def _rest_client(pages: dict) -> MagicMock:
    """Fake client whose ``get_page`` answers from *pages* keyed by page number.

    A value may be a list of items, a RestPage, an exception instance, or a
    callable returning one of those.  Unknown pages return ``[]``.
    """
    client = MagicMock()
    client.requests = []

    async def get_page(path, params):
        client.requests.append((path, dict(params)))
        outcome = pages.get(params["page"], [])
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, RestPage):
            return outcome
        return RestPage(items=list(outcome))

    client.get_page = AsyncMock(side_effect=get_page)
    return client


def _fork(i: int, day: int = 1) -> dict:
    return {"owner": {"login": f"user{i}"}, "created_at": f"2023-01-{day:02d}T10:00:00Z"}


def _fork_pages(count: int, per_page: int = 2) -> dict:
    return {p: [_fork(p * 10 + i, day=p) for i in range(per_page)] for p in range(1, count + 1)}


# ── TestForksHarvester ────────────────────────────────────────────────────


class TestForksHarvester:
    async def test_stops_at_pagination_ceiling(self):
        pages = _fork_pages(10)
        for p in range(11, 16):
            pages[p] = PaginationCeilingExceeded(page=p)
        client = _rest_client(pages)

        result = await ForksHarvester(client, _settings()).harvest("o", "r")

        assert result.hit_pagination_ceiling is True
        assert result.exhausted is False
        assert result.limited is True
        assert result.last_position == PagePosition(page=11)
        assert len(result.items) == 20
        assert result.pages == 10
        assert all(isinstance(e, ForkEvent) for e in result.items)
        path, params = client.requests[0]
        assert path == "/repos/o/r/forks"
        assert params["sort"] == "oldest"

    async def test_resume_requests_the_refused_page(self):
        client = _rest_client(
            {11: [_fork(111, day=20), _fork(112, day=21)], 12: [_fork(121, day=22)]}
        )

        result = await ForksHarvester(client, _settings()).harvest(
            "o", "r", resume=PagePosition(page=11)
        )

        requested = sorted(params["page"] for _, params in client.requests)
        assert requested[0] == 11
        assert result.exhausted is True
        assert result.start_position == PagePosition(page=11)
        assert result.last_position == PagePosition(page=13)
        assert len(result.items) == 3

    async def test_resumed_fork_count_matches_true_total(self):
        first_pages = _fork_pages(10)
        for p in range(11, 16):
            first_pages[p] = PaginationCeilingExceeded(page=p)
        first = await ForksHarvester(_rest_client(first_pages), _settings()).harvest("o", "r")

        second_pages = {11: [_fork(111, day=20), _fork(112, day=21)], 12: [_fork(121, day=21)]}
        second = await ForksHarvester(_rest_client(second_pages), _settings()).harvest(
            "o", "r", resume=first.last_position
        )

        created, as_of = date(2023, 1, 1), date(2023, 1, 31)
        seg_a = segment_id("forks", first.start_position.token())
        seg_b = segment_id("forks", second.start_position.token())
        a = aggregate_daily(
            created, as_of, forks=first.items, segments={"total_forks": frozenset({seg_a})}
        )
        b = aggregate_daily(
            created, as_of, forks=second.items, segments={"total_forks": frozenset({seg_b})}
        )
        merged = merge_series(a, b).series
        assert merged.last.total_forks == 23

    async def test_short_page_ends_walk_and_discards_later_pages(self):
        pages = {1: [_fork(1), _fork(2)], 2: [_fork(3)], 3: [_fork(4), _fork(5)]}
        client = _rest_client(pages)

        result = await ForksHarvester(client, _settings()).harvest("o", "r")

        assert result.exhausted is True
        assert len(result.items) == 3
        assert result.last_position == PagePosition(page=3)

    async def test_empty_page_keeps_position(self):
        client = _rest_client({1: [_fork(1), _fork(2)]})

        result = await ForksHarvester(client, _settings()).harvest("o", "r")

        assert result.exhausted is True
        assert result.last_position == PagePosition(page=2)

    async def test_transient_failure_keeps_contiguous_prefix(self):
        pages = _fork_pages(5)
        pages[3] = TransientNetworkError("/repos/o/r/forks", 10, "HTTP 502")
        client = _rest_client(pages)

        with pytest.raises(ResourceFetchFailed) as exc_info:
            await ForksHarvester(client, _settings()).harvest("o", "r")

        failure = exc_info.value
        assert failure.kind == "forks"
        assert isinstance(failure.cause, TransientNetworkError)
        assert failure.last_position == PagePosition(page=3)
        assert len(failure.partial.items) == 4

    async def test_wrong_resume_type_rejected(self):
        with pytest.raises(TypeError):
            await ForksHarvester(_rest_client({}), _settings()).harvest(
                "o", "r", resume=CursorPosition(cursor="abc")
            )


# ── TestRateLimitHandling ─────────────────────────────────────────────────


class TestRateLimitHandling:
    async def test_rejection_waits_in_ticks_then_retries(self):
        attempts = {"n": 0}

        def page_one():
            attempts["n"] += 1
            if attempts["n"] == 1:
                return RateLimitExceeded(reset_at=NOW + timedelta(seconds=3))
            return [_fork(1)]

        client = _rest_client({1: page_one})
        channel = ProgressChannel()
        harvester = ForksHarvester(client, _settings(page_batch_size=1), clock=lambda: NOW)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await harvester.harvest("o", "r", progress=channel)

        assert result.exhausted is True
        assert len(result.items) == 1
        assert mock_sleep.await_count == 8
        mock_sleep.assert_awaited_with(1)
        ticks = [e for e in channel.drain() if e.is_rate_limited]
        assert [e.seconds_until_resume for e in ticks] == [8, 7, 6, 5, 4, 3, 2, 1]
        assert all(e.resource_kind == "forks" for e in ticks)

    async def test_gives_up_after_max_rejections(self):
        client = _rest_client({1: lambda: RateLimitExceeded(retry_after=1)})
        harvester = ForksHarvester(
            client, _settings(page_batch_size=1, max_rate_limit_waits=3), clock=lambda: NOW
        )

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await harvester.harvest("o", "r")

        assert result.hit_rate_limit is True
        assert result.limited is True
        assert result.last_position == PagePosition(page=1)
        assert client.get_page.await_count == 3
        assert mock_sleep.await_count == 12  # two waits of 6 ticks

    async def test_proactive_wait_below_low_water_mark(self):
        low = QuotaState(remaining=5, limit=5000, reset_at=NOW + timedelta(seconds=2))
        pages = {
            1: RestPage(items=[_fork(1), _fork(2)], quota=low),
            2: [_fork(3)],
        }
        client = _rest_client(pages)
        harvester = ForksHarvester(client, _settings(page_batch_size=1), clock=lambda: NOW)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await harvester.harvest("o", "r")

        assert len(result.items) == 3
        assert mock_sleep.await_count == 7


# ── TestCheckpointsAndCancel ──────────────────────────────────────────────


class TestCheckpointsAndCancel:
    async def test_periodic_save(self):
        pages = _fork_pages(4)
        pages[5] = [_fork(51, day=5)]
        client = _rest_client(pages)
        save = AsyncMock()

        result = await ForksHarvester(
            client, _settings(page_batch_size=1, save_every_pages=2)
        ).harvest("o", "r", save=save)

        assert save.await_count == 2
        checkpoints = [c.args[0] for c in save.await_args_list]
        assert [c.position for c in checkpoints] == [PagePosition(page=3), PagePosition(page=5)]
        assert [len(c.items) for c in checkpoints] == [4, 4]
        assert result.flushed == 8
        assert len(result.items) == 1
        assert result.items_so_far == 9

    async def test_cancel_between_pages_flushes(self):
        token = CancelToken()

        def page_one():
            token.cancel()
            return [_fork(1), _fork(2)]

        client = _rest_client({1: page_one, 2: [_fork(3)]})
        save = AsyncMock()

        result = await ForksHarvester(client, _settings(page_batch_size=1)).harvest(
            "o", "r", save=save, cancel=token
        )

        assert result.cancelled is True
        assert result.limited is True
        assert client.get_page.await_count == 1
        save.assert_awaited_once()
        checkpoint = save.await_args.args[0]
        assert len(checkpoint.items) == 2
        assert checkpoint.position == PagePosition(page=2)
        assert result.items == []
        assert result.items_so_far == 2


# ── TestPullRequestsHarvester ─────────────────────────────────────────────


class TestPullRequestsHarvester:
    async def test_parses_lifecycle_timestamps(self):
        pr = {
            "number": 7,
            "state": "closed",
            "created_at": "2023-01-02T00:00:00Z",
            "closed_at": "2023-01-04T00:00:00Z",
            "merged_at": "2023-01-04T00:00:00Z",
        }
        client = _rest_client({1: [pr]})

        result = await PullRequestsHarvester(client, _settings()).harvest("o", "r")

        event = result.items[0]
        assert event.number == 7
        assert event.merged_at == datetime(2023, 1, 4, tzinfo=timezone.utc)
        _, params = client.requests[0]
        assert params == {
            "state": "all",
            "sort": "created",
            "direction": "asc",
            "page": 1,
        }


# ── TestIssuesHarvester ───────────────────────────────────────────────────


class TestIssuesHarvester:
    async def test_skips_pull_requests_and_advances_since(self):
        pages = {
            1: [
                {
                    "number": 1,
                    "state": "open",
                    "created_at": "2023-01-05T09:00:00Z",
                    "pull_request": {},
                },
                {
                    "number": 2,
                    "state": "closed",
                    "created_at": "2023-01-05T10:00:00Z",
                    "closed_at": "2023-01-06T10:00:00Z",
                },
            ],
            2: [{"number": 3, "state": "open", "created_at": "2023-01-07T23:30:00Z"}],
        }
        client = _rest_client(pages)

        result = await IssuesHarvester(client, _settings()).harvest(
            "o", "r", resume=DatePosition(since=date(2023, 1, 2))
        )

        assert [e.number for e in result.items] == [2, 3]
        assert all(isinstance(e, IssueEvent) for e in result.items)
        assert result.last_position == DatePosition(since=date(2023, 1, 7))
        _, params = client.requests[0]
        assert params["since"] == "2023-01-02T00:00:00Z"
        assert params["state"] == "all"
        assert params["direction"] == "asc"

    async def test_interrupted_run_keeps_since(self):
        pages = {
            1: [{"number": 1, "state": "open", "created_at": "2023-01-05T09:00:00Z"},
                {"number": 2, "state": "open", "created_at": "2023-01-06T09:00:00Z"}],
            2: TransientNetworkError("/issues", 10, "HTTP 500"),
        }
        start = DatePosition(since=date(2023, 1, 2))

        with pytest.raises(ResourceFetchFailed) as exc_info:
            await IssuesHarvester(_rest_client(pages), _settings()).harvest("o", "r", resume=start)

        assert exc_info.value.last_position == start


# ── TestCommitsHarvester ──────────────────────────────────────────────────


def _commit(sha: str, when: str, login: str | None = None, name: str = "Someone") -> dict:
    return {
        "sha": sha,
        "author": {"login": login} if login else None,
        "commit": {"author": {"name": name, "date": when}},
    }


class TestCommitsHarvester:
    async def test_ceiling_then_resume_backwards(self):
        first_pages = {
            1: [
                _commit("c3", "2023-03-10T12:00:00Z", "alice"),
                _commit("c2", "2023-03-09T08:00:00Z", "bob"),
            ],
            2: PaginationCeilingExceeded(page=2),
        }
        start = DatePosition(since=date(2023, 1, 1))
        first = await CommitsHarvester(_rest_client(first_pages), _settings()).harvest(
            "o", "r", resume=start
        )

        assert first.hit_pagination_ceiling is True
        assert first.last_position == DatePosition(
            since=date(2023, 1, 1),
            until=datetime(2023, 3, 9, 8, tzinfo=timezone.utc),
            high_water=date(2023, 3, 10),
        )

        client = _rest_client({1: [_commit("c1", "2023-02-01T00:00:00Z", None, name="Jane")]})
        second = await CommitsHarvester(client, _settings()).harvest(
            "o", "r", resume=first.last_position
        )

        _, params = client.requests[0]
        assert params["since"] == "2023-01-01T00:00:00Z"
        assert params["until"] == "2023-03-09T08:00:00Z"
        assert second.exhausted is True
        assert second.last_position == DatePosition(since=date(2023, 3, 10))
        event = second.items[0]
        assert isinstance(event, CommitEvent)
        assert event.author == "Jane"

    async def test_exhausted_advances_to_newest(self):
        client = _rest_client({1: [_commit("c9", "2023-04-02T00:00:00Z", "carol")]})

        result = await CommitsHarvester(client, _settings()).harvest(
            "o", "r", resume=DatePosition(since=date(2023, 4, 1))
        )

        assert result.last_position == DatePosition(since=date(2023, 4, 2))
        assert result.items[0].author == "carol"


# ── TestStarsHarvester ────────────────────────────────────────────────────


def _stars_page(logins, has_next, end_cursor, remaining=4000, reset_in=60):
    data = {
        "repository": {
            "stargazers": {
                "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
                "edges": [
                    {"starredAt": f"2023-01-02T0{i}:00:00Z", "node": {"login": login}}
                    for i, login in enumerate(logins)
                ],
            }
        }
    }
    quota = QuotaState(remaining=remaining, limit=5000, reset_at=NOW + timedelta(seconds=reset_in))
    return data, quota


class TestStarsHarvester:
    async def test_cursor_pagination_with_graphql_low_water_mark(self):
        client = MagicMock()
        client.graphql = AsyncMock(
            side_effect=[
                _stars_page(["a", "b"], True, "c2", remaining=40, reset_in=1),
                _stars_page(["c"], False, "c3"),
            ]
        )
        channel = ProgressChannel()

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await StarsHarvester(client, _settings(), clock=lambda: NOW).harvest(
                "o", "r", progress=channel
            )

        assert [e.user for e in result.items] == ["a", "b", "c"]
        assert result.exhausted is True
        assert result.last_position == CursorPosition(cursor="c3")
        second_vars = client.graphql.await_args_list[1].args[1]
        assert second_vars["cursor"] == "c2"
        assert mock_sleep.await_count == 6
        events = channel.drain()
        assert events[-1].is_partial is False
        assert events[-1].items_so_far == 3

    async def test_resume_from_cursor(self):
        client = MagicMock()
        client.graphql = AsyncMock(side_effect=[_stars_page([], False, None)])

        result = await StarsHarvester(client, _settings()).harvest(
            "o", "r", resume=CursorPosition(cursor="c9")
        )

        assert client.graphql.await_args.args[1]["cursor"] == "c9"
        assert result.items == []
        assert result.last_position == CursorPosition(cursor="c9")

    async def test_rate_limit_exhaustion_stops(self):
        client = MagicMock()
        client.graphql = AsyncMock(side_effect=RateLimitExceeded(retry_after=0))

        with patch("asyncio.sleep", new_callable=AsyncMock):
            result = await StarsHarvester(
                client, _settings(max_rate_limit_waits=2), clock=lambda: NOW
            ).harvest("o", "r")

        assert result.hit_rate_limit is True
        assert result.last_position == CursorPosition(cursor=None)
