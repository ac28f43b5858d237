"""Per-resource paginated harvesters.

Each harvester walks one upstream collection from a resume position and
returns a :class:`HarvestResult`.  They share the same machinery: proactive
throttling from the last observed quota, tick-wise rate-limit waits that
report progress, periodic checkpoints through a save sink, and cooperative
cancellation at page / batch boundaries.  None of them touches the database.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from typing import Any, TypeVar, Union

import httpx
import structlog

from repopulse.core.config import HarvestSettings
from repopulse.engines.harvester.github_client import GitHubClient, RestPage
from repopulse.engines.harvester.governor import (
    QuotaState,
    WaitDecision,
    decide_for,
    wait_after_rejection,
)
from repopulse.engines.harvester.models import (
    Checkpoint,
    CommitEvent,
    CursorPosition,
    DatePosition,
    ForkEvent,
    HarvestResult,
    IssueEvent,
    PagePosition,
    PullRequestEvent,
    RawEvent,
    ResourceKind,
    StarEvent,
    position_type,
)
from repopulse.engines.harvester.progress import CancelToken, ProgressChannel, ProgressEvent
from repopulse.exceptions import (
    PaginationCeilingExceeded,
    RateLimitExceeded,
    ResourceFetchFailed,
    UpstreamError,
)

log = structlog.get_logger("repopulse.engine")

T = TypeVar("T")

SaveSink = Callable[[Checkpoint], Awaitable[None]]
AnyPosition = Union[CursorPosition, PagePosition, DatePosition]

_STARGAZERS_QUERY = """
query($owner: String!, $name: String!, $cursor: String, $first: Int!) {
  rateLimit { remaining limit resetAt }
  repository(owner: $owner, name: $name) {
    stargazers(first: $first, after: $cursor, orderBy: {field: STARRED_AT, direction: ASC}) {
      pageInfo { hasNextPage endCursor }
      edges { starredAt node { login } }
    }
  }
}
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string, returning None on failure."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


def _utc_date(ts: datetime) -> date:
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(timezone.utc).date()


class _Run:
    """Mutable bookkeeping for a single ``harvest()`` call."""

    def __init__(
        self,
        result: HarvestResult,
        progress: ProgressChannel | None,
        save: SaveSink | None,
        cancel: CancelToken | None,
    ) -> None:
        self.result = result
        self.progress = progress
        self.save = save
        self.cancel = cancel
        self.quota = QuotaState()
        self.pages_since_save = 0
        self.next_page = 1
        self.cursor: str | None = None
        self.newest_seen: datetime | None = None
        self.oldest_seen: datetime | None = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    def accept(self, events: list[RawEvent], timestamps: list[datetime]) -> None:
        self.result.items.extend(events)
        self.result.pages += 1
        self.pages_since_save += 1
        for ts in timestamps:
            if self.newest_seen is None or ts > self.newest_seen:
                self.newest_seen = ts
            if self.oldest_seen is None or ts < self.oldest_seen:
                self.oldest_seen = ts


class ResourceHarvester:
    """Base class: subclasses implement :meth:`_harvest` and :meth:`_position`."""

    kind: ResourceKind
    graphql = False

    def __init__(
        self,
        client: GitHubClient,
        settings: HarvestSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or HarvestSettings()
        self._clock = clock or _utcnow

    @property
    def low_water_mark(self) -> int:
        if self.graphql:
            return self._settings.graphql_low_water_mark
        return self._settings.rest_low_water_mark

    async def harvest(
        self,
        owner: str,
        repo: str,
        *,
        resume: AnyPosition | None = None,
        progress: ProgressChannel | None = None,
        save: SaveSink | None = None,
        cancel: CancelToken | None = None,
    ) -> HarvestResult:
        """Harvest ``owner/repo`` from *resume* (or from the beginning).

        Raises :class:`ResourceFetchFailed` carrying the partial result when
        the upstream keeps failing; rate limits and pagination ceilings end
        the run normally with the corresponding flag set.
        """
        start = resume if resume is not None else position_type(self.kind)()
        if not isinstance(start, position_type(self.kind)):
            raise TypeError(f"{self.kind} cannot resume from {type(start).__name__}")

        run = _Run(
            HarvestResult(kind=self.kind, start_position=start, last_position=start),
            progress,
            save,
            cancel,
        )
        if isinstance(start, PagePosition):
            run.next_page = start.page

        log.info("harvester.start", kind=self.kind, repo=f"{owner}/{repo}", position=start.token())
        try:
            await self._harvest(run, owner, repo)
        except (UpstreamError, httpx.HTTPError) as exc:
            run.result.last_position = self._position(run)
            log.error(
                "harvester.failed",
                kind=self.kind,
                repo=f"{owner}/{repo}",
                error=str(exc),
                items=run.result.items_so_far,
                position=run.result.last_position.token(),
            )
            raise ResourceFetchFailed(self.kind, run.result, exc) from exc

        run.result.last_position = self._position(run)
        if run.result.cancelled:
            await self._flush(run)
        self._emit(run, is_partial=run.result.limited)
        log.info(
            "harvester.done",
            kind=self.kind,
            repo=f"{owner}/{repo}",
            items=run.result.items_so_far,
            pages=run.result.pages,
            exhausted=run.result.exhausted,
            ceiling=run.result.hit_pagination_ceiling,
            rate_limited=run.result.hit_rate_limit,
            cancelled=run.result.cancelled,
            position=run.result.last_position.token(),
        )
        return run.result

    # ── subclass hooks ─────────────────────────────────────────────────────

    async def _harvest(self, run: _Run, owner: str, repo: str) -> None:
        raise NotImplementedError

    def _position(self, run: _Run) -> AnyPosition:
        raise NotImplementedError

    # ── shared machinery ───────────────────────────────────────────────────

    async def _guarded(self, run: _Run, request: Callable[[], Awaitable[T]]) -> T:
        """Run *request*, pausing before it when quota is low and after it
        when the upstream rejects it.

        Re-raises :class:`RateLimitExceeded` once ``max_rate_limit_waits``
        consecutive rejections have been seen.
        """
        rejections = 0
        while True:
            await self._wait(run, decide_for(run.quota, self.low_water_mark, now=self._clock()))
            try:
                return await request()
            except RateLimitExceeded as exc:
                rejections += 1
                if rejections >= self._settings.max_rate_limit_waits:
                    log.warning(
                        "harvester.rate_limit_gave_up", kind=self.kind, rejections=rejections
                    )
                    raise
                decision = wait_after_rejection(exc.reset_at, exc.retry_after, now=self._clock())
                await self._wait(run, decision)

    async def _wait(self, run: _Run, decision: WaitDecision) -> None:
        """Sleep in one-second ticks, reporting the countdown on each tick."""
        if not decision.must_wait:
            return
        seconds = decision.seconds
        log.warning(
            "harvester.rate_limit_wait",
            kind=self.kind,
            wait_seconds=seconds,
            remaining=run.quota.remaining,
        )
        for left in range(seconds, 0, -1):
            self._emit(run, is_rate_limited=True, seconds_until_resume=left)
            await asyncio.sleep(1)
        # Quota has reset; stop trusting the stale reading.
        run.quota = QuotaState()

    def _emit(
        self,
        run: _Run,
        *,
        is_partial: bool = True,
        is_rate_limited: bool = False,
        seconds_until_resume: int | None = None,
    ) -> None:
        if run.progress is None:
            return
        run.progress.emit(
            ProgressEvent(
                resource_kind=self.kind,
                items_so_far=run.result.items_so_far,
                is_partial=is_partial,
                is_rate_limited=is_rate_limited,
                seconds_until_resume=seconds_until_resume,
            )
        )

    async def _maybe_save(self, run: _Run) -> None:
        if run.pages_since_save >= self._settings.save_every_pages:
            await self._flush(run)

    async def _flush(self, run: _Run) -> None:
        """Hand unflushed events and the current position to the save sink."""
        run.pages_since_save = 0
        if run.save is None:
            return
        items = run.result.items
        await run.save(Checkpoint(kind=self.kind, items=items, position=self._position(run)))
        run.result.flushed += len(items)
        run.result.items = []


# ── cursor-paginated ───────────────────────────────────────────────────────


class StarsHarvester(ResourceHarvester):
    """Stargazers via GraphQL, oldest first, cursor paginated (no ceiling)."""

    kind: ResourceKind = "stars"
    graphql = True

    async def _harvest(self, run: _Run, owner: str, repo: str) -> None:
        cursor = run.result.start_position.cursor
        while True:
            if run.cancel_requested:
                run.result.cancelled = True
                return
            variables = {
                "owner": owner,
                "name": repo,
                "cursor": cursor,
                "first": self._settings.per_page,
            }
            try:
                data, quota = await self._guarded(
                    run, lambda: self._client.graphql(_STARGAZERS_QUERY, variables)
                )
            except RateLimitExceeded:
                run.result.hit_rate_limit = True
                return
            run.quota = quota

            repository = data.get("repository")
            if repository is None:
                raise UpstreamError(f"repository {owner}/{repo} not found")
            connection = repository["stargazers"]
            events: list[RawEvent] = []
            stamps: list[datetime] = []
            for edge in connection.get("edges") or []:
                starred_at = _parse_datetime(edge.get("starredAt"))
                if starred_at is None:
                    continue
                login = (edge.get("node") or {}).get("login") or ""
                events.append(StarEvent(user=login, starred_at=starred_at))
                stamps.append(starred_at)
            run.accept(events, stamps)

            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor") or cursor
            run.cursor = cursor
            self._emit(run)
            if not page_info.get("hasNextPage"):
                run.result.exhausted = True
                return
            await self._maybe_save(run)

    def _position(self, run: _Run) -> CursorPosition:
        if run.cursor is None:
            return run.result.start_position
        return CursorPosition(cursor=run.cursor)


# ── offset-paginated ───────────────────────────────────────────────────────


class _PagedHarvester(ResourceHarvester):
    """Walks ``?page=N`` listings in concurrent batches.

    Pages are reassembled in index order; the first refused, failed, short
    or empty page ends the walk and everything after it is discarded.
    """

    def _path(self, owner: str, repo: str) -> str:
        raise NotImplementedError

    def _params(self, run: _Run) -> dict[str, Any]:
        raise NotImplementedError

    def _parse(self, item: dict[str, Any]) -> tuple[RawEvent, datetime] | None:
        raise NotImplementedError

    async def _harvest(self, run: _Run, owner: str, repo: str) -> None:
        path = self._path(owner, repo)
        params = self._params(run)
        per_page = self._settings.per_page
        while True:
            if run.cancel_requested:
                run.result.cancelled = True
                return
            batch = list(range(run.next_page, run.next_page + self._settings.page_batch_size))
            outcomes = await asyncio.gather(
                *(self._fetch(run, path, params, number) for number in batch),
                return_exceptions=True,
            )
            for number, outcome in zip(batch, outcomes):
                if isinstance(outcome, PaginationCeilingExceeded):
                    log.info("harvester.pagination_ceiling", kind=self.kind, page=number)
                    run.result.hit_pagination_ceiling = True
                    return
                if isinstance(outcome, RateLimitExceeded):
                    run.result.hit_rate_limit = True
                    return
                if isinstance(outcome, BaseException):
                    raise outcome

                parsed = [p for p in (self._parse(item) for item in outcome.items) if p is not None]
                if not outcome.items:
                    run.result.exhausted = True
                    return
                run.accept([event for event, _ in parsed], [ts for _, ts in parsed])
                run.next_page = number + 1
                self._emit(run)
                if len(outcome.items) < per_page:
                    run.result.exhausted = True
                    return
            await self._maybe_save(run)

    async def _fetch(
        self, run: _Run, path: str, params: dict[str, Any], number: int
    ) -> RestPage:
        page = await self._guarded(
            run, lambda: self._client.get_page(path, {**params, "page": number})
        )
        run.quota = page.quota
        return page


class ForksHarvester(_PagedHarvester):
    kind: ResourceKind = "forks"

    def _path(self, owner: str, repo: str) -> str:
        return f"/repos/{owner}/{repo}/forks"

    def _params(self, run: _Run) -> dict[str, Any]:
        return {"sort": "oldest"}

    def _parse(self, item: dict[str, Any]) -> tuple[RawEvent, datetime] | None:
        created_at = _parse_datetime(item.get("created_at"))
        if created_at is None:
            return None
        owner = (item.get("owner") or {}).get("login") or ""
        return ForkEvent(owner=owner, created_at=created_at), created_at

    def _position(self, run: _Run) -> PagePosition:
        return PagePosition(page=run.next_page)


class PullRequestsHarvester(_PagedHarvester):
    kind: ResourceKind = "prs"

    def _path(self, owner: str, repo: str) -> str:
        return f"/repos/{owner}/{repo}/pulls"

    def _params(self, run: _Run) -> dict[str, Any]:
        return {"state": "all", "sort": "created", "direction": "asc"}

    def _parse(self, item: dict[str, Any]) -> tuple[RawEvent, datetime] | None:
        opened_at = _parse_datetime(item.get("created_at"))
        if opened_at is None:
            return None
        event = PullRequestEvent(
            number=item["number"],
            state=item.get("state", ""),
            opened_at=opened_at,
            closed_at=_parse_datetime(item.get("closed_at")),
            merged_at=_parse_datetime(item.get("merged_at")),
        )
        return event, opened_at

    def _position(self, run: _Run) -> PagePosition:
        return PagePosition(page=run.next_page)


# ── date-filtered ──────────────────────────────────────────────────────────


class IssuesHarvester(_PagedHarvester):
    """Issues created oldest first, filtered by ``since``; PRs are skipped."""

    kind: ResourceKind = "issues"

    def _path(self, owner: str, repo: str) -> str:
        return f"/repos/{owner}/{repo}/issues"

    def _params(self, run: _Run) -> dict[str, Any]:
        params: dict[str, Any] = {"state": "all", "sort": "created", "direction": "asc"}
        since = run.result.start_position.since
        if since is not None:
            params["since"] = f"{since.isoformat()}T00:00:00Z"
        return params

    def _parse(self, item: dict[str, Any]) -> tuple[RawEvent, datetime] | None:
        if "pull_request" in item:
            return None
        opened_at = _parse_datetime(item.get("created_at"))
        if opened_at is None:
            return None
        event = IssueEvent(
            number=item["number"],
            state=item.get("state", ""),
            opened_at=opened_at,
            closed_at=_parse_datetime(item.get("closed_at")),
        )
        return event, opened_at

    def _position(self, run: _Run) -> DatePosition:
        start: DatePosition = run.result.start_position
        reached_end = run.result.exhausted or run.result.hit_pagination_ceiling
        if not reached_end or run.newest_seen is None:
            return start
        newest = _utc_date(run.newest_seen)
        if start.since is not None and start.since > newest:
            newest = start.since
        return DatePosition(since=newest)


class CommitsHarvester(_PagedHarvester):
    """Commits newest first between ``since`` and ``until``.

    A walk that stops early narrows ``until`` to the oldest commit seen and
    remembers the newest one in ``high_water``; once that window is
    exhausted ``since`` jumps to ``high_water``.
    """

    kind: ResourceKind = "commits"

    def _path(self, owner: str, repo: str) -> str:
        return f"/repos/{owner}/{repo}/commits"

    def _params(self, run: _Run) -> dict[str, Any]:
        start: DatePosition = run.result.start_position
        params: dict[str, Any] = {}
        if start.since is not None:
            params["since"] = f"{start.since.isoformat()}T00:00:00Z"
        if start.until is not None:
            params["until"] = start.until.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return params

    def _parse(self, item: dict[str, Any]) -> tuple[RawEvent, datetime] | None:
        commit_author = (item.get("commit") or {}).get("author") or {}
        authored_at = _parse_datetime(commit_author.get("date"))
        if authored_at is None:
            return None
        author = (item.get("author") or {}).get("login") or commit_author.get("name")
        event = CommitEvent(sha=item.get("sha", ""), author=author, authored_at=authored_at)
        return event, authored_at

    def _position(self, run: _Run) -> DatePosition:
        start: DatePosition = run.result.start_position
        high_water = start.high_water
        if run.newest_seen is not None:
            newest = _utc_date(run.newest_seen)
            if high_water is None or newest > high_water:
                high_water = newest
        if run.result.exhausted:
            return DatePosition(since=high_water or start.since)
        if run.oldest_seen is None:
            return start
        return DatePosition(since=start.since, until=run.oldest_seen, high_water=high_water)


HARVESTERS: dict[str, type[ResourceHarvester]] = {
    "stars": StarsHarvester,
    "forks": ForksHarvester,
    "issues": IssuesHarvester,
    "prs": PullRequestsHarvester,
    "commits": CommitsHarvester,
}


def build_harvesters(
    client: GitHubClient,
    settings: HarvestSettings | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
) -> dict[str, ResourceHarvester]:
    """One harvester per resource kind, sharing *client* and *settings*."""
    return {kind: cls(client, settings, clock=clock) for kind, cls in HARVESTERS.items()}
