"""FetchOrchestrator — harvest engines + merge + Service-layer DB writes."""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from repopulse.core.config import HarvestSettings
from repopulse.core.github import parse_repo_ref
from repopulse.core.logging import bind_repository
from repopulse.engines.harvester.github_client import GitHubClient
from repopulse.engines.harvester.harvesters import (
    AnyPosition,
    ResourceHarvester,
    build_harvesters,
)
from repopulse.engines.harvester.models import (
    RESOURCE_KINDS,
    Checkpoint,
    DatePosition,
    HarvestResult,
    RawEvent,
    RepositoryFetchState,
    RepositoryInfo,
    ResourceFetchState,
    position_type,
)
from repopulse.engines.harvester.progress import CancelToken, ProgressChannel
from repopulse.engines.metrics.aggregator import aggregate_daily, new_contributors, utc_day
from repopulse.engines.metrics.merge import MergeInconsistency, MergeResult, merge_series
from repopulse.engines.metrics.rollup import monthly_rollup
from repopulse.engines.metrics.series import DailySeries, segment_id, segments_for_kinds
from repopulse.exceptions import MissingRepositoryMetadata, ResourceFetchFailed, UpstreamError
from repopulse.services.repository_service import RepositoryService, RepositorySnapshot

log = structlog.get_logger("repopulse.engine")

SINCE_KINDS = ("issues", "commits")

HarvesterFactory = Callable[[GitHubClient], dict[str, ResourceHarvester]]


class FetchStrategy(str, enum.Enum):
    FULL = "full"
    RESUME = "resume"
    QUICK = "quick"


@dataclass
class ResourceOutcome:
    kind: str
    status: str  # "complete" | "limited" | "cancelled" | "failed"
    items: int = 0
    position: str | None = None
    error: str | None = None


@dataclass
class FetchOutcome:
    owner: str
    repo: str
    strategy: FetchStrategy | None = None
    info: RepositoryInfo | None = None
    resources: dict[str, ResourceOutcome] = field(default_factory=dict)
    inconsistencies: list[MergeInconsistency] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    fatal: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def complete(self) -> bool:
        """True when every harvested resource reached the end of its collection."""
        return not self.fatal and all(r.status == "complete" for r in self.resources.values())


def choose_strategy(snapshot: RepositorySnapshot | None) -> FetchStrategy:
    """FULL without cached rows, RESUME after an unfinished run, QUICK otherwise."""
    if snapshot is None or not snapshot.has_cache:
        return FetchStrategy.FULL
    state = snapshot.fetch_state
    if snapshot.in_progress or state.any_limited or state.any_in_progress:
        return FetchStrategy.RESUME
    return FetchStrategy.QUICK


def plan_resources(
    strategy: FetchStrategy, snapshot: RepositorySnapshot | None
) -> dict[str, AnyPosition]:
    """Resource kinds to harvest and the position each one starts from."""
    if strategy is FetchStrategy.FULL or snapshot is None:
        return {kind: position_type(kind)() for kind in RESOURCE_KINDS}

    state = snapshot.fetch_state
    plan: dict[str, AnyPosition] = {}
    if strategy is FetchStrategy.RESUME:
        for kind in RESOURCE_KINDS:
            entry = state.get(kind)
            if entry.limited or entry.in_progress:
                plan[kind] = entry.position or position_type(kind)()

    for kind in SINCE_KINDS:
        if kind in plan:
            continue
        position = state.get(kind).position
        if not isinstance(position, DatePosition) or (
            position.since is None and position.until is None
        ):
            position = DatePosition(since=snapshot.series.last_date)
        plan[kind] = position
    return plan


class _RunContext:
    """Per-run state shared by the checkpoint sink and the final merge."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshot: RepositorySnapshot,
        base: DailySeries,
        state: RepositoryFetchState,
        plan: dict[str, AnyPosition],
        as_of: date,
    ) -> None:
        self.session_factory = session_factory
        self.snapshot = snapshot
        self.base = base
        self.state = state
        self.as_of = as_of
        self.segment_ids = {kind: segment_id(kind, start.token()) for kind, start in plan.items()}
        self.seen: dict[str, list[RawEvent]] = {kind: [] for kind in RESOURCE_KINDS}
        self.contributed: set[str] = set()
        self.lock = asyncio.Lock()

    def add(self, kind: str, items: Iterable[RawEvent]) -> None:
        items = list(items)
        if items:
            self.seen[kind].extend(items)
            self.contributed.add(kind)

    def segments(self, kind: str) -> list[str]:
        existing = list(self.state.get(kind).segments)
        seg = self.segment_ids.get(kind)
        if kind in self.contributed and seg is not None and seg not in existing:
            existing.append(seg)
        return existing

    def merged(self) -> MergeResult:
        """Aggregate everything seen this run and merge it onto the cached base."""
        kind_segments = {kind: frozenset({self.segment_ids[kind]}) for kind in self.contributed}
        series = aggregate_daily(
            self.snapshot.created_on,
            self.as_of,
            stars=self.seen["stars"],
            forks=self.seen["forks"],
            issues=self.seen["issues"],
            prs=self.seen["prs"],
            commits=self.seen["commits"],
            known_contributors=self.snapshot.contributors,
            segments=segments_for_kinds(kind_segments),
        )
        return merge_series(self.base, series)

    def contributors(self) -> set[str]:
        """The cached contributor set plus every commit author this run has seen."""
        return new_contributors(
            self.seen["commits"],
            self.snapshot.contributors,
            created_on=self.snapshot.created_on,
            as_of=self.as_of,
        )


class FetchOrchestrator:
    """Orchestration layer: harvesters → aggregate → merge → Service-layer writes."""

    def __init__(
        self,
        repository_service: RepositoryService,
        settings: HarvestSettings | None = None,
        *,
        harvester_factory: HarvesterFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._service = repository_service
        self._settings = settings or HarvestSettings()
        self._harvester_factory = harvester_factory or (
            lambda client: build_harvesters(client, self._settings)
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        owner: str,
        repo: str,
        client: GitHubClient,
        *,
        progress: ProgressChannel | None = None,
        cancel: CancelToken | None = None,
    ) -> FetchOutcome:
        """Fetch one repository and persist the merged metrics.

        1. Read repository metadata upstream (creation date and summary)
        2. Pick FULL / RESUME / QUICK from the cached snapshot
        3. Mark the repository in progress
        4. Run the selected harvesters in parallel, checkpointing as they go
        5. Aggregate, merge, roll up and persist the final state
        """
        with bind_repository(owner, repo):
            return await self._run(session_factory, owner, repo, client, progress, cancel)

    async def _run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        owner: str,
        repo: str,
        client: GitHubClient,
        progress: ProgressChannel | None,
        cancel: CancelToken | None,
    ) -> FetchOutcome:
        outcome = FetchOutcome(owner=owner, repo=repo)

        try:
            info = RepositoryInfo.from_api(await client.get_repository(owner, repo))
        except (MissingRepositoryMetadata, UpstreamError, httpx.HTTPError) as exc:
            log.error("orchestrator.metadata_failed", repo=outcome.full_name, error=str(exc))
            outcome.errors.append(f"metadata: {exc}")
            outcome.fatal = True
            return outcome
        outcome.info = info
        created_on = utc_day(info.created_at)
        as_of = max(utc_day(self._clock()), created_on)

        async with session_factory() as session:
            async with session.begin():
                snapshot = await self._service.get_snapshot(session, owner, repo)

        strategy = choose_strategy(snapshot)
        plan = plan_resources(strategy, snapshot)
        outcome.strategy = strategy
        log.info(
            "orchestrator.strategy",
            repo=outcome.full_name,
            strategy=strategy.value,
            resources=sorted(plan),
        )

        state = RepositoryFetchState() if strategy is FetchStrategy.FULL else snapshot.fetch_state
        for kind in plan:
            state = state.with_state(
                kind, state.get(kind).model_copy(update={"in_progress": True})
            )

        async with session_factory() as session:
            async with session.begin():
                started = await self._service.begin_run(
                    session,
                    owner,
                    repo,
                    created_on=created_on,
                    fetch_state=state,
                    info=info,
                    reset=strategy is FetchStrategy.FULL,
                )

        base = DailySeries() if strategy is FetchStrategy.FULL else started.series
        ctx = _RunContext(session_factory, started, base, state, plan, as_of)

        harvesters = self._harvester_factory(client)
        kinds = list(plan)
        results = await asyncio.gather(
            *(
                harvesters[kind].harvest(
                    owner,
                    repo,
                    resume=plan[kind],
                    progress=progress,
                    save=self._checkpoint_sink(ctx),
                    cancel=cancel,
                )
                for kind in kinds
            ),
            return_exceptions=True,
        )

        for kind, result in zip(kinds, results):
            if isinstance(result, HarvestResult):
                ctx.add(kind, result.items)
                status = _status(result)
                entry = ResourceFetchState(
                    position=result.last_position,
                    limited=result.limited,
                    in_progress=result.cancelled,
                    segments=ctx.segments(kind),
                )
                outcome.resources[kind] = ResourceOutcome(
                    kind=kind,
                    status=status,
                    items=result.items_so_far,
                    position=result.last_position.token(),
                )
            elif isinstance(result, ResourceFetchFailed):
                partial = result.partial
                ctx.add(kind, partial.items)
                entry = ResourceFetchState(
                    position=partial.last_position,
                    limited=True,
                    in_progress=True,
                    segments=ctx.segments(kind),
                )
                outcome.resources[kind] = ResourceOutcome(
                    kind=kind,
                    status="failed",
                    items=partial.items_so_far,
                    position=partial.last_position.token() if partial.last_position else None,
                    error=str(result.cause),
                )
                outcome.errors.append(f"{kind}: {result.cause}")
            else:
                log.error(
                    "orchestrator.harvester_crashed",
                    repo=outcome.full_name,
                    kind=kind,
                    error=str(result),
                )
                previous = ctx.state.get(kind)
                entry = previous.model_copy(
                    update={"limited": True, "in_progress": True, "segments": ctx.segments(kind)}
                )
                outcome.resources[kind] = ResourceOutcome(
                    kind=kind, status="failed", error=str(result)
                )
                outcome.errors.append(f"{kind}: {result}")
            ctx.state = ctx.state.with_state(kind, entry)

        merged = ctx.merged()
        outcome.inconsistencies.extend(merged.inconsistencies)
        monthly = monthly_rollup(merged.series.points)
        contributors = ctx.contributors()
        unfinished = not outcome.complete

        async with session_factory() as session:
            async with session.begin():
                await self._service.save_run(
                    session,
                    started.id,
                    series=merged.series,
                    monthly=monthly,
                    fetch_state=ctx.state,
                    contributors=contributors,
                    in_progress=unfinished,
                    fetched_at=self._clock(),
                )

        log.info(
            "orchestrator.done",
            repo=outcome.full_name,
            strategy=strategy.value,
            statuses={k: r.status for k, r in outcome.resources.items()},
            days=len(merged.series),
            months=len(monthly),
            inconsistencies=len(merged.inconsistencies),
            in_progress=unfinished,
        )
        return outcome

    async def run_all(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: GitHubClient,
        repo_refs: Iterable[str],
    ) -> list[FetchOutcome]:
        """Fetch several repositories with bounded concurrency."""
        sem = asyncio.Semaphore(self._settings.batch_concurrency)

        async def _run_one(ref: str) -> FetchOutcome:
            try:
                owner, repo = parse_repo_ref(ref)
            except ValueError as exc:
                r = FetchOutcome(owner="", repo=ref, fatal=True)
                r.errors.append(str(exc))
                return r
            async with sem:
                try:
                    return await self.run(session_factory, owner, repo, client)
                except Exception as exc:
                    log.error("orchestrator.failed", repo=f"{owner}/{repo}", error=str(exc))
                    r = FetchOutcome(owner=owner, repo=repo, fatal=True)
                    r.errors.append(str(exc))
                    return r

        return list(await asyncio.gather(*(_run_one(ref) for ref in repo_refs)))

    async def resume_interrupted(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: GitHubClient,
    ) -> list[FetchOutcome]:
        """Re-run every repository left in progress or limited."""
        async with session_factory() as session:
            async with session.begin():
                pending = await self._service.list_resumable(session)

        if not pending:
            return []
        log.info("orchestrator.resume_interrupted", count=len(pending))
        return await self.run_all(session_factory, client, [f"{o}/{n}" for o, n in pending])

    # ── internal ───────────────────────────────────────────────────────────

    def _checkpoint_sink(self, ctx: _RunContext):
        async def _save(checkpoint: Checkpoint) -> None:
            async with ctx.lock:
                ctx.add(checkpoint.kind, checkpoint.items)
                previous = ctx.state.get(checkpoint.kind)
                ctx.state = ctx.state.with_state(
                    checkpoint.kind,
                    ResourceFetchState(
                        position=checkpoint.position or previous.position,
                        limited=True,
                        in_progress=True,
                        segments=ctx.segments(checkpoint.kind),
                    ),
                )
                merged = ctx.merged()
                async with ctx.session_factory() as session:
                    async with session.begin():
                        await self._service.save_progress(
                            session,
                            ctx.snapshot.id,
                            series=merged.series,
                            fetch_state=ctx.state,
                            contributors=ctx.contributors(),
                        )
                log.info(
                    "orchestrator.checkpoint",
                    kind=checkpoint.kind,
                    items=len(checkpoint.items),
                    position=checkpoint.position.token() if checkpoint.position else None,
                )

        return _save


def _status(result: HarvestResult) -> str:
    if result.cancelled:
        return "cancelled"
    if result.exhausted:
        return "complete"
    return "limited"
