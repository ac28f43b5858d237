"""RepositoryService — cached series, fetch state and metric rows per repository."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from repopulse.dao.daily_metric_dao import DailyMetricDAO
from repopulse.dao.monthly_metric_dao import MonthlyMetricDAO
from repopulse.dao.repository_dao import RepositoryDAO
from repopulse.engines.harvester.models import (
    RESOURCE_KINDS,
    RepositoryFetchState,
    RepositoryInfo,
)
from repopulse.engines.metrics.rollup import MONTHLY_METRICS, MonthlyMetricPoint
from repopulse.engines.metrics.series import (
    METRIC_FIELDS,
    DailyMetricPoint,
    DailySeries,
    segments_for_kinds,
)
from repopulse.models.daily_metric import DailyMetric
from repopulse.models.repository import Repository
from repopulse.services import NotFoundError

log = structlog.get_logger("repopulse.service")


@dataclass
class RepositorySnapshot:
    """Everything a fetch run needs to know about one repository."""

    id: int
    owner: str
    name: str
    created_on: date | None
    fetch_state: RepositoryFetchState = field(default_factory=RepositoryFetchState)
    in_progress: bool = False
    last_fetched_at: datetime | None = None
    series: DailySeries = field(default_factory=DailySeries)
    contributors: frozenset[str] = frozenset()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def has_cache(self) -> bool:
        return len(self.series) > 0


@dataclass(frozen=True)
class RepositorySummary:
    """One row of the cached-repository listing."""

    owner: str
    name: str
    created_on: date | None
    description: str | None
    language: str | None
    stargazers_count: int | None
    forks_count: int | None
    open_issues_count: int | None
    in_progress: bool
    last_fetched_at: datetime | None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


def series_segments(fetch_state: RepositoryFetchState) -> dict[str, frozenset[str]]:
    """Per-metric provenance derived from the per-kind segment lists."""
    per_kind = {kind: frozenset(fetch_state.get(kind).segments) for kind in RESOURCE_KINDS}
    return segments_for_kinds(per_kind)


def _daily_row(point: DailyMetricPoint) -> dict:
    return {"date": point.date, **point.metrics()}


def _daily_point(row: DailyMetric) -> DailyMetricPoint:
    return DailyMetricPoint(date=row.date, **{name: getattr(row, name) for name in METRIC_FIELDS})


def _monthly_row(point: MonthlyMetricPoint) -> dict:
    row: dict = {"month": point.month, "as_of": point.as_of}
    for name in MONTHLY_METRICS:
        change = point.metrics[name]
        row[f"{name}_at_month_end"] = change.value
        row[f"{name}_mom_change"] = change.change
        row[f"{name}_mom_growth_pct"] = (
            Decimal(str(change.pct)) if change.pct is not None else None
        )
    return row


class RepositoryService:
    """Stateless service over the repository, daily and monthly tables."""

    def __init__(
        self,
        repository_dao: RepositoryDAO,
        daily_metric_dao: DailyMetricDAO,
        monthly_metric_dao: MonthlyMetricDAO,
    ) -> None:
        self._repo_dao = repository_dao
        self._daily_dao = daily_metric_dao
        self._monthly_dao = monthly_metric_dao

    # ── read ──────────────────────────────────────────────────────────────

    async def get_snapshot(
        self, session: AsyncSession, owner: str, name: str
    ) -> RepositorySnapshot | None:
        """Load the cached snapshot, or None if the repository was never harvested."""
        repo = await self._repo_dao.get_by_identity(session, owner, name)
        if repo is None:
            return None
        return await self._snapshot(session, repo)

    async def list_resumable(self, session: AsyncSession) -> list[tuple[str, str]]:
        """``(owner, name)`` of every repository with an unfinished run."""
        repos = await self._repo_dao.list_resumable(session)
        return [(repo.owner, repo.name) for repo in repos]

    async def list_cached(
        self, session: AsyncSession, limit: int | None = None
    ) -> list[RepositorySummary]:
        """Cached repositories with their upstream metadata, most recently fetched first."""
        repos = await self._repo_dao.list_cached(session, limit=limit)
        return [
            RepositorySummary(
                owner=repo.owner,
                name=repo.name,
                created_on=repo.created_on,
                description=repo.description,
                language=repo.language,
                stargazers_count=repo.stargazers_count,
                forks_count=repo.forks_count,
                open_issues_count=repo.open_issues_count,
                in_progress=repo.in_progress,
                last_fetched_at=repo.last_fetched_at,
            )
            for repo in repos
        ]

    # ── write ─────────────────────────────────────────────────────────────

    async def begin_run(
        self,
        session: AsyncSession,
        owner: str,
        name: str,
        *,
        created_on: date,
        fetch_state: RepositoryFetchState,
        info: RepositoryInfo | None = None,
        reset: bool = False,
    ) -> RepositorySnapshot:
        """Register the repository and mark it in progress before harvesting.

        *info* refreshes the stored upstream metadata. With *reset* (a full
        refetch) cached rows, contributors and fetch state are discarded first.
        """
        repo = await self._repo_dao.upsert_by_identity(
            session,
            owner=owner,
            name=name,
            created_on=created_on,
            details=info.columns() if info is not None else None,
        )
        if reset:
            await self._daily_dao.delete_by_repo(session, repo.id)
            await self._monthly_dao.delete_by_repo(session, repo.id)
            await self._repo_dao.update_state(
                session,
                repo.id,
                fetch_state=fetch_state.model_dump(mode="json"),
                contributors=[],
                in_progress=True,
            )
        else:
            await self._repo_dao.update_state(
                session,
                repo.id,
                fetch_state=fetch_state.model_dump(mode="json"),
                in_progress=True,
            )
        await session.refresh(repo)
        log.info("repository.run_started", repo=f"{owner}/{name}", reset=reset)
        return await self._snapshot(session, repo)

    async def save_progress(
        self,
        session: AsyncSession,
        repo_id: int,
        *,
        series: DailySeries,
        fetch_state: RepositoryFetchState,
        contributors: set[str] | frozenset[str] | None = None,
    ) -> None:
        """Checkpoint: persist the merged daily rows, the fetch state and,
        when given, the contributor set the rows were counted against.
        """
        written = await self._daily_dao.upsert_many(
            session, repo_id, [_daily_row(p) for p in series.points]
        )
        if contributors is None:
            await self._repo_dao.update_state(
                session, repo_id, fetch_state=fetch_state.model_dump(mode="json")
            )
        else:
            await self._repo_dao.update_state(
                session,
                repo_id,
                fetch_state=fetch_state.model_dump(mode="json"),
                contributors=sorted(contributors),
            )
        log.debug("repository.checkpoint", repo_id=repo_id, rows=written)

    async def save_run(
        self,
        session: AsyncSession,
        repo_id: int,
        *,
        series: DailySeries,
        monthly: list[MonthlyMetricPoint],
        fetch_state: RepositoryFetchState,
        contributors: set[str] | frozenset[str],
        in_progress: bool,
        fetched_at: datetime | None = None,
    ) -> None:
        """Persist the final state of a run."""
        await self._daily_dao.upsert_many(
            session, repo_id, [_daily_row(p) for p in series.points]
        )
        await self._monthly_dao.upsert_many(session, repo_id, [_monthly_row(m) for m in monthly])
        await self._repo_dao.update_state(
            session,
            repo_id,
            fetch_state=fetch_state.model_dump(mode="json"),
            contributors=sorted(contributors),
            in_progress=in_progress,
            last_fetched_at=fetched_at or datetime.now(timezone.utc),
        )
        log.info(
            "repository.run_saved",
            repo_id=repo_id,
            days=len(series),
            months=len(monthly),
            in_progress=in_progress,
        )

    async def clear_cache(self, session: AsyncSession, owner: str, name: str) -> None:
        """Forget everything cached for a repository.

        Raises :class:`NotFoundError` if the repository is unknown.
        """
        repo = await self._repo_dao.get_by_identity(session, owner, name)
        if repo is None:
            raise NotFoundError("repository not found")
        await self._daily_dao.delete_by_repo(session, repo.id)
        await self._monthly_dao.delete_by_repo(session, repo.id)
        await self._repo_dao.delete(session, repo.id)
        log.info("repository.cache_cleared", repo=f"{owner}/{name}")

    # ── internal ──────────────────────────────────────────────────────────

    async def _snapshot(self, session: AsyncSession, repo: Repository) -> RepositorySnapshot:
        fetch_state = RepositoryFetchState.model_validate(repo.fetch_state or {})
        rows = await self._daily_dao.list_by_repo(session, repo.id)
        return RepositorySnapshot(
            id=repo.id,
            owner=repo.owner,
            name=repo.name,
            created_on=repo.created_on,
            fetch_state=fetch_state,
            in_progress=repo.in_progress,
            last_fetched_at=repo.last_fetched_at,
            series=DailySeries(
                points=tuple(_daily_point(r) for r in rows),
                segments=series_segments(fetch_state),
            ),
            contributors=frozenset(repo.contributors or ()),
        )
