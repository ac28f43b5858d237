"""RepositoryDAO — repositories table operations."""

from datetime import date, datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from repopulse.dao.base import BaseDAO
from repopulse.engines.harvester.models import RESOURCE_KINDS
from repopulse.models.repository import Repository

_SENTINEL = object()  # distinguish "not passed" from explicit None


class RepositoryDAO(BaseDAO[Repository]):
    model = Repository

    # ── read ──────────────────────────────────────────────────────────────

    async def get_by_identity(
        self, session: AsyncSession, owner: str, name: str
    ) -> Repository | None:
        return await self.get_by_field(session, owner=owner, name=name)

    async def list_resumable(self, session: AsyncSession) -> list[Repository]:
        """Repositories whose last run was interrupted or left a resource limited."""
        limited = [
            Repository.fetch_state.contains({kind: {"limited": True}}) for kind in RESOURCE_KINDS
        ]
        in_flight = [
            Repository.fetch_state.contains({kind: {"in_progress": True}})
            for kind in RESOURCE_KINDS
        ]
        stmt = (
            select(Repository)
            .where(or_(Repository.in_progress.is_(True), *limited, *in_flight))
            .order_by(Repository.owner, Repository.name)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_cached(
        self, session: AsyncSession, limit: int | None = None
    ) -> list[Repository]:
        """Known repositories, most recently fetched first."""
        stmt = select(Repository).order_by(
            Repository.last_fetched_at.desc().nullslast(), Repository.owner, Repository.name
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def upsert_by_identity(
        self,
        session: AsyncSession,
        *,
        owner: str,
        name: str,
        created_on: date | None = None,
        details: dict | None = None,
    ) -> Repository:
        """Insert the repository or refresh its creation date and metadata.

        Known values are never overwritten with NULL.
        """
        values = {"created_on": created_on, **(details or {})}
        stmt = insert(Repository).values(owner=owner, name=name, **values)
        refreshed = {
            key: func.coalesce(getattr(stmt.excluded, key), getattr(Repository, key))
            for key in values
        }
        stmt = stmt.on_conflict_do_update(
            constraint="uq_repositories_owner_name",
            set_={**refreshed, "updated_at": func.now()},
        ).returning(Repository)
        result = await session.execute(stmt, execution_options={"populate_existing": True})
        return result.scalars().one()

    async def update_state(
        self,
        session: AsyncSession,
        pk: int,
        *,
        fetch_state: dict | None = _SENTINEL,
        contributors: list[str] | None = _SENTINEL,
        in_progress: bool | None = None,
        last_fetched_at: datetime | None = None,
    ) -> None:
        """Write run state; omitted arguments leave the column untouched."""
        self._require_pk(pk)
        table = Repository.__table__
        values: dict = {
            "last_fetched_at": func.coalesce(last_fetched_at, table.c.last_fetched_at),
            "updated_at": func.now(),
        }
        if in_progress is not None:
            values["in_progress"] = in_progress
        if fetch_state is not _SENTINEL:
            values["fetch_state"] = fetch_state or {}
        if contributors is not _SENTINEL:
            values["contributors"] = sorted(contributors or [])
        stmt = update(Repository).where(table.c.id == pk).values(**values)
        await session.execute(stmt)
