"""DailyMetricDAO — daily_metrics table operations."""

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from repopulse.dao.base import BaseDAO
from repopulse.models.daily_metric import DailyMetric

# asyncpg caps a statement at 32767 bind parameters.
_CHUNK_SIZE = 1000

_KEY_COLUMNS = {"id", "repo_id", "date"}


class DailyMetricDAO(BaseDAO[DailyMetric]):
    model = DailyMetric

    async def list_by_repo(self, session: AsyncSession, repo_id: int) -> list[DailyMetric]:
        stmt = select(DailyMetric).where(DailyMetric.repo_id == repo_id).order_by(DailyMetric.date)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_many(
        self, session: AsyncSession, repo_id: int, rows: list[dict[str, Any]]
    ) -> int:
        """Insert or overwrite rows keyed by ``(repo_id, date)``.

        Returns the number of rows written.
        """
        if not rows:
            return 0
        columns = [c.name for c in DailyMetric.__table__.columns if c.name not in _KEY_COLUMNS]
        written = 0
        for start in range(0, len(rows), _CHUNK_SIZE):
            chunk = [{**row, "repo_id": repo_id} for row in rows[start : start + _CHUNK_SIZE]]
            stmt = insert(DailyMetric).values(chunk)
            stmt = stmt.on_conflict_do_update(
                constraint="uq_daily_metrics_repo_date",
                set_={name: stmt.excluded[name] for name in columns},
            )
            result = await session.execute(stmt)
            written += result.rowcount
        return written

    async def delete_by_repo(self, session: AsyncSession, repo_id: int) -> int:
        result = await session.execute(delete(DailyMetric).where(DailyMetric.repo_id == repo_id))
        return result.rowcount
