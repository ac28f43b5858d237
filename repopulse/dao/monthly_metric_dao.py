"""MonthlyMetricDAO — monthly_metrics table operations."""

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from repopulse.dao.base import BaseDAO
from repopulse.models.monthly_metric import MonthlyMetric

_KEY_COLUMNS = {"id", "repo_id", "month"}


class MonthlyMetricDAO(BaseDAO[MonthlyMetric]):
    model = MonthlyMetric

    async def list_by_repo(self, session: AsyncSession, repo_id: int) -> list[MonthlyMetric]:
        stmt = (
            select(MonthlyMetric)
            .where(MonthlyMetric.repo_id == repo_id)
            .order_by(MonthlyMetric.month)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_many(
        self, session: AsyncSession, repo_id: int, rows: list[dict[str, Any]]
    ) -> int:
        """Insert or overwrite rows keyed by ``(repo_id, month)``."""
        if not rows:
            return 0
        columns = [c.name for c in MonthlyMetric.__table__.columns if c.name not in _KEY_COLUMNS]
        stmt = insert(MonthlyMetric).values([{**row, "repo_id": repo_id} for row in rows])
        stmt = stmt.on_conflict_do_update(
            constraint="uq_monthly_metrics_repo_month",
            set_={name: stmt.excluded[name] for name in columns},
        )
        result = await session.execute(stmt)
        return result.rowcount

    async def delete_by_repo(self, session: AsyncSession, repo_id: int) -> int:
        result = await session.execute(
            delete(MonthlyMetric).where(MonthlyMetric.repo_id == repo_id)
        )
        return result.rowcount
