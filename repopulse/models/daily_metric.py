"""daily_metrics table."""

import datetime

from sqlalchemy import BigInteger, Date, ForeignKey, Index, Integer, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from repopulse.core.database import Base


def _counter() -> Mapped[int]:
    return mapped_column(Integer, nullable=False, server_default=text("0"))


class DailyMetric(Base):
    __tablename__ = "daily_metrics"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    total_stars: Mapped[int] = _counter()
    total_forks: Mapped[int] = _counter()
    total_contributors: Mapped[int] = _counter()
    total_issues_opened: Mapped[int] = _counter()
    total_issues_closed: Mapped[int] = _counter()
    total_prs_opened: Mapped[int] = _counter()
    total_prs_closed: Mapped[int] = _counter()
    total_prs_merged: Mapped[int] = _counter()

    __table_args__ = (
        UniqueConstraint("repo_id", "date", name="uq_daily_metrics_repo_date"),
        Index("idx_daily_metrics_repo", "repo_id"),
    )
