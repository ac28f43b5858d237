"""monthly_metrics table — month-end values with month-over-month change."""

import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, ForeignKey, Index, Integer, Numeric, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from repopulse.core.database import Base


def _value() -> Mapped[Optional[int]]:
    return mapped_column(Integer)


def _pct() -> Mapped[Optional[Decimal]]:
    return mapped_column(Numeric(10, 2))


class MonthlyMetric(Base):
    __tablename__ = "monthly_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    month: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    as_of: Mapped[datetime.date] = mapped_column(Date, nullable=False)

    stars_at_month_end: Mapped[Optional[int]] = _value()
    stars_mom_change: Mapped[Optional[int]] = _value()
    stars_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    forks_at_month_end: Mapped[Optional[int]] = _value()
    forks_mom_change: Mapped[Optional[int]] = _value()
    forks_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    contributors_at_month_end: Mapped[Optional[int]] = _value()
    contributors_mom_change: Mapped[Optional[int]] = _value()
    contributors_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    issues_opened_at_month_end: Mapped[Optional[int]] = _value()
    issues_opened_mom_change: Mapped[Optional[int]] = _value()
    issues_opened_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    issues_closed_at_month_end: Mapped[Optional[int]] = _value()
    issues_closed_mom_change: Mapped[Optional[int]] = _value()
    issues_closed_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    prs_opened_at_month_end: Mapped[Optional[int]] = _value()
    prs_opened_mom_change: Mapped[Optional[int]] = _value()
    prs_opened_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    prs_closed_at_month_end: Mapped[Optional[int]] = _value()
    prs_closed_mom_change: Mapped[Optional[int]] = _value()
    prs_closed_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    prs_merged_at_month_end: Mapped[Optional[int]] = _value()
    prs_merged_mom_change: Mapped[Optional[int]] = _value()
    prs_merged_mom_growth_pct: Mapped[Optional[Decimal]] = _pct()

    __table_args__ = (
        UniqueConstraint("repo_id", "month", name="uq_monthly_metrics_repo_month"),
        Index("idx_monthly_metrics_repo", "repo_id"),
    )
