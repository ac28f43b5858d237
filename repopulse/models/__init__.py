"""SQLAlchemy ORM models — one file per table."""

from repopulse.models.daily_metric import DailyMetric
from repopulse.models.monthly_metric import MonthlyMetric
from repopulse.models.repository import Repository

__all__ = [
    "Repository",
    "DailyMetric",
    "MonthlyMetric",
]
