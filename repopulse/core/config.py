"""Harvest settings read from ``REPOPULSE_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(key: str, default: int) -> int:
    return int(os.environ.get(key, default))


def _env_float(key: str, default: float) -> float:
    return float(os.environ.get(key, default))


@dataclass(frozen=True)
class HarvestSettings:
    per_page: int = 100
    page_batch_size: int = 5
    max_retries: int = 10
    retry_delay: float = 5.0  # seconds, fixed backoff
    save_every_pages: int = 10
    max_rate_limit_waits: int = 10
    rest_low_water_mark: int = 10
    graphql_low_water_mark: int = 50
    batch_concurrency: int = 5

    @classmethod
    def from_env(cls) -> HarvestSettings:
        """Build settings from the environment, falling back to the defaults above."""
        return cls(
            per_page=_env_int("REPOPULSE_PER_PAGE", cls.per_page),
            page_batch_size=_env_int("REPOPULSE_PAGE_BATCH_SIZE", cls.page_batch_size),
            max_retries=_env_int("REPOPULSE_MAX_RETRIES", cls.max_retries),
            retry_delay=_env_float("REPOPULSE_RETRY_DELAY", cls.retry_delay),
            save_every_pages=_env_int("REPOPULSE_SAVE_EVERY_PAGES", cls.save_every_pages),
            max_rate_limit_waits=_env_int(
                "REPOPULSE_MAX_RATE_LIMIT_WAITS", cls.max_rate_limit_waits
            ),
            rest_low_water_mark=_env_int("REPOPULSE_REST_LOW_WATER_MARK", cls.rest_low_water_mark),
            graphql_low_water_mark=_env_int(
                "REPOPULSE_GRAPHQL_LOW_WATER_MARK", cls.graphql_low_water_mark
            ),
            batch_concurrency=_env_int("REPOPULSE_BATCH_CONCURRENCY", cls.batch_concurrency),
        )


def database_url() -> str:
    return os.environ.get("REPOPULSE_DATABASE_URL", "postgresql+asyncpg://localhost/repopulse")
