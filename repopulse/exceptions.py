"""Custom exceptions for repopulse."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repopulse.engines.harvester.models import HarvestResult


class RepoPulseError(Exception):
    """Base exception for all repopulse errors."""


class UpstreamError(RepoPulseError):
    """Base for errors raised while talking to the upstream API."""


class TransientNetworkError(UpstreamError):
    """Raised when a request kept failing with 5xx / timeouts after all retries."""

    def __init__(self, url: str, attempts: int, last_error: str) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{url}: giving up after {attempts} attempts ({last_error})")


class RateLimitExceeded(UpstreamError):
    """Raised when the upstream rejected a request because the quota is exhausted."""

    def __init__(
        self,
        reset_at: datetime | None = None,
        retry_after: int | None = None,
        message: str = "",
    ) -> None:
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(message or "rate limit exceeded")


class PaginationCeilingExceeded(UpstreamError):
    """Raised when an offset-paginated collection refuses pages past its hard limit."""

    def __init__(self, page: int | None = None, message: str = "") -> None:
        self.page = page
        super().__init__(message or f"pagination limit reached at page {page}")


class ResourceFetchFailed(RepoPulseError):
    """A single resource harvest gave up.

    *partial* carries everything gathered before the failure, including the
    last contiguous position, so the caller can persist it and resume later.
    """

    def __init__(self, kind: str, partial: HarvestResult, cause: Exception) -> None:
        self.kind = kind
        self.partial = partial
        self.cause = cause
        super().__init__(f"{kind} harvest failed: {cause}")

    @property
    def last_position(self):
        return self.partial.last_position


class MissingRepositoryMetadata(RepoPulseError):
    """Raised when a repository's creation date cannot be determined."""
