"""Rate-limit policy: pure functions of quota state, no hidden state.

Every harvester calls these identically; the only inputs are what the last
response told us about the quota and the caller-supplied clock.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

SAFETY_MARGIN_MS = 5_000
MAX_WAIT_MS = 3_600_000
UNKNOWN_RESET_WAIT_MS = 60_000

REST_LOW_WATER_MARK = 10
GRAPHQL_LOW_WATER_MARK = 50

ResponseClass = Literal["ok", "ceiling", "rate_limited", "transient", "error"]


@dataclass(frozen=True)
class QuotaState:
    """Quota as reported by the last upstream response."""

    remaining: int | None = None
    limit: int | None = None
    reset_at: datetime | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> QuotaState:
        reset = _parse_int(headers.get("X-RateLimit-Reset"))
        return cls(
            remaining=_parse_int(headers.get("X-RateLimit-Remaining")),
            limit=_parse_int(headers.get("X-RateLimit-Limit")),
            reset_at=datetime.fromtimestamp(reset, tz=timezone.utc) if reset is not None else None,
        )

    @classmethod
    def from_graphql(cls, rate_limit: Mapping[str, object] | None) -> QuotaState:
        if not rate_limit:
            return cls()
        reset_at = rate_limit.get("resetAt")
        return cls(
            remaining=_parse_int(rate_limit.get("remaining")),
            limit=_parse_int(rate_limit.get("limit")),
            reset_at=_parse_iso(reset_at) if isinstance(reset_at, str) else None,
        )


@dataclass(frozen=True)
class WaitDecision:
    must_wait: bool
    wait_ms: int = 0

    @property
    def seconds(self) -> int:
        """Wait rounded up to whole seconds, for 1-second sleep ticks."""
        return -(-self.wait_ms // 1000)


def decide(
    remaining: int | None,
    limit: int | None,
    reset_at: datetime | None,
    low_water_mark: int,
    *,
    now: datetime | None = None,
) -> WaitDecision:
    """Decide whether to pause *before* the next request.

    Waits only when the remaining quota is known and under *low_water_mark*.
    ``limit`` is accepted for completeness; the decision does not depend on it.
    """
    if remaining is None or remaining >= low_water_mark:
        return WaitDecision(must_wait=False)
    return WaitDecision(must_wait=True, wait_ms=_wait_until(reset_at, now))


def decide_for(
    quota: QuotaState, low_water_mark: int, *, now: datetime | None = None
) -> WaitDecision:
    return decide(quota.remaining, quota.limit, quota.reset_at, low_water_mark, now=now)


def wait_after_rejection(
    reset_at: datetime | None,
    retry_after: int | None = None,
    *,
    now: datetime | None = None,
) -> WaitDecision:
    """How long to wait after the upstream refused a request for quota reasons."""
    if reset_at is None and retry_after is not None:
        wait_ms = max(0, retry_after * 1000) + SAFETY_MARGIN_MS
        return WaitDecision(must_wait=True, wait_ms=min(wait_ms, MAX_WAIT_MS))
    return WaitDecision(must_wait=True, wait_ms=_wait_until(reset_at, now))


def classify_response(
    status: int,
    message: str = "",
    headers: Mapping[str, str] | None = None,
) -> ResponseClass:
    """Sort a response into the buckets the harvesters react to.

    The pagination-ceiling check runs first so that a ceiling is never
    mistaken for a rate limit, whatever status code it arrives with.
    """
    headers = headers or {}
    text = (message or "").lower()

    if status < 400:
        return "ok"
    if 400 <= status < 500 and "pagination" in text:
        return "ceiling"
    if status == 429 or "rate limit" in text:
        return "rate_limited"
    if status == 403:
        remaining = _parse_int(headers.get("X-RateLimit-Remaining"))
        if "Retry-After" in headers or remaining is None or remaining == 0:
            return "rate_limited"
        return "error"
    if status >= 500:
        return "transient"
    return "error"


# ── helpers ───────────────────────────────────────────────────────────────


def _wait_until(reset_at: datetime | None, now: datetime | None) -> int:
    if reset_at is None:
        return UNKNOWN_RESET_WAIT_MS
    now = now or datetime.now(timezone.utc)
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    delta_ms = int((reset_at - now).total_seconds() * 1000)
    return min(max(0, delta_ms) + SAFETY_MARGIN_MS, MAX_WAIT_MS)


def _parse_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


def _parse_iso(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
