"""Async GitHub API client (REST + GraphQL) with retries and quota reporting.

The client never sleeps for rate limits itself: it raises
:class:`RateLimitExceeded` / :class:`PaginationCeilingExceeded` and reports
the observed quota so the harvester can consult the governor.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from repopulse.core.config import HarvestSettings
from repopulse.engines.harvester.governor import QuotaState, classify_response
from repopulse.exceptions import (
    PaginationCeilingExceeded,
    RateLimitExceeded,
    TransientNetworkError,
)

log = structlog.get_logger("repopulse.engine")

_GRAPHQL_PATH = "/graphql"


@dataclass
class RestPage:
    """One page of a REST listing plus the quota reported alongside it."""

    items: list[dict[str, Any]] = field(default_factory=list)
    quota: QuotaState = field(default_factory=QuotaState)


class GitHubClient:
    """Thin async wrapper around the GitHub REST and GraphQL APIs."""

    def __init__(
        self,
        token: str | None = None,
        *,
        settings: HarvestSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or HarvestSettings()
        resolved_token = token or os.environ.get("GITHUB_TOKEN")
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if resolved_token:
            headers["Authorization"] = f"token {resolved_token}"
        self._client = httpx.AsyncClient(
            base_url="https://api.github.com",
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def get_repository(self, owner: str, repo: str) -> dict[str, Any]:
        """Fetch repository metadata (``created_at``, counts, ...)."""
        response = await self._request_with_retry("GET", f"/repos/{owner}/{repo}")
        return response.json()

    async def get_page(self, path: str, params: dict[str, Any] | None = None) -> RestPage:
        """Fetch one page of a REST listing.

        ``page`` and ``per_page`` must be carried in *params*; this method does
        not follow ``Link`` headers because harvesters track their own offset.
        """
        params = dict(params or {})
        params.setdefault("per_page", self._settings.per_page)
        response = await self._request_with_retry("GET", path, params=params)
        data = response.json()
        items = data if isinstance(data, list) else [data]
        return RestPage(items=items, quota=QuotaState.from_headers(response.headers))

    async def graphql(
        self, query: str, variables: dict[str, Any] | None = None
    ) -> tuple[dict[str, Any], QuotaState]:
        """Run a GraphQL query; returns ``(data, quota)``.

        The quota is read from an inline ``rateLimit`` selection when the
        query asks for one, otherwise from the response headers.
        """
        response = await self._request_with_retry(
            "POST", _GRAPHQL_PATH, json={"query": query, "variables": variables or {}}
        )
        body = response.json()
        errors = body.get("errors") or []
        for error in errors:
            if error.get("type") == "RATE_LIMITED":
                raise RateLimitExceeded(
                    reset_at=_reset_from_headers(response.headers),
                    message=error.get("message", ""),
                )
        data = body.get("data")
        if data is None:
            messages = "; ".join(e.get("message", "") for e in errors) or "empty response"
            raise httpx.HTTPStatusError(
                f"GraphQL error: {messages}", request=response.request, response=response
            )
        quota = QuotaState.from_graphql(data.get("rateLimit"))
        if quota.remaining is None:
            quota = QuotaState.from_headers(response.headers)
        return data, quota

    # ── internal ───────────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying 5xx / timeouts / transport errors.

        Rate limits and pagination ceilings are raised immediately; every
        other 4xx surfaces as :class:`httpx.HTTPStatusError`.
        """
        max_retries = self._settings.max_retries
        last_error = ""
        for attempt in range(max_retries):
            try:
                resp = await self._client.request(method, url, params=params, json=json)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                log.warning(
                    "github.transport_error",
                    url=url,
                    error=type(exc).__name__,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                )
                last_error = type(exc).__name__
            else:
                if resp.status_code < 400:
                    return resp

                message = self._error_message(resp)
                verdict = classify_response(resp.status_code, message, resp.headers)
                if verdict == "ceiling":
                    raise PaginationCeilingExceeded(
                        page=_page_param(params), message=message
                    )
                if verdict == "rate_limited":
                    log.warning(
                        "github.rate_limit",
                        url=url,
                        status=resp.status_code,
                        remaining=resp.headers.get("X-RateLimit-Remaining"),
                    )
                    raise RateLimitExceeded(
                        reset_at=_reset_from_headers(resp.headers),
                        retry_after=self._parse_header_int(resp.headers.get("Retry-After")),
                        message=message,
                    )
                if verdict != "transient":
                    resp.raise_for_status()

                log.warning(
                    "github.server_error",
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                )
                last_error = f"HTTP {resp.status_code}"

            if attempt < max_retries - 1:
                await asyncio.sleep(self._settings.retry_delay)

        raise TransientNetworkError(url, max_retries, last_error)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("message", ""))
        return ""

    @staticmethod
    def _parse_header_int(value: str | None) -> int | None:
        """Safely parse an integer header value."""
        if value is None:
            return None
        try:
            return int(value)
        except (ValueError, TypeError):
            return None


def _reset_from_headers(headers: httpx.Headers) -> datetime | None:
    reset = GitHubClient._parse_header_int(headers.get("X-RateLimit-Reset"))
    if reset is None:
        return None
    return datetime.fromtimestamp(reset, tz=timezone.utc)


def _page_param(params: dict[str, Any] | None) -> int | None:
    if not params or "page" not in params:
        return None
    return int(params["page"])
