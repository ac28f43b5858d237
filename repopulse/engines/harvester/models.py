"""Data models for the harvester engine.

Raw events are plain frozen dataclasses, produced per run and consumed
immediately.  Resume positions and fetch state are pydantic models because
they are persisted as JSON on the repository row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator

from repopulse.exceptions import MissingRepositoryMetadata

ResourceKind = Literal["stars", "forks", "issues", "prs", "commits"]

RESOURCE_KINDS: tuple[ResourceKind, ...] = ("stars", "forks", "issues", "prs", "commits")

# ── raw events ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StarEvent:
    user: str
    starred_at: datetime


@dataclass(frozen=True)
class ForkEvent:
    owner: str
    created_at: datetime


@dataclass(frozen=True)
class IssueEvent:
    number: int
    state: str
    opened_at: datetime
    closed_at: datetime | None = None


@dataclass(frozen=True)
class PullRequestEvent:
    number: int
    state: str
    opened_at: datetime
    closed_at: datetime | None = None
    merged_at: datetime | None = None


@dataclass(frozen=True)
class CommitEvent:
    sha: str
    author: str | None
    authored_at: datetime


RawEvent = Union[StarEvent, ForkEvent, IssueEvent, PullRequestEvent, CommitEvent]


# ── repository metadata ───────────────────────────────────────────────────


@dataclass(frozen=True)
class RepositoryInfo:
    """Summary of the upstream repository at the time of the run."""

    full_name: str
    created_at: datetime
    description: str | None = None
    language: str | None = None
    stargazers_count: int | None = None
    forks_count: int | None = None
    open_issues_count: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RepositoryInfo:
        """Build from a ``GET /repos/{owner}/{repo}`` payload.

        Raises :class:`MissingRepositoryMetadata` when ``created_at`` is
        missing or unparseable.
        """
        raw = data.get("created_at") if isinstance(data, dict) else None
        try:
            created_at = datetime.fromisoformat(raw.replace("Z", "+00:00")) if raw else None
        except (ValueError, AttributeError):
            created_at = None
        if created_at is None:
            raise MissingRepositoryMetadata("created_at missing or invalid")
        return cls(
            full_name=data.get("full_name") or "",
            created_at=created_at,
            description=data.get("description"),
            language=data.get("language"),
            stargazers_count=data.get("stargazers_count"),
            forks_count=data.get("forks_count"),
            open_issues_count=data.get("open_issues_count"),
        )

    def columns(self) -> dict[str, Any]:
        """Values for the metadata columns of the repositories table."""
        return {
            "description": self.description,
            "language": self.language,
            "stargazers_count": self.stargazers_count,
            "forks_count": self.forks_count,
            "open_issues_count": self.open_issues_count,
        }


# ── resume positions ──────────────────────────────────────────────────────


class CursorPosition(BaseModel):
    """Opaque cursor into a cursor-paginated collection (None = from the start)."""

    kind: Literal["cursor"] = "cursor"
    cursor: str | None = None

    def token(self) -> str:
        return f"cursor:{self.cursor or ''}"


class PagePosition(BaseModel):
    """Next page to request from an offset-paginated collection."""

    kind: Literal["page"] = "page"
    page: int = Field(default=1, ge=1)

    def token(self) -> str:
        return f"page:{self.page}"


class DatePosition(BaseModel):
    """``since`` filter for a date-filtered collection.

    ``until`` and ``high_water`` are only set when a newest-first listing was
    cut short: the next run continues backwards from ``until`` and, once that
    window is exhausted, advances ``since`` to ``high_water``.
    """

    kind: Literal["date"] = "date"
    since: date | None = None
    until: datetime | None = None
    high_water: date | None = None

    def token(self) -> str:
        since = self.since.isoformat() if self.since else ""
        until = self.until.isoformat() if self.until else ""
        return f"date:{since}..{until}"


Position = Annotated[
    Union[CursorPosition, PagePosition, DatePosition],
    Field(discriminator="kind"),
]

_POSITION_TYPES: dict[str, type[BaseModel]] = {
    "stars": CursorPosition,
    "forks": PagePosition,
    "prs": PagePosition,
    "issues": DatePosition,
    "commits": DatePosition,
}


def position_type(kind: ResourceKind) -> type[BaseModel]:
    """Return the position model a resource kind resumes with."""
    return _POSITION_TYPES[kind]


# ── fetch state ───────────────────────────────────────────────────────────


class ResourceFetchState(BaseModel):
    """Durable resume state for one resource kind."""

    position: Position | None = None
    limited: bool = False
    in_progress: bool = False
    segments: list[str] = Field(default_factory=list)


class RepositoryFetchState(BaseModel):
    """The five-entry FetchCursor bag, one state per resource kind."""

    stars: ResourceFetchState = Field(default_factory=ResourceFetchState)
    forks: ResourceFetchState = Field(default_factory=ResourceFetchState)
    issues: ResourceFetchState = Field(default_factory=ResourceFetchState)
    prs: ResourceFetchState = Field(default_factory=ResourceFetchState)
    commits: ResourceFetchState = Field(default_factory=ResourceFetchState)

    @model_validator(mode="after")
    def _check_position_kinds(self) -> RepositoryFetchState:
        for kind in RESOURCE_KINDS:
            position = getattr(self, kind).position
            expected = _POSITION_TYPES[kind]
            if position is not None and not isinstance(position, expected):
                raise ValueError(
                    f"{kind} resumes with {expected.__name__}, got {type(position).__name__}"
                )
        return self

    def get(self, kind: ResourceKind) -> ResourceFetchState:
        return getattr(self, kind)

    def with_state(self, kind: ResourceKind, state: ResourceFetchState) -> RepositoryFetchState:
        """Return a copy with *kind* replaced (last write wins per kind)."""
        return self.model_copy(update={kind: state})

    @property
    def any_limited(self) -> bool:
        return any(self.get(k).limited for k in RESOURCE_KINDS)

    @property
    def any_in_progress(self) -> bool:
        return any(self.get(k).in_progress for k in RESOURCE_KINDS)


# ── harvest results ───────────────────────────────────────────────────────


@dataclass
class Checkpoint:
    """Events gathered since the previous flush, plus the position after them."""

    kind: ResourceKind
    items: list[RawEvent]
    position: CursorPosition | PagePosition | DatePosition | None


@dataclass
class HarvestResult:
    """Outcome of one harvester run.

    ``items`` only holds events that were not already handed to the save sink;
    ``flushed`` counts the ones that were.
    """

    kind: ResourceKind
    items: list[RawEvent] = field(default_factory=list)
    last_position: CursorPosition | PagePosition | DatePosition | None = None
    start_position: CursorPosition | PagePosition | DatePosition | None = None
    exhausted: bool = False
    hit_pagination_ceiling: bool = False
    hit_rate_limit: bool = False
    cancelled: bool = False
    flushed: int = 0
    pages: int = 0

    @property
    def items_so_far(self) -> int:
        return self.flushed + len(self.items)

    @property
    def limited(self) -> bool:
        """True when another run is needed to reach the end of the collection."""
        return not self.exhausted
