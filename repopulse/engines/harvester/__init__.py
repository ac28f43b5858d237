"""Harvester engine — paginated GitHub collection without DB access."""

from repopulse.engines.harvester.github_client import GitHubClient, RestPage
from repopulse.engines.harvester.governor import QuotaState, WaitDecision, classify_response, decide
from repopulse.engines.harvester.harvesters import (
    CommitsHarvester,
    ForksHarvester,
    IssuesHarvester,
    PullRequestsHarvester,
    ResourceHarvester,
    StarsHarvester,
    build_harvesters,
)
from repopulse.engines.harvester.models import (
    RESOURCE_KINDS,
    Checkpoint,
    CursorPosition,
    DatePosition,
    HarvestResult,
    PagePosition,
    RepositoryFetchState,
    RepositoryInfo,
    ResourceFetchState,
)
from repopulse.engines.harvester.progress import CancelToken, ProgressChannel, ProgressEvent

__all__ = [
    "RESOURCE_KINDS",
    "CancelToken",
    "Checkpoint",
    "CommitsHarvester",
    "CursorPosition",
    "DatePosition",
    "ForksHarvester",
    "GitHubClient",
    "HarvestResult",
    "IssuesHarvester",
    "PagePosition",
    "ProgressChannel",
    "ProgressEvent",
    "PullRequestsHarvester",
    "QuotaState",
    "RepositoryFetchState",
    "RepositoryInfo",
    "ResourceFetchState",
    "ResourceHarvester",
    "RestPage",
    "StarsHarvester",
    "WaitDecision",
    "build_harvesters",
    "classify_response",
    "decide",
]
