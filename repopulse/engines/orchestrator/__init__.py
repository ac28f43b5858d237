"""Fetch orchestrator — strategy selection, checkpoints and persistence."""

from repopulse.engines.orchestrator.runner import (
    FetchOrchestrator,
    FetchOutcome,
    FetchStrategy,
    ResourceOutcome,
    choose_strategy,
    plan_resources,
)

__all__ = [
    "FetchOrchestrator",
    "FetchOutcome",
    "FetchStrategy",
    "ResourceOutcome",
    "choose_strategy",
    "plan_resources",
]
