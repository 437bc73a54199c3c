"""Orchestration: push queue, builder, bundler interface and public API."""

from cairn.orchestration.builder import InFlightCoalescer, UnitBuilder
from cairn.orchestration.bundler import BundleRequest, Bundler, CommandBundler
from cairn.orchestration.events import (
    BuildCompleted,
    BuildEvent,
    BuildFailed,
    BuildStarted,
    ChangeDetected,
    EventBus,
    GraphUpdated,
    PushEvent,
)
from cairn.orchestration.push import PushOrchestrator, PushPhase, PushSource
from cairn.orchestration.state import BuildState, BuildStatus, UnitBuildStatus
from cairn.orchestration.system import BuildSystem, LauncherUnit, create_service_handler

__all__ = [
    # Events
    "BuildCompleted",
    "BuildEvent",
    "BuildFailed",
    "BuildStarted",
    "ChangeDetected",
    "EventBus",
    "GraphUpdated",
    "PushEvent",
    # Building
    "BundleRequest",
    "Bundler",
    "CommandBundler",
    "InFlightCoalescer",
    "UnitBuilder",
    # Orchestration
    "BuildState",
    "BuildStatus",
    "BuildSystem",
    "LauncherUnit",
    "PushOrchestrator",
    "PushPhase",
    "PushSource",
    "UnitBuildStatus",
    "create_service_handler",
]
