"""Lifecycle events and the event bus.

The orchestrator reports what it does through an explicit subscription
interface. Subscribers are plain callables invoked synchronously on the
event loop thread; a failing subscriber is logged and does not affect the
others or the build.

Example:
    >>> bus = EventBus()
    >>> unsubscribe = bus.subscribe(lambda e: print(e.to_dict()))
    >>> bus.emit(BuildStarted(name="@workspace-panels/chat"))
    {'type': 'build-started', 'name': '@workspace-panels/chat', 'timestamp': ...}
    >>> unsubscribe()
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from time import time
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

# =============================================================================
# Inbound
# =============================================================================


@dataclass(frozen=True, slots=True)
class PushEvent:
    """A commit landed on a branch of one unit repository.

    Attributes:
        repo: Workspace-relative repository path, e.g. `panels/chat`.
        branch: Branch name without `refs/heads/`.
        commit: Commit SHA the branch now points at.
    """

    repo: str
    branch: str
    commit: str


# =============================================================================
# Lifecycle events
# =============================================================================


@dataclass(frozen=True, slots=True)
class BuildStarted:
    """Emitted when a unit build is about to run."""

    type: ClassVar[str] = "build-started"

    name: str
    timestamp: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {"type": self.type, "name": self.name, "timestamp": self.timestamp}


@dataclass(frozen=True, slots=True)
class BuildCompleted:
    """Emitted when a unit build is stored.

    Attributes:
        name: Unit name.
        build_key: Key of the stored entry.
        duration_ms: Wall time of the build.
        timestamp: When the build completed.
    """

    type: ClassVar[str] = "build-complete"

    name: str
    build_key: str
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": self.type,
            "name": self.name,
            "build_key": self.build_key,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class BuildFailed:
    """Emitted when a unit build raises."""

    type: ClassVar[str] = "build-error"

    name: str
    error: str
    timestamp: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": self.type,
            "name": self.name,
            "error": self.error,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class ChangeDetected:
    """Emitted once per non-empty batch of changed or added units."""

    type: ClassVar[str] = "change-detected"

    names: tuple[str, ...]
    timestamp: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {"type": self.type, "names": list(self.names), "timestamp": self.timestamp}


@dataclass(frozen=True, slots=True)
class GraphUpdated:
    """Emitted after a full rediscovery swapped in a new graph.

    Attributes:
        units: Unit names of the new graph, in topological order.
        ev_map: New effective versions.
        timestamp: When the swap happened.
    """

    type: ClassVar[str] = "graph-updated"

    units: tuple[str, ...]
    ev_map: dict[str, str]
    timestamp: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": self.type,
            "units": list(self.units),
            "ev_map": dict(self.ev_map),
            "timestamp": self.timestamp,
        }


BuildEvent = BuildStarted | BuildCompleted | BuildFailed | ChangeDetected | GraphUpdated

EventCallback = Callable[[BuildEvent], None]


# =============================================================================
# Bus
# =============================================================================


class EventBus:
    """Synchronous fan-out of lifecycle events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            Function that removes the subscription (idempotent).
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: BuildEvent) -> None:
        """Deliver an event to every subscriber."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event.type)

    def __len__(self) -> int:
        return len(self._subscribers)
