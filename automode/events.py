"""Process-wide publish channel for auto mode lifecycle events.

Delivery is at-most-once and best-effort: there is no buffering or replay, and
a subscriber that raises is logged and skipped. Observers that miss an event
reconcile by re-reading the feature store.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Literal, Union

from pydantic import BaseModel

from .models import Feature

logger = logging.getLogger("automode")


class AutoModeEvent(BaseModel):
    type: str
    feature_id: str | None = None
    project_path: Path | None = None


class FeatureStartEvent(AutoModeEvent):
    type: Literal["feature_start"] = "feature_start"
    feature: Feature | None = None


class FeatureCompleteEvent(AutoModeEvent):
    type: Literal["feature_complete"] = "feature_complete"
    passes: bool
    message: str
    # Re-read from the store after the final status write
    feature: Feature | None = None


class ProgressEvent(AutoModeEvent):
    type: Literal["progress"] = "progress"
    content: str


class ToolEvent(AutoModeEvent):
    type: Literal["tool"] = "tool"
    tool: str
    input: dict[str, Any] = {}


class ErrorEvent(AutoModeEvent):
    type: Literal["error"] = "error"
    error: str
    error_type: Literal["authentication", "execution"] = "execution"


class AllCompleteEvent(AutoModeEvent):
    type: Literal["all_complete"] = "all_complete"
    message: str


AnyEvent = Union[
    FeatureStartEvent,
    FeatureCompleteEvent,
    ProgressEvent,
    ToolEvent,
    ErrorEvent,
    AllCompleteEvent,
]

Subscriber = Callable[[AutoModeEvent], None]


class EventEmitter:
    """Fan out events to synchronous subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: AutoModeEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {event.type}")
