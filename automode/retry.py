"""Bounded resume retries for agent runs that end without finishing."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import (
    AlreadyRunningError,
    FeatureNotFoundError,
    StateCorruptionError,
    classify_error,
)
from .events import ProgressEvent
from .models import FeatureStatus, RunOutcome
from .transcript import session_separator

if TYPE_CHECKING:
    from .engine import AutoModeEngine

logger = logging.getLogger("automode")

# Failures that another attempt cannot fix
_NOT_RETRIABLE = (AlreadyRunningError, FeatureNotFoundError, StateCorruptionError)


async def resume_with_retries(
    engine: AutoModeEngine,
    project_path: Path,
    feature_id: str,
    use_worktrees: bool = False,
    max_attempts: int | None = None,
) -> RunOutcome:
    """Resume a feature, retrying while it fails and is still ``in_progress``.

    Before each retry an ``Auto-retry #n`` marker is appended to the
    transcript so the history shows where every attempt starts. Authentication
    failures and cancellations are never retried.
    """
    project_path = Path(project_path).resolve()
    limit = engine.config.max_resume_attempts if max_attempts is None else max_attempts
    retries = 0

    while True:
        try:
            return await engine.resume_feature(project_path, feature_id, use_worktrees)
        except _NOT_RETRIABLE:
            raise
        except Exception as e:
            if classify_error(e).kind != "execution" or retries >= limit:
                raise
            feature = await asyncio.to_thread(engine.store.load, project_path, feature_id)
            if feature is None or feature.status != FeatureStatus.IN_PROGRESS:
                raise

            retries += 1
            logger.warning(
                f"Feature {feature_id} attempt failed ({e}); auto-retry {retries}/{limit}"
            )
            marker = session_separator(f"Auto-retry #{retries}")
            await asyncio.to_thread(engine.context.append, project_path, feature_id, marker)
            engine.events.emit(ProgressEvent(
                feature_id=feature_id,
                project_path=project_path,
                content=f"Auto-retry #{retries}: resuming after failure",
            ))
