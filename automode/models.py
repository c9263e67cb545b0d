"""Data models for auto mode."""

from __future__ import annotations

import mimetypes
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .cancellation import CancellationToken

JUST_FINISHED_WINDOW = timedelta(minutes=2)


class FeatureStatus(str, Enum):
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"


class _CamelModel(BaseModel):
    """Fields stored camelCase on disk, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageAttachment(_CamelModel):
    path: str
    filename: str
    mime_type: str = "image/png"

    @classmethod
    def from_path(cls, path: str | Path) -> ImageAttachment:
        p = Path(path)
        mime_type, _ = mimetypes.guess_type(p.name)
        return cls(path=str(p), filename=p.name, mime_type=mime_type or "image/png")


class Feature(_CamelModel):
    """A unit of backlog work. Unknown keys written by the board editor survive round-trips."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    category: str | None = None
    description: str = ""
    spec: str | None = None
    status: FeatureStatus = FeatureStatus.BACKLOG
    branch_name: str | None = None
    model: str | None = None
    skip_tests: bool = False
    priority: int | None = None
    image_paths: list[ImageAttachment] = Field(default_factory=list)
    error: str | None = None
    just_finished_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("image_paths", mode="before")
    @classmethod
    def _upgrade_bare_paths(cls, value: Any) -> Any:
        # Older records store plain path strings
        if not isinstance(value, list):
            return value
        return [
            ImageAttachment.from_path(item) if isinstance(item, str) else item
            for item in value
        ]

    def is_just_finished(self, now: datetime | None = None) -> bool:
        if self.just_finished_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        finished = self.just_finished_at
        if finished.tzinfo is None:
            finished = finished.replace(tzinfo=timezone.utc)
        return now - finished < JUST_FINISHED_WINDOW


class ExecutionRecord(BaseModel):
    """In-memory state for one running feature. Never persisted."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    feature_id: str
    project_path: Path
    worktree_path: Path | None = None
    branch_name: str | None = None
    cancel_token: CancellationToken = Field(default_factory=CancellationToken)
    is_auto_mode: bool = False
    started_at: float = Field(default_factory=time.monotonic)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


class RunningAgentInfo(BaseModel):
    feature_id: str
    project_path: Path
    project_name: str
    is_auto_mode: bool
    worktree_path: Path | None = None
    branch_name: str | None = None
    elapsed_seconds: float = 0.0


class RunOutcome(BaseModel):
    """Result of an implementation, resume or follow-up run."""

    feature_id: str
    passes: bool
    cancelled: bool = False
    message: str = ""
    duration_seconds: float = 0.0


class StepResult(BaseModel):
    name: str
    passed: bool
    output: str = ""


class VerificationResult(BaseModel):
    feature_id: str
    passes: bool
    message: str
    failed_step: str | None = None
    cancelled: bool = False
    steps: list[StepResult] = Field(default_factory=list)


class MergeResult(BaseModel):
    merged_branch: str
    target_branch: str
    worktree_deleted: bool = False
    branch_deleted: bool = False
