"""Durable state: one feature.json and one agent-output.md per feature.

Layout under ``<project>/<data_dir>``::

    features/<id>/feature.json
    features/<id>/agent-output.md
    features/<id>/images/
    project-analysis.md

All methods are synchronous; the engine calls them through
``asyncio.to_thread`` so the event loop never blocks on disk.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .errors import StateCorruptionError
from .models import Feature, FeatureStatus, ImageAttachment

logger = logging.getLogger("automode")

FEATURE_FILE = "feature.json"
TRANSCRIPT_FILE = "agent-output.md"
IMAGES_DIR = "images"
ANALYSIS_FILE = "project-analysis.md"


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a sibling tmp file, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
    os.replace(tmp_path, path)


class FeatureStore:
    """Per-feature JSON records with atomic writes."""

    def __init__(self, data_dir: Path = Path(".automaker")):
        self.data_dir = data_dir

    def root(self, project_path: Path) -> Path:
        return Path(project_path) / self.data_dir

    def features_dir(self, project_path: Path) -> Path:
        return self.root(project_path) / "features"

    def feature_dir(self, project_path: Path, feature_id: str) -> Path:
        return self.features_dir(project_path) / feature_id

    def feature_path(self, project_path: Path, feature_id: str) -> Path:
        return self.feature_dir(project_path, feature_id) / FEATURE_FILE

    def images_dir(self, project_path: Path, feature_id: str) -> Path:
        return self.feature_dir(project_path, feature_id) / IMAGES_DIR

    def analysis_path(self, project_path: Path) -> Path:
        return self.root(project_path) / ANALYSIS_FILE

    def load(self, project_path: Path, feature_id: str) -> Feature | None:
        """Return the feature, or None if it has no record."""
        path = self.feature_path(project_path, feature_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return self._parse(path, raw)

    def save(self, project_path: Path, feature: Feature) -> None:
        data = feature.model_dump(mode="json", by_alias=True, exclude_none=True)
        _atomic_write_text(
            self.feature_path(project_path, feature.id),
            json.dumps(data, indent=2) + "\n",
        )

    def update_status(
        self,
        project_path: Path,
        feature_id: str,
        status: FeatureStatus,
        error: str | None = None,
    ) -> Feature | None:
        """Set status and its bookkeeping fields. Returns None if the record is gone.

        ``justFinishedAt`` is stamped only on entry to ``waiting_approval`` and
        cleared otherwise; ``error`` is cleared on success and replaced when a
        new one is given.
        """
        feature = self.load(project_path, feature_id)
        if feature is None:
            logger.warning(f"Cannot set status of {feature_id}: no feature record")
            return None

        now = datetime.now(timezone.utc)
        feature.status = status
        feature.updated_at = now
        if status == FeatureStatus.WAITING_APPROVAL:
            feature.just_finished_at = now
        else:
            feature.just_finished_at = None
        if status in (FeatureStatus.WAITING_APPROVAL, FeatureStatus.VERIFIED):
            feature.error = None
        elif error is not None:
            feature.error = error

        self.save(project_path, feature)
        return feature

    def list_features(self, project_path: Path) -> list[Feature]:
        """Load every readable feature record. Corrupt records are logged and skipped."""
        features_dir = self.features_dir(project_path)
        if not features_dir.is_dir():
            return []
        features = []
        for entry in sorted(features_dir.iterdir()):
            if not (entry / FEATURE_FILE).is_file():
                continue
            try:
                feature = self.load(project_path, entry.name)
            except StateCorruptionError as e:
                logger.warning(str(e))
                continue
            if feature is not None:
                features.append(feature)
        return features

    def copy_images(
        self,
        project_path: Path,
        feature_id: str,
        image_paths: Iterable[str | Path],
    ) -> list[ImageAttachment]:
        """Copy attachments into the feature's images dir. Unreadable sources are skipped."""
        images_dir = self.images_dir(project_path, feature_id)
        images_dir.mkdir(parents=True, exist_ok=True)
        copied: list[ImageAttachment] = []
        for source in image_paths:
            source = Path(source)
            dest = (images_dir / source.name).resolve()
            try:
                if source.resolve() != dest:
                    shutil.copyfile(source, dest)
            except OSError as e:
                logger.error(f"Failed to copy image {source} for {feature_id}: {e}")
                continue
            copied.append(ImageAttachment.from_path(dest))
        return copied

    def _parse(self, path: Path, raw: str) -> Feature:
        try:
            return Feature.model_validate_json(raw)
        except ValidationError as e:
            raise StateCorruptionError(f"Invalid feature record {path}: {e}") from e


def select_next_feature(features: Iterable[Feature], skip: Iterable[str] = ()) -> Feature | None:
    """Return the highest-priority backlog feature not in ``skip``.

    Lower ``priority`` wins; features without one come after, ordered by id.
    """
    skipped = set(skip)
    candidates = [
        f for f in features
        if f.status == FeatureStatus.BACKLOG and f.id not in skipped
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda f: (f.priority is None, f.priority or 0, f.id))
    return candidates[0]


class ContextStore:
    """Agent transcripts, one markdown file per feature."""

    def __init__(self, data_dir: Path = Path(".automaker")):
        self.data_dir = data_dir

    def transcript_path(self, project_path: Path, feature_id: str) -> Path:
        return Path(project_path) / self.data_dir / "features" / feature_id / TRANSCRIPT_FILE

    def read(self, project_path: Path, feature_id: str) -> str:
        """Return the transcript, or an empty string if there is none."""
        try:
            return self.transcript_path(project_path, feature_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def append(self, project_path: Path, feature_id: str, content: str) -> None:
        path = self.transcript_path(project_path, feature_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(content)

    def delete(self, project_path: Path, feature_id: str) -> bool:
        path = self.transcript_path(project_path, feature_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Deleted transcript for {feature_id}")
        return True
