"""Registry of in-flight executions: the single source of truth for "is it running"."""

from __future__ import annotations

from collections.abc import Iterator

from .errors import AlreadyRunningError
from .models import ExecutionRecord


class ExecutionRegistry:
    """Feature id → execution record.

    All methods are synchronous so that ``register`` performs its check and
    insert without yielding to the event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, ExecutionRecord] = {}

    def register(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.feature_id in self._records:
            raise AlreadyRunningError(record.feature_id)
        self._records[record.feature_id] = record
        return record

    def unregister(self, feature_id: str) -> ExecutionRecord | None:
        return self._records.pop(feature_id, None)

    def get(self, feature_id: str) -> ExecutionRecord | None:
        return self._records.get(feature_id)

    def feature_ids(self) -> list[str]:
        return list(self._records)

    def records(self) -> list[ExecutionRecord]:
        return list(self._records.values())

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))
