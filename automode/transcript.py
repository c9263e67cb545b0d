"""Incremental, throttled persistence of agent output to a transcript file."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("automode")


def session_separator(heading: str) -> str:
    return f"\n\n---\n\n## {heading}\n\n"


class TranscriptWriter:
    """Accumulate agent text and tool use, persisting at most once per interval.

    Use as an async context manager: leaving the block (normally, by
    exception or by cancellation) awaits a final ``flush()`` so the file ends
    up identical to ``content``. Write failures are logged and swallowed so a
    full disk cannot fail an otherwise healthy agent run.
    """

    def __init__(self, path: Path, initial: str = "", debounce_seconds: float = 0.5):
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self._buffer = initial
        self._pending: asyncio.Task[None] | None = None
        self._writing: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def content(self) -> str:
        return self._buffer

    def append_text(self, text: str) -> None:
        if self._buffer and not self._buffer.endswith("\n\n"):
            self._buffer += "\n" if self._buffer.endswith("\n") else "\n\n"
        self._buffer += text
        self._schedule()

    def append_tool_use(self, name: str, tool_input: dict[str, Any] | None = None) -> None:
        if self._buffer and not self._buffer.endswith("\n"):
            self._buffer += "\n"
        self._buffer += f"\nTool: {name}\n"
        if tool_input:
            self._buffer += f"Input: {json.dumps(tool_input, indent=2, default=str)}\n"
        self._schedule()

    def append_raw(self, text: str) -> None:
        self._buffer += text
        self._schedule()

    async def flush(self) -> None:
        """Cancel any scheduled write, wait out one in progress, then persist the buffer."""
        pending, self._pending = self._pending, None
        if pending is not None:
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pending
        for task in list(self._writing):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._write()

    async def __aenter__(self) -> TranscriptWriter:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await asyncio.shield(self.flush())

    def _schedule(self) -> None:
        if self._pending is None:
            self._pending = asyncio.create_task(self._delayed_write())

    async def _delayed_write(self) -> None:
        # While sleeping this task is ``_pending`` and may be cancelled;
        # once writing it moves to ``_writing`` and is awaited instead.
        await asyncio.sleep(self.debounce_seconds)
        task = asyncio.current_task()
        if self._pending is task:
            self._pending = None
        self._writing.add(task)
        try:
            await self._write()
        finally:
            self._writing.discard(task)

    async def _write(self) -> None:
        async with self._lock:
            snapshot = self._buffer
            try:
                await asyncio.to_thread(self._write_sync, snapshot)
            except OSError as e:
                logger.error(f"Failed to write transcript {self.path}: {e}")

    def _write_sync(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, self.path)
