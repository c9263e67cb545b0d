"""Cooperative cancellation token threaded through every async boundary."""

from __future__ import annotations

import asyncio

from .errors import OperationCancelledError


class CancellationToken:
    """Idempotent, one-way cancellation signal.

    Holders poll ``cancelled`` / ``raise_if_cancelled()`` between units of
    work, or race ``wait()`` against a long-running await (shell commands,
    sleeps). Once cancelled a token stays cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Feature stopped by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first, in which case raise."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
