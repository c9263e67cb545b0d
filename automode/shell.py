"""Async external command execution with timeout and cooperative cancellation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from .cancellation import CancellationToken
from .errors import CommandError, CommandTimeoutError, OperationCancelledError

logger = logging.getLogger("automode")


class CommandResult(BaseModel):
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    async def __call__(
        self,
        args: Sequence[str],
        cwd: Path,
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
        check: bool = True,
    ) -> CommandResult: ...


async def run_command(
    args: Sequence[str],
    cwd: Path,
    *,
    timeout: float | None = None,
    cancel_token: CancellationToken | None = None,
    check: bool = True,
) -> CommandResult:
    """Run ``args`` in ``cwd`` without a shell.

    Raises CommandError on a non-zero exit (when ``check``) or a missing
    executable, CommandTimeoutError past ``timeout``, and
    OperationCancelledError if ``cancel_token`` fires first. The process is
    killed on timeout and cancellation.
    """
    argv = [str(a) for a in args]
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    logger.debug(f"  $ {' '.join(argv)}  (cwd={cwd})")
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise CommandError(argv, 127, stderr=str(e)) from e

    communicate = asyncio.ensure_future(proc.communicate())
    waiters: set[asyncio.Future] = {communicate}
    cancel_wait: asyncio.Future | None = None
    if cancel_token is not None:
        cancel_wait = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if communicate not in done:
            await _kill(proc, communicate)
            if cancel_wait is not None and cancel_wait in done:
                raise OperationCancelledError(cancel_token.reason or "Operation cancelled")
            raise CommandTimeoutError(argv, timeout or 0.0)
        stdout_b, stderr_b = communicate.result()
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
        if not communicate.done():
            await _kill(proc, communicate)

    result = CommandResult(
        args=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_b.decode("utf-8", errors="replace"),
        stderr=stderr_b.decode("utf-8", errors="replace"),
    )
    if check and not result.ok:
        raise CommandError(argv, result.returncode, result.stdout, result.stderr)
    return result


async def _kill(proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    with contextlib.suppress(Exception):
        await communicate
