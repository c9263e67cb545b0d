"""Git operations used by the engine and worktree manager.

Each method maps to a single git command so callers can reason about side
effects. Commands run through an injectable async ``CommandRunner`` (by
default ``shell.run_command``) with the repository or worktree directory as
the working directory. Failures raise ``CommandError`` unless noted.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .cancellation import CancellationToken
from .errors import CommandError
from .shell import CommandRunner, run_command


@dataclass(frozen=True)
class GitWorktree:
    path: Path
    branch: str | None = None
    head: str | None = None


def parse_worktree_porcelain(output: str, repo: Path) -> list[GitWorktree]:
    """Parse ``git worktree list --porcelain``.

    Branch names are returned without ``refs/heads/``; relative paths are
    resolved against ``repo`` so the result is always absolute.
    """
    result: list[GitWorktree] = []
    path: Path | None = None
    branch: str | None = None
    head: str | None = None

    def flush() -> None:
        nonlocal path, branch, head
        if path is not None:
            result.append(GitWorktree(path=path, branch=branch, head=head))
        path = branch = head = None

    for line in output.splitlines():
        if not line.strip():
            flush()
            continue
        if line.startswith("worktree "):
            flush()
            raw = Path(line.split(" ", 1)[1].strip())
            path = (raw if raw.is_absolute() else Path(repo) / raw).resolve()
        elif line.startswith("branch "):
            branch = line.split(" ", 1)[1].strip().removeprefix("refs/heads/")
        elif line.startswith("HEAD "):
            head = line.split(" ", 1)[1].strip()

    flush()
    return result


class GitClient:
    def __init__(self, runner: CommandRunner = run_command):
        self._run = runner

    async def worktree_list(
        self, repo: Path, *, cancel_token: CancellationToken | None = None,
    ) -> list[GitWorktree]:
        out = await self._git(["worktree", "list", "--porcelain"], repo, cancel_token)
        return parse_worktree_porcelain(out, repo)

    async def ref_exists(
        self, repo: Path, ref: str, *, cancel_token: CancellationToken | None = None,
    ) -> bool:
        result = await self._run(
            ["git", "rev-parse", "--verify", "--quiet", ref],
            repo, cancel_token=cancel_token, check=False,
        )
        return result.returncode == 0

    async def create_branch(
        self, repo: Path, branch: str, *, cancel_token: CancellationToken | None = None,
    ) -> None:
        await self._git(["branch", branch], repo, cancel_token)

    async def add_worktree(
        self, repo: Path, path: Path, branch: str, *, cancel_token: CancellationToken | None = None,
    ) -> None:
        await self._git(["worktree", "add", str(path), branch], repo, cancel_token)

    async def remove_worktree(self, repo: Path, path: Path) -> None:
        await self._git(["worktree", "remove", str(path), "--force"], repo)

    async def prune_worktrees(self, repo: Path) -> None:
        await self._git(["worktree", "prune"], repo)

    async def delete_branch(self, repo: Path, branch: str) -> None:
        await self._git(["branch", "-D", branch], repo)

    async def has_changes(self, cwd: Path) -> bool:
        out = await self._git(["status", "--porcelain"], cwd)
        return bool(out.strip())

    async def add_all(self, cwd: Path) -> None:
        await self._git(["add", "-A"], cwd)

    async def commit(self, cwd: Path, message: str) -> None:
        await self._git(["commit", "-m", message], cwd)

    async def rev_parse_head(self, cwd: Path) -> str:
        return (await self._git(["rev-parse", "HEAD"], cwd)).strip()

    async def merge(self, repo: Path, branch: str, *, message: str, squash: bool = False) -> None:
        if squash:
            await self._git(["merge", "--squash", branch], repo)
        else:
            await self._git(["merge", branch, "-m", message], repo)

    async def _git(
        self, args: list[str], cwd: Path, cancel_token: CancellationToken | None = None,
    ) -> str:
        result = await self._run(["git", *args], cwd, cancel_token=cancel_token)
        return result.stdout


def is_conflict(error: CommandError) -> bool:
    output = f"{error.stdout} {error.stderr}"
    return "CONFLICT" in output or "Automatic merge failed" in output
