"""Tests for git operations and the worktree manager."""

from __future__ import annotations

from pathlib import Path

import pytest

from automode.errors import CommandError, MergeConflictError
from automode.git_ops import GitClient, GitWorktree, parse_worktree_porcelain
from automode.shell import CommandResult
from automode.worktree import WorktreeManager

from conftest import FakeGit


class ScriptedRunner:
    """Records git invocations; fails those whose subcommand is in ``failures``."""

    def __init__(self, outputs: dict[str, str] | None = None, failures: dict[str, str] | None = None):
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.calls: list[list[str]] = []

    async def __call__(self, args, cwd, *, timeout=None, cancel_token=None, check=True):
        args = [str(a) for a in args]
        self.calls.append(args)
        key = " ".join(args[1:3])
        if key in self.failures:
            if check:
                raise CommandError(args, 1, stdout=self.failures[key])
            return CommandResult(args=args, returncode=1, stdout=self.failures[key])
        return CommandResult(args=args, returncode=0, stdout=self.outputs.get(key, ""))


def test_parse_porcelain(tmp_path: Path) -> None:
    porcelain = "\n".join([
        f"worktree {tmp_path}",
        "HEAD 1111111",
        "branch refs/heads/main",
        "",
        f"worktree {tmp_path / '.worktrees' / 'f1'}",
        "HEAD 2222222",
        "branch refs/heads/feature/f1",
        "",
        "worktree ../detached",
        "HEAD 3333333",
        "detached",
        "",
    ])

    result = parse_worktree_porcelain(porcelain, tmp_path)

    assert result == [
        GitWorktree(path=tmp_path.resolve(), branch="main", head="1111111"),
        GitWorktree(path=(tmp_path / ".worktrees" / "f1").resolve(), branch="feature/f1", head="2222222"),
        GitWorktree(path=(tmp_path.parent / "detached").resolve(), branch=None, head="3333333"),
    ]


def test_parse_porcelain_without_trailing_blank(tmp_path: Path) -> None:
    result = parse_worktree_porcelain(f"worktree {tmp_path}\nbranch refs/heads/dev", tmp_path)
    assert result == [GitWorktree(path=tmp_path.resolve(), branch="dev")]


@pytest.mark.asyncio
async def test_ref_exists_uses_return_code(tmp_path: Path) -> None:
    runner = ScriptedRunner(failures={"rev-parse --verify": ""})
    client = GitClient(runner)

    assert await client.ref_exists(tmp_path, "feature/x") is False
    assert runner.calls == [["git", "rev-parse", "--verify", "--quiet", "feature/x"]]


@pytest.mark.asyncio
async def test_has_changes(tmp_path: Path) -> None:
    dirty = GitClient(ScriptedRunner(outputs={"status --porcelain": " M app.py\n"}))
    clean = GitClient(ScriptedRunner())

    assert await dirty.has_changes(tmp_path) is True
    assert await clean.has_changes(tmp_path) is False


class TestFindExisting:
    @pytest.mark.asyncio
    async def test_finds_branch_binding(self, tmp_path: Path) -> None:
        wt = (tmp_path / "elsewhere").resolve()
        manager = WorktreeManager(FakeGit(worktrees=[GitWorktree(path=wt, branch="feature/a")]))

        assert await manager.find_existing_worktree_for_branch(tmp_path, "feature/a") == wt
        assert await manager.find_existing_worktree_for_branch(tmp_path, "feature/b") is None

    @pytest.mark.asyncio
    async def test_git_failure_is_none(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(failures={"worktree list": "fatal: not a git repository"})
        manager = WorktreeManager(GitClient(runner))

        assert await manager.find_existing_worktree_for_branch(tmp_path, "feature/a") is None


class TestSetupWorktree:
    @pytest.mark.asyncio
    async def test_idempotent(self, tmp_path: Path) -> None:
        git = FakeGit()
        manager = WorktreeManager(git)

        first = await manager.setup_worktree(tmp_path, "f1", "feature/f1")
        second = await manager.setup_worktree(tmp_path, "f1", "feature/f1")

        assert first == second == (tmp_path / ".worktrees" / "f1").resolve()
        assert len([c for c in git.calls if c[0] == "add_worktree"]) == 1

    @pytest.mark.asyncio
    async def test_existing_branch_is_tolerated(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(failures={"branch feature/f1": "fatal: a branch named 'feature/f1' already exists"})
        manager = WorktreeManager(GitClient(runner))

        path = await manager.setup_worktree(tmp_path, "f1", "feature/f1")

        assert path == (tmp_path / ".worktrees" / "f1").resolve()
        assert runner.calls[-1] == ["git", "worktree", "add", str(path), "feature/f1"]

    @pytest.mark.asyncio
    async def test_other_branch_failure_is_logged(self, tmp_path: Path, caplog) -> None:
        runner = ScriptedRunner(failures={
            "branch feature/f1": "fatal: not a valid object name: 'HEAD'",
            "worktree add": "fatal: invalid reference: feature/f1",
        })
        manager = WorktreeManager(GitClient(runner))

        path = await manager.setup_worktree(tmp_path, "f1", "feature/f1")

        assert path == tmp_path.resolve()
        assert "Could not create branch \"feature/f1\"" in caplog.text
        assert "not a valid object name" in caplog.text

    @pytest.mark.asyncio
    async def test_existing_branch_is_not_logged(self, tmp_path: Path, caplog) -> None:
        runner = ScriptedRunner(failures={"branch feature/f1": "fatal: a branch named 'feature/f1' already exists"})
        manager = WorktreeManager(GitClient(runner))

        await manager.setup_worktree(tmp_path, "f1", "feature/f1")

        assert "Could not create branch" not in caplog.text

    @pytest.mark.asyncio
    async def test_creation_failure_falls_back_to_project(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(failures={"worktree add": "fatal: invalid reference"})
        manager = WorktreeManager(GitClient(runner))

        assert await manager.setup_worktree(tmp_path, "f1", "feature/f1") == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_leftover_directory_returned(self, tmp_path: Path) -> None:
        leftover = tmp_path / ".worktrees" / "f1"
        leftover.mkdir(parents=True)
        git = FakeGit()
        manager = WorktreeManager(git)

        assert await manager.setup_worktree(tmp_path, "f1", "feature/f1") == leftover.resolve()
        assert not any(c[0] == "add_worktree" for c in git.calls)


class TestMergeWorktree:
    @pytest.mark.asyncio
    async def test_merge_and_cleanup(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        manager = WorktreeManager(GitClient(runner))
        wt = tmp_path / ".worktrees" / "f1"

        result = await manager.merge_worktree(
            tmp_path, "feature/f1", wt, delete_worktree_and_branch=True,
        )

        assert result.worktree_deleted is True
        assert result.branch_deleted is True
        assert ["git", "merge", "feature/f1", "-m", "Merge feature/f1 into main"] in runner.calls
        assert ["git", "worktree", "remove", str(wt), "--force"] in runner.calls
        assert ["git", "branch", "-D", "feature/f1"] in runner.calls

    @pytest.mark.asyncio
    async def test_squash_commits(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        manager = WorktreeManager(GitClient(runner))

        await manager.merge_worktree(
            tmp_path, "feature/f1", tmp_path, squash=True, message="feat: Add header",
        )

        assert ["git", "merge", "--squash", "feature/f1"] in runner.calls
        assert runner.calls[-1] == ["git", "commit", "-m", "feat: Add header"]

    @pytest.mark.asyncio
    async def test_conflict(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(failures={
            "merge feature/f1": "CONFLICT (content): Merge conflict in app.py",
        })
        manager = WorktreeManager(GitClient(runner))

        with pytest.raises(MergeConflictError, match="feature/f1"):
            await manager.merge_worktree(tmp_path, "feature/f1", tmp_path)

    @pytest.mark.asyncio
    async def test_missing_branch(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(failures={"rev-parse --verify": ""})
        manager = WorktreeManager(GitClient(runner))

        with pytest.raises(CommandError, match="does not exist"):
            await manager.merge_worktree(tmp_path, "feature/gone", tmp_path)

    @pytest.mark.asyncio
    async def test_never_deletes_main(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        manager = WorktreeManager(GitClient(runner))

        result = await manager.merge_worktree(
            tmp_path, "main", tmp_path, target_branch="release", delete_worktree_and_branch=True,
        )

        assert result.branch_deleted is False
        assert not any(c[:3] == ["git", "branch", "-D"] for c in runner.calls)
