"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from automode.agent import AssistantEvent, ResultEvent, TextBlock, ToolUseBlock
from automode.config import AutoModeConfig, VerificationStep
from automode.engine import AutoModeEngine
from automode.events import EventEmitter
from automode.git_ops import GitWorktree
from automode.shell import CommandResult


def write_feature(project: Path, feature_id: str, **fields) -> Path:
    """Write a feature.json record in the on-disk (camelCase) shape."""
    record = {"id": feature_id, "description": f"Feature {feature_id}", "status": "backlog"}
    record.update(fields)
    path = project / ".automaker" / "features" / feature_id / "feature.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record, indent=2) + "\n")
    return path


def read_feature(project: Path, feature_id: str) -> dict:
    path = project / ".automaker" / "features" / feature_id / "feature.json"
    return json.loads(path.read_text())


def transcript_path(project: Path, feature_id: str) -> Path:
    return project / ".automaker" / "features" / feature_id / "agent-output.md"


class FakeAgent:
    """Replays a fixed event script; optionally blocks until cancelled."""

    def __init__(self, events=None, block: bool = False, raise_exc: Exception | None = None):
        self.events = list(events) if events is not None else [
            AssistantEvent(content=[TextBlock(text="Working on it")]),
            AssistantEvent(content=[ToolUseBlock(name="Edit", input={"file_path": "app.py"})]),
            AssistantEvent(content=[TextBlock(text="Done")]),
            ResultEvent(subtype="success", result="Done"),
        ]
        self.block = block
        self.raise_exc = raise_exc
        self.requests = []
        self.started = asyncio.Event()

    async def execute(self, request, cancel_token):
        self.requests.append(request)
        self.started.set()
        for event in self.events:
            yield event
            await asyncio.sleep(0)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.block:
            await cancel_token.wait()
            cancel_token.raise_if_cancelled()


class FakeGit:
    """In-memory stand-in for GitClient."""

    def __init__(self, worktrees=None, changes: bool = True, head: str = "abc123def456"):
        self.worktrees: list[GitWorktree] = list(worktrees or [])
        self.changes = changes
        self.head = head
        self.calls: list[tuple] = []

    async def worktree_list(self, repo, *, cancel_token=None):
        self.calls.append(("worktree_list", repo))
        return list(self.worktrees)

    async def create_branch(self, repo, branch, *, cancel_token=None):
        self.calls.append(("create_branch", branch))

    async def add_worktree(self, repo, path, branch, *, cancel_token=None):
        self.calls.append(("add_worktree", path, branch))
        Path(path).mkdir(parents=True, exist_ok=True)
        self.worktrees.append(GitWorktree(path=Path(path), branch=branch))

    async def has_changes(self, cwd):
        self.calls.append(("has_changes", cwd))
        return self.changes

    async def add_all(self, cwd):
        self.calls.append(("add_all", cwd))

    async def commit(self, cwd, message):
        self.calls.append(("commit", cwd, message))

    async def rev_parse_head(self, cwd):
        return self.head


class FakeRunner:
    """Command runner returning canned exit codes keyed by the first word of the command."""

    def __init__(self, failures=()):
        self.failures = set(failures)
        self.commands: list[list[str]] = []

    async def __call__(self, args, cwd, *, timeout=None, cancel_token=None, check=True):
        args = [str(a) for a in args]
        self.commands.append(args)
        code = 1 if " ".join(args) in self.failures else 0
        return CommandResult(args=args, returncode=code, stdout="ok" if code == 0 else "", stderr="boom" if code else "")


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """A project with three backlog features."""
    project = tmp_path / "project"
    project.mkdir()
    write_feature(project, "feat-1", description="Add header component", priority=1)
    write_feature(project, "feat-2", description="Add footer component", priority=2)
    write_feature(project, "feat-3", description="Add navigation", status="verified")
    return project


@pytest.fixture
def config(tmp_project: Path) -> AutoModeConfig:
    return AutoModeConfig(
        project_dir=tmp_project,
        structured_log=False,
        transcript_debounce_seconds=0.01,
        loop_idle_seconds=0.01,
        loop_error_backoff_seconds=0.01,
        verification_steps=[
            VerificationStep(name="Lint", command="npm run lint"),
            VerificationStep(name="Type check", command="npm run typecheck"),
            VerificationStep(name="Tests", command="npm test"),
            VerificationStep(name="Build", command="npm run build"),
        ],
    )


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def make_engine(config: AutoModeConfig, events: list):
    """Factory for engines wired to fakes; every event lands in ``events``."""

    def _make(agent=None, git=None, runner=None) -> AutoModeEngine:
        emitter = EventEmitter()
        emitter.subscribe(events.append)
        return AutoModeEngine(
            config,
            agent=agent or FakeAgent(),
            git=git or FakeGit(),
            events=emitter,
            runner=runner or FakeRunner(),
        )

    return _make
