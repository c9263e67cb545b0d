"""Composition root: wire one engine with its collaborators."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from .agent import AgentExecutor, ClaudeAgentExecutor, MockAgentExecutor
from .engine import AutoModeEngine
from .events import EventEmitter
from .git_ops import GitClient
from .logging_config import setup_logger
from .registry import ExecutionRegistry
from .shell import run_command
from .store import ContextStore, FeatureStore
from .worktree import WorktreeManager

if TYPE_CHECKING:
    from .config import AutoModeConfig

MOCK_AGENT_ENV = "AUTOMODE_MOCK_AGENT"


def use_mock_agent(config: AutoModeConfig) -> bool:
    return config.mock_agent or os.environ.get(MOCK_AGENT_ENV, "").lower() in ("1", "true", "yes")


def build_engine(
    config: AutoModeConfig,
    events: EventEmitter | None = None,
    agent: AgentExecutor | None = None,
) -> AutoModeEngine:
    """Build an engine; the registry and emitter it owns are shared by all its runs."""
    logger = setup_logger(config)

    if agent is None:
        if use_mock_agent(config):
            logger.info("Mock agent enabled: no model calls will be made")
            agent = MockAgentExecutor()
        else:
            agent = ClaudeAgentExecutor()

    git = GitClient(run_command)
    engine = AutoModeEngine(
        config,
        store=FeatureStore(config.data_dir),
        context=ContextStore(config.data_dir),
        git=git,
        worktrees=WorktreeManager(git, config.worktrees_dir),
        agent=agent,
        events=events or EventEmitter(),
        registry=ExecutionRegistry(),
        runner=run_command,
    )
    logger.debug(f"Engine ready for {config.project_dir}")
    return engine
