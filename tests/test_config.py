"""Tests for configuration loading and log formatting."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from automode.config import AutoModeConfig, load_config
from automode.logging_config import JSONFormatter


class TestDefaults:
    def test_default_values(self):
        config = AutoModeConfig()
        assert config.model == "sonnet"
        assert config.permission_mode == "acceptEdits"
        assert config.data_dir == Path(".automaker")
        assert config.worktrees_dir == Path(".worktrees")
        assert config.transcript_debounce_seconds == 0.5
        assert config.max_resume_attempts == 3
        assert config.verification_timeout_seconds == 120
        assert config.analysis_tools == ["Read", "Glob", "Grep"]
        assert "Bash" in config.allowed_tools
        assert config.use_worktrees is False
        assert config.mock_agent is False

    def test_default_verification_steps(self):
        config = AutoModeConfig()
        assert [s.name for s in config.verification_steps] == [
            "Lint", "Type check", "Tests", "Build",
        ]
        assert config.verification_steps[2].command == "npm test"


class TestLoadConfig:
    def test_loads_from_cli_args(self, tmp_path: Path):
        config = load_config({
            "project": str(tmp_path),
            "model": "opus",
            "use_worktrees": True,
        })
        assert config.project_dir == tmp_path.resolve()
        assert config.model == "opus"
        assert config.use_worktrees is True

    def test_ignores_none_cli_args(self, tmp_path: Path):
        config = load_config({
            "project": str(tmp_path),
            "model": None,
            "mock_agent": None,
        })
        assert config.model == "sonnet"  # default
        assert config.mock_agent is False

    def test_loads_toml(self, tmp_path: Path):
        toml_content = """\
model = "haiku"
max_resume_attempts = 5
commit_trailer = "Built by the night shift"

[[verification_steps]]
name = "Tests"
command = "pytest -q"
"""
        (tmp_path / "automode.toml").write_text(toml_content)

        config = load_config({"project": str(tmp_path)})
        assert config.model == "haiku"
        assert config.max_resume_attempts == 5
        assert config.commit_trailer == "Built by the night shift"
        assert len(config.verification_steps) == 1
        assert config.verification_steps[0].command == "pytest -q"

    def test_cli_overrides_toml(self, tmp_path: Path):
        (tmp_path / "automode.toml").write_text('model = "haiku"\n')

        config = load_config({
            "project": str(tmp_path),
            "model": "opus",
        })
        assert config.model == "opus"

    def test_toml_cannot_move_project_dir(self, tmp_path: Path):
        (tmp_path / "automode.toml").write_text('project_dir = "/somewhere/else"\n')

        config = load_config({"project": str(tmp_path)})
        assert config.project_dir == tmp_path.resolve()


class TestJSONFormatter:
    def test_fields(self):
        record = logging.LogRecord("automode", logging.INFO, __file__, 1, "Feature %s done", ("f1",), None)

        entry = json.loads(JSONFormatter().format(record))

        assert set(entry) == {"timestamp", "level", "message", "module"}
        assert entry["message"] == "Feature f1 done"
        assert entry["level"] == "INFO"

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("automode", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]
