"""Configuration loading: defaults → automode.toml → CLI flags."""

from __future__ import annotations

import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class VerificationStep(BaseModel):
    """One named command in the verification sequence."""

    name: str
    command: str


def _default_verification_steps() -> list[VerificationStep]:
    return [
        VerificationStep(name="Lint", command="npm run lint"),
        VerificationStep(name="Type check", command="npm run typecheck"),
        VerificationStep(name="Tests", command="npm test"),
        VerificationStep(name="Build", command="npm run build"),
    ]


class AutoModeConfig(BaseModel):
    """All auto mode settings. Loaded from defaults, then automode.toml, then CLI flags."""

    # Project paths (relative to the project root)
    project_dir: Path = Field(default_factory=lambda: Path.cwd())
    data_dir: Path = Path(".automaker")
    worktrees_dir: Path = Path(".worktrees")

    # Agent
    model: str = "sonnet"
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions"] = "acceptEdits"
    allowed_tools: list[str] = Field(default_factory=lambda: [
        "Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebFetch", "WebSearch",
    ])
    analysis_tools: list[str] = Field(default_factory=lambda: ["Read", "Glob", "Grep"])
    max_turns: int = 200
    analysis_max_turns: int = 5
    mock_agent: bool = False

    # Execution
    use_worktrees: bool = False
    transcript_debounce_seconds: float = 0.5
    max_resume_attempts: int = 3
    loop_idle_seconds: float = 3.0
    loop_error_backoff_seconds: float = 5.0
    max_loop_failures: int = 3

    # Verification
    verification_steps: list[VerificationStep] = Field(default_factory=_default_verification_steps)
    verification_timeout_seconds: float = 120.0

    # Git
    commit_trailer: str = "Implemented by auto mode"
    merge_target_branch: str = "main"

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path(".automaker/logs")
    structured_log: bool = True


def load_config(cli_args: dict[str, Any]) -> AutoModeConfig:
    """Load config from defaults → automode.toml → CLI args."""
    project_dir = Path(cli_args.get("project", ".")).resolve()
    toml_path = project_dir / "automode.toml"

    config_data: dict[str, Any] = {"project_dir": project_dir}

    if toml_path.exists():
        with open(toml_path, "rb") as f:
            toml_data = tomllib.load(f)
        config_data.update(toml_data)

    # CLI overrides (only non-None values)
    for key, value in cli_args.items():
        if value is not None and key != "project":
            config_data[key] = value

    config_data["project_dir"] = project_dir

    return AutoModeConfig(**config_data)
