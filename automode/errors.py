"""Custom exception hierarchy and error classification for auto mode."""

from __future__ import annotations

import asyncio
from typing import Literal

from pydantic import BaseModel

AUTH_REMEDIATION = (
    "Authentication failed: Invalid or expired API key. "
    "Please check your ANTHROPIC_API_KEY, or run 'claude login' to re-authenticate."
)

# Substrings (lowercased) that mark an agent failure as a credential problem.
AUTH_ERROR_SIGNALS: list[str] = [
    "invalid api key",
    "invalid x-api-key",
    "authentication_failed",
    "authentication failed",
    "authentication required",
    "fix external api key",
    "oauth token has expired",
    "credentials have expired",
    "please run /login",
    "401 unauthorized",
]

# Error strings the CLI prints into assistant output when the key is rejected.
# Ordinary agent prose about auth must not match these.
AGENT_OUTPUT_AUTH_SIGNALS: list[str] = [
    "invalid api key",
    "authentication_failed",
    "fix external api key",
]


class AutoModeError(Exception):
    """Base exception for auto mode."""


class AlreadyRunningError(AutoModeError):
    """A run was requested for a feature id already held by the registry."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} is already running")


class FeatureNotFoundError(AutoModeError):
    """Feature id is absent from the feature store."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} not found")


class OperationCancelledError(AutoModeError):
    """Cooperative cancellation was observed."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class FeatureExecutionError(AutoModeError):
    """Error during feature execution."""

    def __init__(self, feature_id: str, message: str):
        self.feature_id = feature_id
        self.detail = message
        super().__init__(f"Feature {feature_id}: {message}")


class AuthenticationError(FeatureExecutionError):
    """The agent backend rejected our credentials. Never retried automatically."""

    def __init__(self, feature_id: str, message: str = AUTH_REMEDIATION):
        super().__init__(feature_id, message)


class CommandError(AutoModeError):
    """An external command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"Command failed ({returncode}): {' '.join(args)}"
        if detail:
            message += f"\n{detail[:2000]}"
        super().__init__(message)


class CommandTimeoutError(AutoModeError):
    """An external command did not finish within its timeout."""

    def __init__(self, args: list[str], timeout: float):
        self.command = list(args)
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:.0f}s: {' '.join(args)}")


class MergeConflictError(AutoModeError):
    """Automatic merge of a feature branch hit conflicts."""

    def __init__(self, branch_name: str, target_branch: str):
        self.branch_name = branch_name
        self.target_branch = target_branch
        super().__init__(
            f"Merge CONFLICT: Automatic merge of \"{branch_name}\" into "
            f"\"{target_branch}\" failed. Please resolve conflicts manually."
        )


class StateCorruptionError(AutoModeError):
    """A feature.json record is unreadable or carries unknown values."""


class ErrorInfo(BaseModel):
    """Classification of a failure for event reporting."""

    kind: Literal["abort", "authentication", "execution"]
    message: str

    @property
    def is_abort(self) -> bool:
        return self.kind == "abort"

    @property
    def is_auth(self) -> bool:
        return self.kind == "authentication"


def is_authentication_message(text: str | None) -> bool:
    """True if the text carries one of the known credential-failure signals."""
    if not text:
        return False
    lowered = text.lower()
    return any(signal in lowered for signal in AUTH_ERROR_SIGNALS)


def is_agent_auth_failure(text: str | None) -> bool:
    """True if assistant text is the CLI's own credential-failure output."""
    if not text:
        return False
    lowered = text.lower()
    return any(signal in lowered for signal in AGENT_OUTPUT_AUTH_SIGNALS)


def classify_error(error: BaseException) -> ErrorInfo:
    """Sort a failure into abort, authentication or generic execution."""
    if isinstance(error, (OperationCancelledError, asyncio.CancelledError)):
        return ErrorInfo(kind="abort", message=str(error) or "Operation cancelled")
    if isinstance(error, AuthenticationError):
        return ErrorInfo(kind="authentication", message=error.detail)
    if isinstance(error, FeatureExecutionError):
        kind = "authentication" if is_authentication_message(error.detail) else "execution"
        return ErrorInfo(kind=kind, message=error.detail)
    message = str(error) or type(error).__name__
    if is_authentication_message(message):
        return ErrorInfo(kind="authentication", message=message)
    return ErrorInfo(kind="execution", message=message)
