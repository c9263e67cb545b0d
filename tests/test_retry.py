"""Tests for the bounded resume retry wrapper."""

from __future__ import annotations

from pathlib import Path

import pytest

from automode.agent import AgentErrorEvent, AssistantEvent, ResultEvent, TextBlock
from automode.errors import AuthenticationError, FeatureExecutionError
from automode.retry import resume_with_retries

from conftest import FakeAgent, read_feature, transcript_path


class FlakyAgent(FakeAgent):
    """Fails the first ``failures`` sessions, then succeeds."""

    def __init__(self, failures: int, error: str = "stream ended unexpectedly"):
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    async def execute(self, request, cancel_token):
        self.calls += 1
        self.requests.append(request)
        if self.calls <= self.failures:
            yield AssistantEvent(content=[TextBlock(text=f"attempt {self.calls}")])
            yield AgentErrorEvent(error=self.error)
            return
        yield AssistantEvent(content=[TextBlock(text="finished")])
        yield ResultEvent(subtype="success")


class TestResumeWithRetries:
    @pytest.mark.asyncio
    async def test_retries_until_success(self, make_engine, tmp_project: Path, events: list):
        transcript_path(tmp_project, "feat-1").write_text("first session")
        agent = FlakyAgent(failures=2)
        engine = make_engine(agent=agent)

        outcome = await resume_with_retries(engine, tmp_project, "feat-1")

        assert outcome.passes is True
        assert agent.calls == 3
        text = transcript_path(tmp_project, "feat-1").read_text()
        assert text.startswith("first session")
        assert "## Auto-retry #1" in text
        assert "## Auto-retry #2" in text
        assert text.index("attempt 1") < text.index("Auto-retry #1") < text.index("attempt 2")
        retry_events = [e for e in events if e.type == "progress" and "Auto-retry" in e.content]
        assert len(retry_events) == 2
        assert read_feature(tmp_project, "feat-1")["status"] == "waiting_approval"

    @pytest.mark.asyncio
    async def test_gives_up_after_limit(self, make_engine, tmp_project: Path):
        transcript_path(tmp_project, "feat-1").write_text("first session")
        agent = FlakyAgent(failures=10)
        engine = make_engine(agent=agent)

        with pytest.raises(FeatureExecutionError):
            await resume_with_retries(engine, tmp_project, "feat-1", max_attempts=2)

        assert agent.calls == 3
        assert read_feature(tmp_project, "feat-1")["status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_default_limit_from_config(self, make_engine, tmp_project: Path):
        transcript_path(tmp_project, "feat-1").write_text("first session")
        agent = FlakyAgent(failures=10)
        engine = make_engine(agent=agent)

        with pytest.raises(FeatureExecutionError):
            await resume_with_retries(engine, tmp_project, "feat-1")

        assert agent.calls == 1 + engine.config.max_resume_attempts

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, make_engine, tmp_project: Path):
        transcript_path(tmp_project, "feat-1").write_text("first session")
        agent = FlakyAgent(failures=5, error="authentication_failed")
        engine = make_engine(agent=agent)

        with pytest.raises(AuthenticationError):
            await resume_with_retries(engine, tmp_project, "feat-1")

        assert agent.calls == 1

    @pytest.mark.asyncio
    async def test_fresh_failure_not_retried(self, make_engine, tmp_project: Path):
        # No transcript: the run is fresh and its failure returns the feature to backlog
        agent = FlakyAgent(failures=5)
        engine = make_engine(agent=agent)

        with pytest.raises(FeatureExecutionError):
            await resume_with_retries(engine, tmp_project, "feat-1")

        assert agent.calls == 1
        assert read_feature(tmp_project, "feat-1")["status"] == "backlog"
