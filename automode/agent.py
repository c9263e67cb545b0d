"""Agent execution adapter: stream a coding-agent session as typed events.

The engine depends only on ``AgentExecutor.execute(request, cancel_token)``,
an async iterator of ``AssistantEvent`` / ``AgentErrorEvent`` /
``ResultEvent``. ``ClaudeAgentExecutor`` backs it with the Claude Agent SDK;
``MockAgentExecutor`` replays a short scripted session for offline runs.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
import mimetypes
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Annotated, Any, Literal, Protocol, Union

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
)
from claude_agent_sdk import TextBlock as SDKTextBlock
from claude_agent_sdk import ToolUseBlock as SDKToolUseBlock
from pydantic import BaseModel, Field

from .cancellation import CancellationToken

logger = logging.getLogger("automode")

DEFAULT_MODEL = "claude-sonnet-4-5"

MODEL_ALIASES: dict[str, str] = {
    "haiku": "claude-haiku-4-5",
    "sonnet": "claude-sonnet-4-5",
    "opus": "claude-opus-4-1",
}


# --- Event types -------------------------------------------------------------

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock], Field(discriminator="type")]


class AssistantEvent(BaseModel):
    type: Literal["assistant"] = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)


class AgentErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


class ResultEvent(BaseModel):
    type: Literal["result"] = "result"
    subtype: str = "success"
    result: str | None = None
    is_error: bool = False
    session_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.subtype == "success" and not self.is_error


AgentEvent = Annotated[
    Union[AssistantEvent, AgentErrorEvent, ResultEvent], Field(discriminator="type"),
]


class AgentRequest(BaseModel):
    prompt: str
    model: str
    cwd: Path
    allowed_tools: list[str] = Field(default_factory=list)
    image_paths: list[Path] = Field(default_factory=list)
    max_turns: int | None = None
    permission_mode: str | None = None


class AgentExecutor(Protocol):
    def execute(
        self, request: AgentRequest, cancel_token: CancellationToken,
    ) -> AsyncIterator[AssistantEvent | AgentErrorEvent | ResultEvent]: ...


def resolve_model_string(model: str | None, default: str = DEFAULT_MODEL) -> str:
    """Map aliases to full model ids; pass full ``claude-`` ids through."""
    if not model:
        return MODEL_ALIASES.get(default, default)
    key = model.strip().lower()
    if key in MODEL_ALIASES:
        return MODEL_ALIASES[key]
    if key.startswith("claude-"):
        return model.strip()
    fallback = MODEL_ALIASES.get(default, default)
    logger.warning(f"Unknown model '{model}', using default {fallback}")
    return fallback


def build_prompt_content(prompt: str, image_paths: Sequence[Path]) -> list[dict[str, Any]]:
    """Text block plus one base64 image block per readable image."""
    content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for path in image_paths:
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Skipping unreadable image {path}: {e}")
            continue
        media_type, _ = mimetypes.guess_type(path.name)
        content.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": media_type or "image/png",
                "data": base64.b64encode(data).decode("ascii"),
            },
        })
    return content


def convert_message(message: Any) -> AssistantEvent | AgentErrorEvent | ResultEvent | None:
    """Translate one SDK message into an engine event. Other messages map to None."""
    if isinstance(message, AssistantMessage):
        error = getattr(message, "error", None)
        if error:
            return AgentErrorEvent(error=str(error))
        blocks: list[TextBlock | ToolUseBlock] = []
        for block in message.content:
            if isinstance(block, SDKTextBlock):
                blocks.append(TextBlock(text=block.text))
            elif isinstance(block, SDKToolUseBlock):
                blocks.append(ToolUseBlock(name=block.name, input=dict(block.input or {}), id=block.id))
        return AssistantEvent(content=blocks)
    if isinstance(message, ResultMessage):
        return ResultEvent(
            subtype=message.subtype,
            result=message.result,
            is_error=message.is_error,
            session_id=message.session_id,
        )
    return None


class ClaudeAgentExecutor:
    """Executes agent sessions through ClaudeSDKClient."""

    async def execute(
        self, request: AgentRequest, cancel_token: CancellationToken,
    ) -> AsyncIterator[AssistantEvent | AgentErrorEvent | ResultEvent]:
        cancel_token.raise_if_cancelled()
        options = ClaudeAgentOptions(
            model=request.model,
            cwd=str(request.cwd),
            allowed_tools=request.allowed_tools,
            max_turns=request.max_turns,
            permission_mode=request.permission_mode,
            setting_sources=["project"],
        )

        async with ClaudeSDKClient(options) as client:
            watcher = asyncio.create_task(self._interrupt_on_cancel(client, cancel_token))
            try:
                if request.image_paths:
                    content = await asyncio.to_thread(
                        build_prompt_content, request.prompt, request.image_paths,
                    )
                    await client.query(_single_user_message(content))
                else:
                    await client.query(request.prompt)

                async for message in client.receive_response():
                    cancel_token.raise_if_cancelled()
                    event = convert_message(message)
                    if event is not None:
                        yield event
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
        cancel_token.raise_if_cancelled()

    @staticmethod
    async def _interrupt_on_cancel(client: ClaudeSDKClient, cancel_token: CancellationToken) -> None:
        await cancel_token.wait()
        logger.info("  Interrupting agent session")
        try:
            await client.interrupt()
        except Exception as e:
            logger.debug(f"Interrupt failed: {e}")


async def _single_user_message(content: list[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    yield {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": "default",
    }


class MockAgentExecutor:
    """Scripted agent for offline runs and CI; never contacts a model."""

    def __init__(self, steps: Sequence[str] | None = None, delay_seconds: float = 0.2):
        self.steps = list(steps or [
            "Mock agent: Analyzing the codebase...",
            "Mock agent: Implementing the feature...",
        ])
        self.delay_seconds = delay_seconds

    async def execute(
        self, request: AgentRequest, cancel_token: CancellationToken,
    ) -> AsyncIterator[AssistantEvent | AgentErrorEvent | ResultEvent]:
        logger.info(f"  MOCK MODE: skipping real agent execution in {request.cwd}")
        for step in self.steps:
            await cancel_token.sleep(self.delay_seconds)
            yield AssistantEvent(content=[TextBlock(text=step)])
        yield AssistantEvent(content=[
            ToolUseBlock(name="Read", input={"file_path": str(request.cwd / "README.md")}),
        ])
        cancel_token.raise_if_cancelled()
        yield ResultEvent(subtype="success", result="Mock run complete")
