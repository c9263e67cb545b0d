"""Auto mode engine: drive features through implement → verify → commit."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
import time
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from .agent import (
    AgentErrorEvent,
    AgentExecutor,
    AgentRequest,
    AssistantEvent,
    ClaudeAgentExecutor,
    ResultEvent,
    TextBlock,
    ToolUseBlock,
    resolve_model_string,
)
from .cancellation import CancellationToken
from .errors import (
    AlreadyRunningError,
    AuthenticationError,
    AutoModeError,
    CommandError,
    CommandTimeoutError,
    FeatureExecutionError,
    FeatureNotFoundError,
    OperationCancelledError,
    StateCorruptionError,
    classify_error,
    is_agent_auth_failure,
    is_authentication_message,
)
from .events import (
    AllCompleteEvent,
    ErrorEvent,
    EventEmitter,
    FeatureCompleteEvent,
    FeatureStartEvent,
    ProgressEvent,
    ToolEvent,
)
from .git_ops import GitClient
from .models import (
    ExecutionRecord,
    Feature,
    FeatureStatus,
    MergeResult,
    RunningAgentInfo,
    RunOutcome,
    StepResult,
    VerificationResult,
)
from .prompts import (
    ANALYSIS_PROMPT,
    build_commit_message,
    build_feature_prompt,
    build_follow_up_prompt,
    build_resume_prompt,
)
from .registry import ExecutionRegistry
from .shell import CommandRunner, run_command
from .store import ContextStore, FeatureStore, _atomic_write_text, select_next_feature
from .transcript import TranscriptWriter, session_separator
from .worktree import WorktreeManager

if TYPE_CHECKING:
    from .config import AutoModeConfig

logger = logging.getLogger("automode")

STOPPED_MESSAGE = "Feature stopped by user"

RunMode = Literal["fresh", "resume", "follow_up"]


class AutoModeEngine:
    """Per-feature execution state, worktree isolation and status transitions.

    The registry is the only concurrency gate: every run registers its record
    synchronously before its first ``await`` and removes it in ``finally``.
    """

    def __init__(
        self,
        config: AutoModeConfig,
        *,
        store: FeatureStore | None = None,
        context: ContextStore | None = None,
        git: GitClient | None = None,
        worktrees: WorktreeManager | None = None,
        agent: AgentExecutor | None = None,
        events: EventEmitter | None = None,
        registry: ExecutionRegistry | None = None,
        runner: CommandRunner = run_command,
    ):
        self.config = config
        self.store = store or FeatureStore(config.data_dir)
        self.context = context or ContextStore(config.data_dir)
        self.git = git or GitClient(runner)
        self.worktrees = worktrees or WorktreeManager(self.git, config.worktrees_dir)
        self.agent = agent or ClaudeAgentExecutor()
        self.events = events or EventEmitter()
        self.registry = registry or ExecutionRegistry()
        self.runner = runner

        self._loop_task: asyncio.Task | None = None
        self._loop_token: CancellationToken | None = None
        self._loop_project: Path | None = None

    # --- Implementation runs ---

    async def execute_feature(
        self,
        project_path: Path,
        feature_id: str,
        use_worktrees: bool = False,
        is_auto_mode: bool = False,
    ) -> RunOutcome:
        """Implement a feature. Continues from its transcript when one exists."""
        record = self._register(project_path, feature_id, is_auto_mode)
        return await self._run(record, use_worktrees=use_worktrees)

    async def resume_feature(
        self,
        project_path: Path,
        feature_id: str,
        use_worktrees: bool = False,
        is_auto_mode: bool = False,
    ) -> RunOutcome:
        """Continue a feature from its saved transcript, or start fresh without one."""
        record = self._register(project_path, feature_id, is_auto_mode)
        return await self._run(record, use_worktrees=use_worktrees)

    async def follow_up_feature(
        self,
        project_path: Path,
        feature_id: str,
        prompt: str,
        image_paths: Sequence[str | Path] = (),
        use_worktrees: bool = True,
    ) -> RunOutcome:
        """Send further instructions for a feature, with its previous work as context."""
        record = self._register(project_path, feature_id, False)
        return await self._run(
            record,
            use_worktrees=use_worktrees,
            instructions=prompt,
            image_paths=image_paths,
        )

    def stop_feature(self, feature_id: str) -> bool:
        record = self.registry.get(feature_id)
        if record is None:
            return False
        logger.info(f"Stopping feature {feature_id}")
        record.cancel_token.cancel(STOPPED_MESSAGE)
        return True

    def _register(self, project_path: Path, feature_id: str, is_auto_mode: bool) -> ExecutionRecord:
        return self.registry.register(ExecutionRecord(
            feature_id=feature_id,
            project_path=Path(project_path).resolve(),
            is_auto_mode=is_auto_mode,
        ))

    async def _run(
        self,
        record: ExecutionRecord,
        *,
        use_worktrees: bool,
        instructions: str | None = None,
        image_paths: Sequence[str | Path] = (),
    ) -> RunOutcome:
        feature_id = record.feature_id
        project_path = record.project_path
        token = record.cancel_token
        failure_status: FeatureStatus | None = None

        try:
            feature = await self._require_feature(project_path, feature_id)
            previous = await asyncio.to_thread(self.context.read, project_path, feature_id)

            mode: RunMode
            if instructions is not None:
                mode = "follow_up"
            elif previous:
                mode = "resume"
            else:
                mode = "fresh"
            failure_status = FeatureStatus.BACKLOG if mode == "fresh" else FeatureStatus.IN_PROGRESS
            logger.info(f"Starting feature {feature_id} ({mode.replace('_', '-')})")

            work_dir = await self._prepare_work_dir(record, feature, mode, use_worktrees)

            if mode == "follow_up" and image_paths:
                feature = await self._attach_images(project_path, feature, image_paths)

            feature = await self._set_status(project_path, feature_id, FeatureStatus.IN_PROGRESS) or feature
            self.events.emit(FeatureStartEvent(
                feature_id=feature_id, project_path=project_path, feature=feature,
            ))

            if mode == "fresh":
                prompt = build_feature_prompt(feature)
            elif mode == "resume":
                prompt = build_resume_prompt(feature, previous)
            else:
                prompt = build_follow_up_prompt(feature, previous, instructions or "")

            writer = TranscriptWriter(
                self.context.transcript_path(project_path, feature_id),
                initial=previous,
                debounce_seconds=self.config.transcript_debounce_seconds,
            )
            async with writer:
                if mode == "resume":
                    writer.append_raw(session_separator("Resumed Session"))
                elif mode == "follow_up":
                    if previous:
                        writer.append_raw(session_separator("Follow-up Session"))
                    writer.append_raw(f"**Follow-up instructions:** {instructions}\n\n")
                await self._stream(record, self._agent_request(feature, prompt, work_dir), writer)

            await self._set_status(project_path, feature_id, FeatureStatus.WAITING_APPROVAL)
            duration = record.elapsed_seconds
            message = f"Feature completed in {duration:.0f}s"
            logger.info(f"Feature {feature_id} completed in {duration:.0f}s")
            await self._emit_complete(project_path, feature_id, True, message)
            return RunOutcome(
                feature_id=feature_id, passes=True, message=message, duration_seconds=duration,
            )

        except Exception as e:
            if isinstance(e, OperationCancelledError) or token.cancelled:
                logger.info(f"Feature {feature_id} stopped")
                await self._emit_complete(project_path, feature_id, False, STOPPED_MESSAGE)
                return RunOutcome(
                    feature_id=feature_id,
                    passes=False,
                    cancelled=True,
                    message=STOPPED_MESSAGE,
                    duration_seconds=record.elapsed_seconds,
                )
            info = classify_error(e)
            logger.error(f"Feature {feature_id} failed: {info.message}")
            if failure_status is not None:
                await self._set_status_quietly(project_path, feature_id, failure_status, info.message)
            self._emit_error(project_path, feature_id, e)
            raise
        finally:
            self.registry.unregister(feature_id)

    async def _prepare_work_dir(
        self, record: ExecutionRecord, feature: Feature, mode: RunMode, use_worktrees: bool,
    ) -> Path:
        project_path = record.project_path
        if not (use_worktrees and feature.branch_name):
            return project_path

        if mode == "follow_up":
            # Follow-ups continue in an existing worktree and never create one
            worktree = await self.worktrees.find_existing_worktree_for_branch(
                project_path, feature.branch_name, record.cancel_token,
            )
        else:
            worktree = await self.worktrees.setup_worktree(
                project_path, feature.id, feature.branch_name, record.cancel_token,
            )
        record.cancel_token.raise_if_cancelled()

        record.branch_name = feature.branch_name
        if worktree is None or worktree == project_path:
            return project_path
        record.worktree_path = worktree
        return worktree

    async def _attach_images(
        self, project_path: Path, feature: Feature, image_paths: Sequence[str | Path],
    ) -> Feature:
        copied = await asyncio.to_thread(self.store.copy_images, project_path, feature.id, image_paths)
        known = {img.path for img in feature.image_paths}
        feature.image_paths.extend(img for img in copied if img.path not in known)
        await asyncio.to_thread(self.store.save, project_path, feature)
        return feature

    def _agent_request(
        self, feature: Feature, prompt: str, work_dir: Path, **overrides: Any,
    ) -> AgentRequest:
        fields: dict[str, Any] = {
            "prompt": prompt,
            "model": resolve_model_string(feature.model or self.config.model),
            "cwd": work_dir,
            "allowed_tools": list(self.config.allowed_tools),
            "image_paths": [Path(img.path) for img in feature.image_paths],
            "max_turns": self.config.max_turns,
            "permission_mode": self.config.permission_mode,
        }
        fields.update(overrides)
        return AgentRequest(**fields)

    async def _stream(
        self,
        record: ExecutionRecord,
        request: AgentRequest,
        writer: TranscriptWriter | None = None,
    ) -> str:
        """Consume one agent session. Returns its final result text.

        The success result wins; otherwise the last assistant text block.

        Raises AuthenticationError or FeatureExecutionError on agent failure
        and OperationCancelledError once the record's token is cancelled.
        """
        feature_id = record.feature_id
        project_path = record.project_path
        token = record.cancel_token
        texts: list[str] = []
        final_result: str | None = None

        async with contextlib.aclosing(self.agent.execute(request, token)) as stream:
            async for event in stream:
                token.raise_if_cancelled()
                if isinstance(event, AssistantEvent):
                    for block in event.content:
                        if isinstance(block, TextBlock):
                            if is_agent_auth_failure(block.text):
                                raise AuthenticationError(feature_id)
                            texts.append(block.text)
                            if writer is not None:
                                writer.append_text(block.text)
                            self.events.emit(ProgressEvent(
                                feature_id=feature_id, project_path=project_path, content=block.text,
                            ))
                        elif isinstance(block, ToolUseBlock):
                            if writer is not None:
                                writer.append_tool_use(block.name, block.input)
                            self.events.emit(ToolEvent(
                                feature_id=feature_id,
                                project_path=project_path,
                                tool=block.name,
                                input=block.input,
                            ))
                elif isinstance(event, AgentErrorEvent):
                    if is_authentication_message(event.error):
                        raise AuthenticationError(feature_id)
                    raise FeatureExecutionError(feature_id, event.error)
                elif isinstance(event, ResultEvent):
                    if not event.succeeded:
                        detail = event.result or f"Agent run ended with {event.subtype}"
                        if is_authentication_message(detail):
                            raise AuthenticationError(feature_id)
                        raise FeatureExecutionError(feature_id, detail)
                    final_result = event.result

        token.raise_if_cancelled()
        if final_result:
            return final_result
        return texts[-1] if texts else ""

    # --- Verification, commit, approval, merge ---

    async def verify_feature(self, project_path: Path, feature_id: str) -> VerificationResult:
        """Run the verification steps in order, stopping at the first failure."""
        record = self._register(project_path, feature_id, False)
        project_path = record.project_path
        token = record.cancel_token
        steps: list[StepResult] = []

        try:
            work_dir = await self._find_work_dir(project_path, feature_id)
            if work_dir != project_path:
                record.worktree_path = work_dir
            logger.info(f"Verifying feature {feature_id} in {work_dir}")

            failed_step: str | None = None
            for step in self.config.verification_steps:
                token.raise_if_cancelled()
                self.events.emit(ProgressEvent(
                    feature_id=feature_id, project_path=project_path,
                    content=f"Running {step.name}...",
                ))
                result = await self._run_step(step.name, step.command, work_dir, token)
                steps.append(result)
                if not result.passed:
                    failed_step = step.name
                    break

            if failed_step is not None:
                message = f"Verification failed at step: {failed_step}"
                logger.warning(f"Feature {feature_id}: {message}")
                passes = False
            else:
                message = "All verification steps passed"
                logger.info(f"Feature {feature_id}: {message}")
                await self._set_status(project_path, feature_id, FeatureStatus.VERIFIED)
                passes = True

            await self._emit_complete(project_path, feature_id, passes, message)
            return VerificationResult(
                feature_id=feature_id,
                passes=passes,
                message=message,
                failed_step=failed_step,
                steps=steps,
            )
        except OperationCancelledError:
            await self._emit_complete(project_path, feature_id, False, STOPPED_MESSAGE)
            return VerificationResult(
                feature_id=feature_id,
                passes=False,
                message=STOPPED_MESSAGE,
                cancelled=True,
                steps=steps,
            )
        except Exception as e:
            self._emit_error(project_path, feature_id, e)
            raise
        finally:
            self.registry.unregister(feature_id)

    async def _run_step(
        self, name: str, command: str, cwd: Path, token: CancellationToken,
    ) -> StepResult:
        try:
            result = await self.runner(
                shlex.split(command),
                cwd,
                timeout=self.config.verification_timeout_seconds,
                cancel_token=token,
                check=False,
            )
        except (CommandError, CommandTimeoutError) as e:
            return StepResult(name=name, passed=False, output=str(e))
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        return StepResult(name=name, passed=result.ok, output=output)

    async def commit_feature(
        self,
        project_path: Path,
        feature_id: str,
        worktree_path: Path | None = None,
    ) -> str | None:
        """Commit all changes for a feature. Returns the commit hash, or None if clean."""
        project_path = Path(project_path).resolve()
        try:
            if worktree_path is not None and Path(worktree_path).exists():
                work_dir = Path(worktree_path)
            else:
                legacy = self.worktrees.conventional_path(project_path, feature_id)
                work_dir = legacy if legacy.exists() else project_path

            if not await self.git.has_changes(work_dir):
                logger.info(f"No changes to commit for feature {feature_id}")
                return None

            feature = await self._load_feature(project_path, feature_id)
            message = build_commit_message(feature, feature_id, self.config.commit_trailer)
            await self.git.add_all(work_dir)
            await self.git.commit(work_dir, message)
            commit_hash = await self.git.rev_parse_head(work_dir)
            logger.info(f"Committed feature {feature_id}: {commit_hash[:8]}")

            await self._emit_complete(
                project_path, feature_id, True, f"Changes committed: {commit_hash[:8]}",
            )
            return commit_hash
        except Exception as e:
            logger.error(f"Commit failed for feature {feature_id}: {e}")
            self._emit_error(project_path, feature_id, e)
            raise

    async def approve_feature(self, project_path: Path, feature_id: str) -> Feature:
        """Record human approval: the feature becomes verified and its transcript is removed."""
        project_path = Path(project_path).resolve()
        if feature_id in self.registry:
            raise AlreadyRunningError(feature_id)
        feature = await self._set_status(project_path, feature_id, FeatureStatus.VERIFIED)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        logger.info(f"Feature {feature_id} approved")
        await self._emit_complete(project_path, feature_id, True, "Feature approved")
        return feature

    async def merge_feature(
        self,
        project_path: Path,
        feature_id: str,
        *,
        target_branch: str | None = None,
        squash: bool = False,
        delete_worktree_and_branch: bool = False,
    ) -> MergeResult:
        """Merge the feature's branch into the target branch checked out in the project."""
        project_path = Path(project_path).resolve()
        if feature_id in self.registry:
            raise AlreadyRunningError(feature_id)
        try:
            feature = await self._require_feature(project_path, feature_id)
            if not feature.branch_name:
                raise FeatureExecutionError(feature_id, "Feature has no branch to merge")

            worktree = await self.worktrees.find_existing_worktree_for_branch(
                project_path, feature.branch_name,
            )
            result = await self.worktrees.merge_worktree(
                project_path,
                feature.branch_name,
                worktree or self.worktrees.conventional_path(project_path, feature_id),
                target_branch or self.config.merge_target_branch,
                squash=squash,
                message=build_commit_message(feature, feature_id, self.config.commit_trailer) if squash else None,
                delete_worktree_and_branch=delete_worktree_and_branch,
            )
            logger.info(f"Merged {result.merged_branch} into {result.target_branch}")
            return result
        except Exception as e:
            logger.error(f"Merge failed for feature {feature_id}: {e}")
            self._emit_error(project_path, feature_id, e)
            raise

    async def _find_work_dir(self, project_path: Path, feature_id: str) -> Path:
        """Worktree bound to the feature's branch, then the legacy path, then the project."""
        feature = await self._load_feature(project_path, feature_id)
        if feature is not None and feature.branch_name:
            bound = await self.worktrees.find_existing_worktree_for_branch(
                project_path, feature.branch_name,
            )
            if bound is not None:
                return bound
        legacy = self.worktrees.conventional_path(project_path, feature_id)
        if legacy.exists():
            return legacy
        return project_path

    # --- Project analysis ---

    async def analyze_project(self, project_path: Path) -> Path:
        """Run a read-only agent over the project and save its summary."""
        analysis_id = f"analysis-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        record = self._register(project_path, analysis_id, False)
        project_path = record.project_path
        placeholder = Feature(
            id=analysis_id,
            category="Project Analysis",
            description="Analyzing project structure",
        )

        try:
            self.events.emit(FeatureStartEvent(
                feature_id=analysis_id, project_path=project_path, feature=placeholder,
            ))
            request = self._agent_request(
                placeholder,
                ANALYSIS_PROMPT,
                project_path,
                allowed_tools=list(self.config.analysis_tools),
                image_paths=[],
                max_turns=self.config.analysis_max_turns,
            )
            analysis = await self._stream(record, request)

            output_path = self.store.analysis_path(project_path)
            await asyncio.to_thread(_atomic_write_text, output_path, analysis)
            logger.info(f"Project analysis written to {output_path}")
            self.events.emit(FeatureCompleteEvent(
                feature_id=analysis_id,
                project_path=project_path,
                passes=True,
                message="Project analysis completed",
                feature=placeholder,
            ))
            return output_path
        except Exception as e:
            if isinstance(e, OperationCancelledError) or record.cancel_token.cancelled:
                self.events.emit(FeatureCompleteEvent(
                    feature_id=analysis_id,
                    project_path=project_path,
                    passes=False,
                    message=STOPPED_MESSAGE,
                    feature=placeholder,
                ))
            else:
                logger.error(f"Project analysis failed: {e}")
                self._emit_error(project_path, analysis_id, e)
            raise
        finally:
            self.registry.unregister(analysis_id)

    # --- Unattended loop ---

    def start_auto_loop(self, project_path: Path, use_worktrees: bool = False) -> asyncio.Task:
        if self._loop_task is not None and not self._loop_task.done():
            raise AutoModeError("Auto mode loop is already running")
        self._loop_token = CancellationToken()
        self._loop_project = Path(project_path).resolve()
        self._loop_task = asyncio.create_task(
            self.run_auto_loop(self._loop_project, use_worktrees, self._loop_token),
        )
        return self._loop_task

    def stop_auto_loop(self) -> int:
        """Stop the loop and every running feature. Returns how many runs were signalled."""
        if self._loop_token is not None:
            self._loop_token.cancel("Auto mode stopped")
        stopped = 0
        for record in self.registry.records():
            record.cancel_token.cancel(STOPPED_MESSAGE)
            stopped += 1
        return stopped

    async def run_auto_loop(
        self,
        project_path: Path,
        use_worktrees: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """Serially run backlog features until none is eligible or the token fires."""
        project_path = Path(project_path).resolve()
        token = cancel_token or CancellationToken()
        failures: dict[str, int] = {}
        logger.info(f"Auto mode loop started for {project_path}")

        try:
            while not token.cancelled:
                features = await asyncio.to_thread(self.store.list_features, project_path)
                exhausted = [fid for fid, n in failures.items() if n >= self.config.max_loop_failures]
                feature = select_next_feature(features, skip=exhausted)
                if feature is None:
                    message = (
                        "All features completed" if not exhausted
                        else f"No eligible features remaining ({len(exhausted)} skipped after repeated failures)"
                    )
                    logger.info(message)
                    self.events.emit(AllCompleteEvent(project_path=project_path, message=message))
                    break

                if feature.id in self.registry:
                    await token.sleep(self.config.loop_idle_seconds)
                    continue

                try:
                    await self.execute_feature(
                        project_path, feature.id, use_worktrees, is_auto_mode=True,
                    )
                except AlreadyRunningError:
                    await token.sleep(self.config.loop_idle_seconds)
                    continue
                except AuthenticationError as e:
                    logger.error(f"Auto mode loop stopping: {e.detail}")
                    break
                except Exception as e:
                    failures[feature.id] = failures.get(feature.id, 0) + 1
                    logger.error(
                        f"Auto mode loop error on {feature.id} "
                        f"(failure {failures[feature.id]}/{self.config.max_loop_failures}): {e}"
                    )
                    await token.sleep(self.config.loop_error_backoff_seconds)
                    continue

                await token.sleep(self.config.loop_idle_seconds)
        except OperationCancelledError:
            pass
        finally:
            logger.info("Auto mode loop stopped")

    # --- Status ---

    def get_status(self) -> dict[str, Any]:
        loop_running = self._loop_task is not None and not self._loop_task.done()
        return {
            "auto_loop_running": loop_running,
            "auto_loop_project": str(self._loop_project) if loop_running else None,
            "running_features": self.registry.feature_ids(),
            "running_count": len(self.registry),
        }

    def get_running_agents(self) -> list[RunningAgentInfo]:
        return [
            RunningAgentInfo(
                feature_id=record.feature_id,
                project_path=record.project_path,
                project_name=record.project_path.name,
                is_auto_mode=record.is_auto_mode,
                worktree_path=record.worktree_path,
                branch_name=record.branch_name,
                elapsed_seconds=record.elapsed_seconds,
            )
            for record in self.registry.records()
        ]

    # --- Store helpers ---

    async def _load_feature(self, project_path: Path, feature_id: str) -> Feature | None:
        return await asyncio.to_thread(self.store.load, project_path, feature_id)

    async def _require_feature(self, project_path: Path, feature_id: str) -> Feature:
        feature = await self._load_feature(project_path, feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    async def _set_status(
        self,
        project_path: Path,
        feature_id: str,
        status: FeatureStatus,
        error: str | None = None,
    ) -> Feature | None:
        feature = await asyncio.to_thread(
            self.store.update_status, project_path, feature_id, status, error,
        )
        if status == FeatureStatus.VERIFIED:
            await asyncio.to_thread(self.context.delete, project_path, feature_id)
        return feature

    async def _set_status_quietly(
        self, project_path: Path, feature_id: str, status: FeatureStatus, error: str,
    ) -> None:
        # Used on failure paths, where the original error must win
        try:
            await self._set_status(project_path, feature_id, status, error)
        except (OSError, StateCorruptionError) as e:
            logger.error(f"Could not record failure status for {feature_id}: {e}")

    async def _emit_complete(
        self, project_path: Path, feature_id: str, passes: bool, message: str,
    ) -> None:
        try:
            feature = await self._load_feature(project_path, feature_id)
        except StateCorruptionError:
            feature = None
        self.events.emit(FeatureCompleteEvent(
            feature_id=feature_id,
            project_path=project_path,
            passes=passes,
            message=message,
            feature=feature,
        ))

    def _emit_error(self, project_path: Path, feature_id: str, error: BaseException) -> None:
        info = classify_error(error)
        self.events.emit(ErrorEvent(
            feature_id=feature_id,
            project_path=project_path,
            error=info.message,
            error_type="authentication" if info.is_auth else "execution",
        ))
