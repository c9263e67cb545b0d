"""Branch-keyed git worktree management.

Bindings live in git's own worktree list, not in memory: a branch that
already has a worktree anywhere is reused, which keeps repeated runs (and
engine restarts) on the same isolated directory. Worktrees are only removed
by the explicit ``merge_worktree(..., delete_worktree_and_branch=True)``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .cancellation import CancellationToken
from .errors import CommandError, MergeConflictError
from .git_ops import GitClient, is_conflict
from .models import MergeResult

logger = logging.getLogger("automode")

PROTECTED_BRANCHES = {"main", "master"}


class WorktreeManager:
    def __init__(self, git: GitClient, worktrees_dir: Path = Path(".worktrees")):
        self.git = git
        self.worktrees_dir = worktrees_dir

    def conventional_path(self, project_path: Path, feature_id: str) -> Path:
        return (Path(project_path) / self.worktrees_dir / feature_id).resolve()

    async def find_existing_worktree_for_branch(
        self,
        project_path: Path,
        branch_name: str,
        cancel_token: CancellationToken | None = None,
    ) -> Path | None:
        """Absolute path of the worktree bound to ``branch_name``, or None."""
        try:
            worktrees = await self.git.worktree_list(project_path, cancel_token=cancel_token)
        except CommandError as e:
            logger.debug(f"git worktree list failed in {project_path}: {e}")
            return None
        for wt in worktrees:
            if wt.branch == branch_name:
                return wt.path
        return None

    async def setup_worktree(
        self,
        project_path: Path,
        feature_id: str,
        branch_name: str,
        cancel_token: CancellationToken | None = None,
    ) -> Path:
        """Return a worktree for ``branch_name``, creating it if needed.

        Falls back to the project path when creation fails: isolation is
        best-effort, the run itself can proceed on the main tree.
        """
        project_path = Path(project_path).resolve()
        existing = await self.find_existing_worktree_for_branch(
            project_path, branch_name, cancel_token,
        )
        if existing is not None:
            logger.info(f"Found existing worktree for branch \"{branch_name}\" at: {existing}")
            return existing

        worktree_path = self.conventional_path(project_path, feature_id)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        # Directory left behind by an earlier run but no longer linked to the branch
        if worktree_path.exists():
            return worktree_path

        try:
            await self.git.create_branch(project_path, branch_name, cancel_token=cancel_token)
        except CommandError as e:
            if "already exists" not in str(e):
                logger.warning(f"Could not create branch \"{branch_name}\" for {feature_id}: {e}")

        try:
            await self.git.add_worktree(
                project_path, worktree_path, branch_name, cancel_token=cancel_token,
            )
        except CommandError as e:
            logger.error(f"Worktree creation failed for {feature_id}, using project tree: {e}")
            return project_path

        logger.info(f"Created worktree for branch \"{branch_name}\": {worktree_path}")
        return worktree_path

    async def merge_worktree(
        self,
        project_path: Path,
        branch_name: str,
        worktree_path: Path,
        target_branch: str = "main",
        *,
        squash: bool = False,
        message: str | None = None,
        delete_worktree_and_branch: bool = False,
    ) -> MergeResult:
        """Merge ``branch_name`` into ``target_branch`` (checked out in the project tree).

        Raises MergeConflictError when git cannot merge automatically.
        """
        project_path = Path(project_path).resolve()
        if not await self.git.ref_exists(project_path, branch_name):
            raise CommandError(["git", "rev-parse", "--verify", branch_name], 1,
                               stderr=f"Branch \"{branch_name}\" does not exist")
        if not await self.git.ref_exists(project_path, target_branch):
            raise CommandError(["git", "rev-parse", "--verify", target_branch], 1,
                               stderr=f"Target branch \"{target_branch}\" does not exist")

        default_message = (
            f"Merge {branch_name} (squash)" if squash
            else f"Merge {branch_name} into {target_branch}"
        )
        try:
            await self.git.merge(project_path, branch_name, message=message or default_message, squash=squash)
        except CommandError as e:
            if is_conflict(e):
                raise MergeConflictError(branch_name, target_branch) from e
            raise
        if squash:
            await self.git.commit(project_path, message or default_message)

        result = MergeResult(merged_branch=branch_name, target_branch=target_branch)
        if delete_worktree_and_branch:
            result.worktree_deleted = await self._remove_worktree(project_path, Path(worktree_path))
            result.branch_deleted = await self._delete_branch(project_path, branch_name)
        return result

    async def _remove_worktree(self, project_path: Path, worktree_path: Path) -> bool:
        try:
            await self.git.remove_worktree(project_path, worktree_path)
            return True
        except CommandError:
            pass
        try:
            await self.git.prune_worktrees(project_path)
            return True
        except CommandError:
            logger.warning(f"Failed to remove worktree: {worktree_path}")
            return False

    async def _delete_branch(self, project_path: Path, branch_name: str) -> bool:
        if branch_name in PROTECTED_BRANCHES:
            return False
        try:
            await self.git.delete_branch(project_path, branch_name)
            return True
        except CommandError:
            logger.warning(f"Failed to delete branch: {branch_name}")
            return False
