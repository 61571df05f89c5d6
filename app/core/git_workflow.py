"""Branch preparation around a Claude Code run.

Before an edit, :meth:`GitWorkflowEngine.initialize_git_workflow` puts the
workspace on the branch the edit must land on:

* no source branch, or the target itself → sync the target with ``origin``,
  prune stale local branches and fork a fresh *isolation branch*; the
  changes will go through a merge/pull request;
* any other existing branch → check it out and pull; changes are pushed
  straight to it.

After the edit, :meth:`restore_target_branch` puts the workspace back on
its target branch and records the new HEAD, so the next ask sees what was
merged rather than the abandoned isolation branch.

A workspace is only ever touched by one job at a time (the job queue
guarantees it); a dirty tree found here is debris from a crashed run and is
discarded.
"""

from __future__ import annotations

import time
from pathlib import Path

from app.core.errors import CLASS_CONFIGURATION, WorkflowError
from app.core.logging import get_logger
from app.core.models import GitWorkflowResult, Workspace
from infra import git_ops
from infra.git_ops import GitError
from infra.workspace_store import WorkspaceStore

logger = get_logger("workflow")


def isolation_branch_name(source_branch: str, task_id: str | None = None) -> str:
    """Return the branch an isolated edit is committed to.

    ``task_id`` wins when it is non-blank, otherwise ``<source>-<epoch ms>``.
    """
    if task_id and task_id.strip():
        return task_id.strip()
    return f"{source_branch}-{int(time.time() * 1000)}"


class GitWorkflowEngine:
    """Prepare and restore workspace branches for jobs.

    Args:
        store: Workspace store used to look up and update workspace records.
    """

    def __init__(self, store: WorkspaceStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def load_workspace(self, workspace_id: str) -> Workspace:
        loaded = await self._store.load_workspace(workspace_id)
        if not loaded.ok or loaded.data is None:
            raise WorkflowError(
                f"Workspace {workspace_id} not found",
                details=loaded.error,
                classification=CLASS_CONFIGURATION,
            )
        workspace = loaded.data
        if not Path(workspace.path).is_dir():
            raise WorkflowError(
                f"Workspace path {workspace.path} does not exist",
                classification=CLASS_CONFIGURATION,
            )
        return workspace

    async def resolve_target_branch(self, workspace: Workspace) -> str:
        """Configured target branch, else the remote's HEAD branch."""
        if workspace.target_branch:
            return workspace.target_branch
        try:
            branch = await git_ops.get_default_branch(workspace.path)
        except GitError as exc:
            raise WorkflowError(f"Cannot determine default branch: {exc}") from exc
        logger.info("workflow | %s has no target branch, using remote HEAD %s", workspace.id, branch)
        return branch

    # ------------------------------------------------------------------
    # Edit preparation
    # ------------------------------------------------------------------

    async def initialize_git_workflow(
        self,
        workspace_id: str,
        source_branch: str | None = None,
        create_mr: bool = True,
        task_id: str | None = None,
    ) -> GitWorkflowResult:
        """Put the workspace on the branch an edit must be committed to.

        Args:
            workspace_id:  Workspace to prepare.
            source_branch: Existing branch to edit directly.  ``None`` or the
                           target branch means "isolate on a new branch".
            create_mr:     Whether a merge/pull request should follow an
                           isolated edit.
            task_id:       Optional explicit isolation branch name.

        Returns:
            :class:`~app.core.models.GitWorkflowResult`; ``merge_request_required``
            is only ever true for an isolated edit with ``create_mr``.

        Raises:
            WorkflowError: On any git failure.  The workspace must then not
                           be edited.
        """
        workspace = await self.load_workspace(workspace_id)
        path = workspace.path
        target = await self.resolve_target_branch(workspace)

        await self._discard_leftovers(workspace)

        if not source_branch or source_branch == target:
            step = "sync target branch"
            try:
                await git_ops.sync_with_remote(path, target)
                step = "clean branches"
                await git_ops.clean_branches(path, target)
                isolation = isolation_branch_name(target, task_id)
                step = f"create branch {isolation}"
                await git_ops.create_branch(path, isolation)
            except GitError as exc:
                raise WorkflowError(f"Git workflow failed ({step}): {exc}") from exc

            logger.info("workflow | %s isolated on %s (target %s)", workspace_id, isolation, target)
            return GitWorkflowResult(
                merge_request_required=create_mr,
                source_branch=isolation,
                target_branch=target,
            )

        try:
            await git_ops.switch_branch(path, source_branch)
            await git_ops.pull_changes(path, source_branch)
        except GitError as exc:
            raise WorkflowError(
                f"Git workflow failed (switch to {source_branch}): {exc}"
            ) from exc

        logger.info("workflow | %s editing %s directly", workspace_id, source_branch)
        return GitWorkflowResult(
            merge_request_required=False,
            source_branch=source_branch,
            target_branch=target,
        )

    async def _discard_leftovers(self, workspace: Workspace) -> None:
        try:
            if await git_ops.has_uncommitted_changes(workspace.path):
                logger.warning(
                    "workflow | %s has uncommitted changes from an earlier run, discarding",
                    workspace.id,
                )
                await git_ops.discard_local_changes(workspace.path)
        except GitError as exc:
            raise WorkflowError(f"Git workflow failed (discard local changes): {exc}") from exc

    # ------------------------------------------------------------------
    # Read-only asks
    # ------------------------------------------------------------------

    async def validate_branch_exists(self, path: str, branch: str) -> None:
        """Fail with the list of valid names when *branch* is not on ``origin``."""
        try:
            remote = await git_ops.list_remote_branches(path)
        except GitError as exc:
            raise WorkflowError(f"Cannot list remote branches: {exc}") from exc
        if branch not in remote:
            raise WorkflowError(
                f"Branch '{branch}' not found on remote. "
                f"Available branches: {', '.join(remote) or '(none)'}"
            )

    async def prepare_read_branch(self, workspace_id: str, branch: str) -> None:
        """Check out and pull *branch* so an ask reads its latest state."""
        workspace = await self.load_workspace(workspace_id)
        await self.validate_branch_exists(workspace.path, branch)
        await self._discard_leftovers(workspace)
        try:
            await git_ops.switch_branch(workspace.path, branch)
            await git_ops.pull_changes(workspace.path, branch)
        except GitError as exc:
            raise WorkflowError(f"Cannot switch to {branch}: {exc}") from exc

    # ------------------------------------------------------------------
    # Restore after an edit
    # ------------------------------------------------------------------

    async def restore_target_branch(self, workspace_id: str, target_branch: str) -> str:
        """Return the workspace to *target_branch* and record its HEAD.

        Returns:
            The target branch's HEAD commit hash.
        """
        workspace = await self.load_workspace(workspace_id)
        try:
            await git_ops.sync_with_remote(workspace.path, target_branch)
            head = await git_ops.get_head_commit(workspace.path)
        except GitError as exc:
            raise WorkflowError(f"Cannot restore {target_branch}: {exc}") from exc

        updated = await self._store.update_workspace(
            workspace_id, metadata={"commit_hash": head}
        )
        if not updated.ok:
            raise WorkflowError(
                f"Cannot update workspace {workspace_id}: {updated.error}",
                classification=CLASS_CONFIGURATION,
            )
        logger.info("workflow | %s restored to %s @ %s", workspace_id, target_branch, head[:8])
        return head
