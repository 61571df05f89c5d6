"""Handlers for the four job types run by :class:`~app.core.job_queue.JobQueue`.

``claude-code`` is the interesting one.  For an edit it runs

    prepare branch → Claude Code → commit/push/PR → back to target branch

and stops at the first failure: a workspace whose branch could not be
prepared is never edited, and a failed Claude Code run leaves the isolation
branch in place for inspection (the next job's preparation discards any
leftovers).  A read-only ask that names a branch first checks the branch
exists on the remote, then checks it out and pulls.
"""

from __future__ import annotations

import time
from typing import Any

from app.core.claude_executor import ClaudeCodeExecutor, ClaudeCodeRequest
from app.core.errors import JobError, PostExecutionError
from app.core.git_workflow import GitWorkflowEngine
from app.core.job_queue import JobHandler
from app.core.logging import get_logger
from app.core.models import (
    ClaudeCodeJobPayload,
    ClaudeCodeJobResult,
    GitMRJobPayload,
    GitPushJobPayload,
    Job,
    JobType,
    WorkspaceCleanupJobPayload,
)
from app.core.post_execution import PostExecutionHandler
from infra import git_ops
from infra.git_ops import GitError
from infra.workspace import WorkspaceError, WorkspaceManager

logger = get_logger("jobs.handlers")


class JobHandlers:
    """Bundle of job handlers sharing the pipeline components."""

    def __init__(
        self,
        workflow: GitWorkflowEngine,
        executor: ClaudeCodeExecutor,
        post_execution: PostExecutionHandler,
        workspaces: WorkspaceManager,
    ) -> None:
        self._workflow = workflow
        self._executor = executor
        self._post_execution = post_execution
        self._workspaces = workspaces

    def as_mapping(self) -> dict[JobType, JobHandler]:
        return {
            JobType.CLAUDE_CODE: self.claude_code,
            JobType.GIT_PUSH: self.git_push,
            JobType.GIT_MR: self.git_mr,
            JobType.WORKSPACE_CLEANUP: self.workspace_cleanup,
        }

    # ------------------------------------------------------------------
    # claude-code
    # ------------------------------------------------------------------

    async def claude_code(self, job: Job) -> dict[str, Any]:
        payload = ClaudeCodeJobPayload.model_validate(job.payload)
        started = time.monotonic()

        git_result = None
        if payload.edit_request:
            git_result = await self._workflow.initialize_git_workflow(
                payload.workspace_id,
                source_branch=payload.source_branch,
                create_mr=payload.create_mr,
                task_id=payload.task_id,
            )
        elif payload.source_branch:
            await self._workflow.prepare_read_branch(payload.workspace_id, payload.source_branch)

        claude = await self._executor.execute(
            ClaudeCodeRequest(
                question=payload.question,
                context=payload.context,
                working_directory=payload.workspace_path,
                edit_request=payload.edit_request,
                source_branch=git_result.source_branch if git_result else payload.source_branch,
            )
        )

        post = None
        if git_result is not None and payload.repo_url:
            post = await self._post_execution.handle(
                payload.workspace_path,
                git_result,
                payload.repo_url,
                task_id=payload.task_id,
                question=payload.question,
            )
            await self._workflow.restore_target_branch(payload.workspace_id, git_result.target_branch)

        result = ClaudeCodeJobResult(
            output=claude.output,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            git_init_result=git_result,
            post_execution=post,
            usage=claude.usage,
            json_logs=claude.json_logs,
            raw_output=claude.raw_output,
        )
        logger.info(
            "handlers | claude-code job %s done in %dms (changes=%s)",
            job.id,
            result.execution_time_ms,
            post.has_changes if post else "-",
        )
        return result.model_dump(mode="json")

    # ------------------------------------------------------------------
    # git-push / git-mr
    # ------------------------------------------------------------------

    async def git_push(self, job: Job) -> dict[str, Any]:
        payload = GitPushJobPayload.model_validate(job.payload)
        try:
            await git_ops.push(payload.workspace_path, payload.branch)
        except GitError as exc:
            raise PostExecutionError(f"Push of {payload.branch} failed: {exc}") from exc
        return {"pushed_branch": payload.branch}

    async def git_mr(self, job: Job) -> dict[str, Any]:
        payload = GitMRJobPayload.model_validate(job.payload)
        post = await self._post_execution.handle(
            payload.workspace_path,
            payload.git_workflow,
            payload.repo_url,
            task_id=payload.task_id,
        )
        return post.model_dump(mode="json")

    # ------------------------------------------------------------------
    # workspace-cleanup
    # ------------------------------------------------------------------

    async def workspace_cleanup(self, job: Job) -> dict[str, Any]:
        payload = WorkspaceCleanupJobPayload.model_validate(job.payload)
        try:
            await self._workspaces.remove(payload.workspace_id, payload.workspace_path)
        except WorkspaceError as exc:
            raise JobError(f"Cleanup of workspace {payload.workspace_id} failed: {exc}") from exc
        return {"removed": payload.workspace_id}
