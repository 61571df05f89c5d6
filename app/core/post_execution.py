"""Turn the files Claude Code changed into a commit, a push and maybe a PR/MR.

Steps, each one a hard gate:

1. nothing changed → ``has_changes=False``, no git writes at all;
2. ``git add -A`` + commit with a timestamped message;
3. isolated edit with a merge request wanted → push the isolation branch,
   then open a PR/MR.  A forge failure here is only a warning: the commit
   is already pushed and reviewable, and the branch is left in place;
4. otherwise → push straight to the source branch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from app.core.config import get_settings
from app.core.errors import PostExecutionError
from app.core.logging import get_logger
from app.core.models import GitWorkflowResult, PostExecutionResult
from infra import git_ops
from infra.factory import detect_provider, get_forge_client, repo_path_from_url
from infra.forge import ForgeClient, ForgeError, PRRequest
from infra.git_ops import GitError

logger = get_logger("post_execution")

PR_TITLE = "Automated changes from Claude Code"

ForgeFactory = Callable[[str], ForgeClient]


def commit_message(task_id: str | None = None, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).isoformat()
    message = f"Automated changes via Claude Code - {stamp}"
    if task_id:
        message += f" [{task_id}]"
    return message


def pr_description(
    provider: str,
    commit_hash: str,
    question: str | None = None,
    now: datetime | None = None,
) -> str:
    """Fixed-template PR/MR body."""
    stamp = (now or datetime.now(UTC)).isoformat()
    if provider == "gitlab":
        lines = [
            "Automated changes created by Claude Code.",
            "",
            f"Commit: {commit_hash}",
            f"Timestamp: {stamp}",
        ]
        if question:
            lines += ["", f"Request: {question}"]
        return "\n".join(lines)

    lines = [
        "## Automated Changes",
        "",
        "This pull request was created automatically by Claude Code.",
        "",
        f"**Commit:** `{commit_hash}`",
        f"**Timestamp:** {stamp}",
    ]
    if question:
        lines += ["", "### Original Request", "", question]
    return "\n".join(lines)


class PostExecutionHandler:
    """Finalize git state after a Claude Code run.

    Args:
        forge_factory: Returns a forge client for a repository URL.
                       Defaults to :func:`infra.factory.get_forge_client`.
    """

    def __init__(self, forge_factory: ForgeFactory | None = None) -> None:
        self._forge_factory = forge_factory or get_forge_client

    async def handle(
        self,
        workspace_path: str,
        git_result: GitWorkflowResult,
        repo_url: str,
        task_id: str | None = None,
        question: str | None = None,
    ) -> PostExecutionResult:
        """Commit, push and optionally open a PR/MR.

        Raises:
            PostExecutionError: If staging, committing or pushing fails.
        """
        settings = get_settings()
        try:
            if not await git_ops.has_uncommitted_changes(workspace_path):
                logger.info("post_execution | no changes in %s", workspace_path)
                return PostExecutionResult(has_changes=False)

            await git_ops.add_all(workspace_path)
            commit_hash = await git_ops.commit(
                workspace_path,
                commit_message(task_id),
                author_name=settings.git_author_name,
                author_email=settings.git_author_email,
            )
            logger.info("post_execution | committed %s on %s", commit_hash[:8], git_result.source_branch)

            await git_ops.push(workspace_path, git_result.source_branch)
        except GitError as exc:
            raise PostExecutionError(f"Post-execution git step failed: {exc}") from exc

        if not git_result.merge_request_required:
            return PostExecutionResult(
                has_changes=True,
                commit_hash=commit_hash,
                pushed_branch=git_result.source_branch,
            )

        mr_url = await self._open_merge_request(git_result, repo_url, commit_hash, question)
        return PostExecutionResult(
            has_changes=True,
            commit_hash=commit_hash,
            merge_request_url=mr_url,
            pushed_branch=git_result.source_branch,
        )

    async def _open_merge_request(
        self,
        git_result: GitWorkflowResult,
        repo_url: str,
        commit_hash: str,
        question: str | None,
    ) -> str | None:
        provider = detect_provider(repo_url)
        if provider == "other":
            logger.warning("post_execution | unknown provider for %s, skipping PR/MR", repo_url)
            return None

        try:
            client = self._forge_factory(repo_url)
            pr = PRRequest(
                title=PR_TITLE,
                body=pr_description(provider, commit_hash, question),
                head_branch=git_result.source_branch,
                base_branch=git_result.target_branch,
            )
            result = await asyncio.to_thread(client.create_pr, repo_path_from_url(repo_url), pr)
        except ForgeError as exc:
            logger.warning(
                "post_execution | PR/MR creation failed for %s → %s (non-fatal, branch kept): %s",
                git_result.source_branch,
                git_result.target_branch,
                exc,
            )
            return None

        logger.info("post_execution | opened %s", result.url)
        return result.url
