"""End-to-end job runs: queue → handlers → git workflow → fake Claude Code → post-execution.

Everything is real except the ``claude`` binary (a small script) and the
forge API (a mock factory).
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from app.core.claude_executor import ClaudeCodeExecutor
from app.core.errors import CLASS_EXTERNAL_PROCESS
from app.core.git_workflow import GitWorkflowEngine
from app.core.job_handlers import JobHandlers
from app.core.job_queue import JobQueue
from app.core.job_store import JobStore
from app.core.models import ClaudeCodeJobPayload, Job, JobStatus, JobType
from app.core.post_execution import PostExecutionHandler
from helpers import git, result_line
from infra.forge import PRResult
from infra.workspace import WorkspaceManager
from infra.workspace_store import JsonWorkspaceStore

REPO_URL = "https://github.com/acme/widgets.git"
PR_URL = "https://github.com/acme/widgets/pull/42"

EDITING_CLI = f"""
if "--dangerously-skip-permissions" in sys.argv:
    with open("feature.txt", "w") as fh:
        fh.write("added by claude\\n")
print({result_line("Added feature.txt")!r})
"""

SILENT_EDIT_CLI = f"""
print({result_line("Nothing to change")!r})
"""

FAILING_CLI = """
with open("half-done.txt", "w") as fh:
    fh.write("partial\\n")
sys.stderr.write("rate limited\\n")
sys.exit(1)
"""

ASKING_CLI = f"""
record = os.environ.get("FAKE_RECORD")
if record:
    with open(record, "a") as fh:
        fh.write(os.getcwd() + "\\n")
print({result_line("It is a widget factory")!r})
"""


class Pipeline:
    def __init__(self, settings, binary) -> None:
        settings = settings.model_copy(update={"claude_binary": str(binary)})
        self.store = JsonWorkspaceStore(settings.workspace_index_path)
        self.workspaces = WorkspaceManager(settings.workspace_dir, self.store)
        self.forge = MagicMock()
        self.forge.create_pr.return_value = PRResult(id=1, url=PR_URL, number=42)
        handlers = JobHandlers(
            workflow=GitWorkflowEngine(self.store),
            executor=ClaudeCodeExecutor(settings),
            post_execution=PostExecutionHandler(forge_factory=lambda url: self.forge),
            workspaces=self.workspaces,
        )
        self.queue = JobQueue(JobStore(settings.jobs_dir), handlers.as_mapping(), settings)

    async def add_workspace(self, remote_repo):
        workspace = await self.workspaces.clone(str(remote_repo))
        updated = await self.store.update_workspace(workspace.id, repo_url=REPO_URL)
        return updated.data

    async def run(self, workspace, **fields) -> Job:
        payload = ClaudeCodeJobPayload(
            workspace_id=workspace.id,
            workspace_path=workspace.path,
            repo_url=workspace.repo_url,
            **fields,
        )
        job = await self.queue.enqueue(JobType.CLAUDE_CODE, payload)

        async def _poll() -> Job:
            while True:
                current = self.queue.get_job(job.id)
                if current.status.is_terminal:
                    return current
                await asyncio.sleep(0.02)

        try:
            return await asyncio.wait_for(_poll(), 30)
        finally:
            await self.queue.stop()


# ═══════════════════════════════════════════════════════════════════════════
# 1. Edits
# ═══════════════════════════════════════════════════════════════════════════

class TestEditFlow:
    @pytest.mark.asyncio
    async def test_isolated_edit_lands_on_task_branch_with_pr(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(EDITING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        job = await pipeline.run(workspace, question="Add a feature", edit_request=True, task_id="feat-X")

        assert job.status == JobStatus.COMPLETED, job.error
        result = job.result
        assert result["output"] == "Added feature.txt"
        assert result["git_init_result"] == {
            "merge_request_required": True,
            "source_branch": "feat-X",
            "target_branch": "main",
        }
        post = result["post_execution"]
        assert post["has_changes"] is True
        assert post["merge_request_url"] == PR_URL
        assert git(remote_repo, "rev-parse", "feat-X") == post["commit_hash"]
        assert git(remote_repo, "show", "feat-X:feature.txt") == "added by claude"

        repo, pr = pipeline.forge.create_pr.call_args.args
        assert repo == "acme/widgets"
        assert (pr.head_branch, pr.base_branch) == ("feat-X", "main")

        # The workspace is back on its target, at the remote's HEAD.
        assert git(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == "main"
        assert git(workspace.path, "status", "--porcelain") == ""
        stored = (await pipeline.store.load_workspace(workspace.id)).data
        assert stored.metadata.commit_hash == git(remote_repo, "rev-parse", "main")

    @pytest.mark.asyncio
    async def test_edit_without_merge_request(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(EDITING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        job = await pipeline.run(
            workspace, question="Add a feature", edit_request=True, create_mr=False, task_id="no-mr"
        )

        assert job.status == JobStatus.COMPLETED, job.error
        assert job.result["post_execution"]["merge_request_url"] is None
        assert git(remote_repo, "rev-parse", "no-mr") == job.result["post_execution"]["commit_hash"]
        pipeline.forge.create_pr.assert_not_called()

    @pytest.mark.asyncio
    async def test_edit_without_changes_pushes_nothing(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(SILENT_EDIT_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        job = await pipeline.run(workspace, question="Look around", edit_request=True, task_id="quiet")

        assert job.status == JobStatus.COMPLETED, job.error
        assert job.result["post_execution"] == {
            "has_changes": False,
            "commit_hash": None,
            "merge_request_url": None,
            "pushed_branch": None,
        }
        remote_branches = git(remote_repo, "branch", "--format=%(refname:short)").splitlines()
        assert "quiet" not in remote_branches
        pipeline.forge.create_pr.assert_not_called()

    @pytest.mark.asyncio
    async def test_cli_failure_fails_job_and_next_edit_recovers(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(FAILING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        job = await pipeline.run(workspace, question="Try", edit_request=True, task_id="doomed")

        assert job.status == JobStatus.FAILED
        assert job.error_classification == CLASS_EXTERNAL_PROCESS
        assert "exited with code 1" in job.error
        assert "rate limited" in job.error
        remote_branches = git(remote_repo, "branch", "--format=%(refname:short)").splitlines()
        assert "doomed" not in remote_branches
        # The isolation branch and its debris stay behind for inspection.
        assert git(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == "doomed"

        retry = Pipeline(settings, fake_cli(EDITING_CLI, name="fixed-claude"))
        job = await retry.run(workspace, question="Try again", edit_request=True, task_id="second")

        assert job.status == JobStatus.COMPLETED, job.error
        assert git(remote_repo, "ls-tree", "--name-only", "second").splitlines() == ["README.md", "feature.txt"]


# ═══════════════════════════════════════════════════════════════════════════
# 2. Asks
# ═══════════════════════════════════════════════════════════════════════════

class TestAskFlow:
    @pytest.mark.asyncio
    async def test_ask_returns_answer_without_git_writes(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(ASKING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)
        before = git(workspace.path, "rev-parse", "HEAD")

        job = await pipeline.run(workspace, question="What is this?")

        assert job.status == JobStatus.COMPLETED, job.error
        assert job.result["output"] == "It is a widget factory"
        assert job.result["git_init_result"] is None
        assert job.result["post_execution"] is None
        assert git(workspace.path, "rev-parse", "HEAD") == before

    @pytest.mark.asyncio
    async def test_ask_on_unknown_branch_fails_before_running_cli(
        self, settings, fake_cli, remote_repo, tmp_path, monkeypatch
    ):
        record = tmp_path / "calls.txt"
        monkeypatch.setenv("FAKE_RECORD", str(record))
        pipeline = Pipeline(settings, fake_cli(ASKING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        job = await pipeline.run(workspace, question="What is this?", source_branch="ghost")

        assert job.status == JobStatus.FAILED
        assert "Branch 'ghost' not found on remote" in job.error
        assert "main" in job.error
        assert not record.exists()

    @pytest.mark.asyncio
    async def test_ask_on_branch_reads_that_branch(self, settings, fake_cli, remote_repo, seed_repo):
        git(seed_repo, "checkout", "-b", "docs")
        (seed_repo / "docs.md").write_text("docs\n")
        git(seed_repo, "add", "-A")
        git(seed_repo, "commit", "-m", "docs")
        git(seed_repo, "push", "origin", "docs")
        pipeline = Pipeline(settings, fake_cli(ASKING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        job = await pipeline.run(workspace, question="What changed?", source_branch="docs")

        assert job.status == JobStatus.COMPLETED, job.error
        assert git(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == "docs"


# ═══════════════════════════════════════════════════════════════════════════
# 3. Other job types
# ═══════════════════════════════════════════════════════════════════════════

class TestOtherJobs:
    @pytest.mark.asyncio
    async def test_git_push_job(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(ASKING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)
        git(workspace.path, "checkout", "-b", "manual")

        outcome = await pipeline.queue.execute_or_queue(
            JobType.GIT_PUSH,
            {"workspace_id": workspace.id, "workspace_path": workspace.path, "branch": "manual"},
        )

        assert outcome.result == {"pushed_branch": "manual"}
        assert git(remote_repo, "rev-parse", "manual") == git(workspace.path, "rev-parse", "HEAD")

    @pytest.mark.asyncio
    async def test_workspace_cleanup_job(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(ASKING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)

        outcome = await pipeline.queue.execute_or_queue(
            JobType.WORKSPACE_CLEANUP,
            {"workspace_id": workspace.id, "workspace_path": workspace.path},
        )

        assert outcome.result == {"removed": workspace.id}
        assert not (await pipeline.store.load_workspace(workspace.id)).ok

    @pytest.mark.asyncio
    async def test_git_mr_job_commits_pushes_and_opens_pr(self, settings, fake_cli, remote_repo):
        pipeline = Pipeline(settings, fake_cli(ASKING_CLI))
        workspace = await pipeline.add_workspace(remote_repo)
        git(workspace.path, "checkout", "-b", "T-5")
        (Path(workspace.path) / "notes.txt").write_text("notes\n")

        outcome = await pipeline.queue.execute_or_queue(
            JobType.GIT_MR,
            {
                "workspace_id": workspace.id,
                "workspace_path": workspace.path,
                "repo_url": REPO_URL,
                "task_id": "T-5",
                "git_workflow": {
                    "merge_request_required": True,
                    "source_branch": "T-5",
                    "target_branch": "main",
                },
            },
        )

        assert outcome.result["merge_request_url"] == PR_URL
        assert git(remote_repo, "rev-parse", "T-5") == outcome.result["commit_hash"]
        pipeline.forge.create_pr.assert_called_once()
