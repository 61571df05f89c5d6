"""Tests for the async git wrappers, run against real temporary repositories.

Every test works on a clone of a bare ``origin`` created by the fixtures in
conftest.py, so fetch/push/ls-remote go through a genuine remote.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from helpers import git
from infra import git_ops
from infra.git_ops import GitError


# ═══════════════════════════════════════════════════════════════════════════
# 1. run_git
# ═══════════════════════════════════════════════════════════════════════════

class TestRunGit:
    @pytest.mark.asyncio
    async def test_returns_stripped_stdout(self, workspace_repo):
        out = await git_ops.run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=workspace_repo)
        assert out == "main"

    @pytest.mark.asyncio
    async def test_failure_raises_with_exit_code(self, workspace_repo):
        with pytest.raises(GitError) as exc_info:
            await git_ops.run_git(["checkout", "does-not-exist"], cwd=workspace_repo)
        assert "git checkout does-not-exist failed (exit" in str(exc_info.value)
        assert exc_info.value.returncode != 0

    @pytest.mark.asyncio
    async def test_credentials_are_redacted(self, tmp_path):
        with pytest.raises(GitError) as exc_info:
            await git_ops.run_git(
                ["clone", "https://secret-token@127.0.0.1:1/x/y.git", str(tmp_path / "c")],
                timeout=30,
            )
        assert "secret-token" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_comes_from_settings(self, settings, tmp_path):
        settings.git_timeout_seconds = 7
        exec_git = AsyncMock(return_value=(0, "", ""))

        with patch("infra.git_ops._exec_git", exec_git):
            await git_ops.run_git(["status"], cwd=tmp_path)
            await git_ops.clone("https://example.com/a.git", tmp_path / "a")
            await git_ops.run_git(["fetch"], cwd=tmp_path, timeout=3)

        assert [c.args[2] for c in exec_git.await_args_list] == [7, 7, 3]


# ═══════════════════════════════════════════════════════════════════════════
# 2. Branch inspection
# ═══════════════════════════════════════════════════════════════════════════

class TestBranchInspection:
    @pytest.mark.asyncio
    async def test_current_branch(self, workspace_repo):
        assert await git_ops.get_current_branch(workspace_repo) == "main"

    @pytest.mark.asyncio
    async def test_default_branch_from_remote_head(self, workspace_repo):
        assert await git_ops.get_default_branch(workspace_repo) == "main"

    @pytest.mark.asyncio
    async def test_remote_branches_are_listed_live(self, workspace_repo, seed_repo):
        git(seed_repo, "checkout", "-b", "feature-x")
        git(seed_repo, "push", "origin", "feature-x")

        remote = await git_ops.list_remote_branches(workspace_repo)
        assert sorted(remote) == ["feature-x", "main"]

    @pytest.mark.asyncio
    async def test_local_branches(self, workspace_repo):
        git(workspace_repo, "branch", "scratch")
        assert sorted(await git_ops.list_local_branches(workspace_repo)) == ["main", "scratch"]

    @pytest.mark.asyncio
    async def test_branch_existence_checks(self, workspace_repo):
        assert await git_ops.local_branch_exists(workspace_repo, "main")
        assert not await git_ops.local_branch_exists(workspace_repo, "nope")
        assert await git_ops.remote_tracking_branch_exists(workspace_repo, "main")
        assert not await git_ops.remote_tracking_branch_exists(workspace_repo, "nope")


# ═══════════════════════════════════════════════════════════════════════════
# 3. Branch manipulation
# ═══════════════════════════════════════════════════════════════════════════

class TestSwitchBranch:
    @pytest.mark.asyncio
    async def test_switch_to_existing_local_branch(self, workspace_repo):
        git(workspace_repo, "branch", "other")
        await git_ops.switch_branch(workspace_repo, "other")
        assert git(workspace_repo, "rev-parse", "--abbrev-ref", "HEAD") == "other"

    @pytest.mark.asyncio
    async def test_switch_creates_tracking_branch_from_origin(self, workspace_repo, seed_repo):
        git(seed_repo, "checkout", "-b", "release")
        (seed_repo / "release.txt").write_text("r1\n")
        git(seed_repo, "add", "-A")
        git(seed_repo, "commit", "-m", "release")
        git(seed_repo, "push", "origin", "release")
        git(workspace_repo, "fetch", "origin")

        await git_ops.switch_branch(workspace_repo, "release")

        assert git(workspace_repo, "rev-parse", "--abbrev-ref", "HEAD") == "release"
        assert (workspace_repo / "release.txt").exists()

    @pytest.mark.asyncio
    async def test_switch_creates_new_branch_when_unknown(self, workspace_repo):
        await git_ops.switch_branch(workspace_repo, "brand-new")
        assert git(workspace_repo, "rev-parse", "--abbrev-ref", "HEAD") == "brand-new"


class TestCleanBranches:
    @pytest.mark.asyncio
    async def test_protected_branches_survive_and_others_are_deleted(self, workspace_repo, seed_repo):
        # "shared" exists on the remote and locally; "stale-a"/"stale-b" are local only.
        git(seed_repo, "checkout", "-b", "shared")
        git(seed_repo, "push", "origin", "shared")
        git(workspace_repo, "fetch", "origin")
        git(workspace_repo, "branch", "shared", "origin/shared")
        git(workspace_repo, "branch", "stale-a")
        git(workspace_repo, "branch", "stale-b")
        git(workspace_repo, "checkout", "-b", "current-work")

        deleted = await git_ops.clean_branches(workspace_repo, "main")

        remaining = set(await git_ops.list_local_branches(workspace_repo))
        assert sorted(deleted) == ["stale-a", "stale-b"]
        assert remaining == {"main", "shared", "current-work"}

    @pytest.mark.asyncio
    async def test_target_branch_is_protected_even_when_not_current(self, workspace_repo):
        git(workspace_repo, "branch", "target-only")
        git(workspace_repo, "checkout", "-b", "elsewhere")

        await git_ops.clean_branches(workspace_repo, "target-only")

        remaining = set(await git_ops.list_local_branches(workspace_repo))
        assert {"target-only", "elsewhere", "main"} <= remaining

    @pytest.mark.asyncio
    async def test_nothing_to_clean(self, workspace_repo):
        assert await git_ops.clean_branches(workspace_repo, "main") == []


# ═══════════════════════════════════════════════════════════════════════════
# 4. Remote synchronisation
# ═══════════════════════════════════════════════════════════════════════════

class TestSync:
    @pytest.mark.asyncio
    async def test_sync_discards_local_commits(self, workspace_repo):
        remote_head = git(workspace_repo, "rev-parse", "origin/main")
        (workspace_repo / "local.txt").write_text("local\n")
        git(workspace_repo, "add", "-A")
        git(workspace_repo, "commit", "-m", "local only")

        await git_ops.sync_with_remote(workspace_repo, "main")

        assert git(workspace_repo, "rev-parse", "HEAD") == remote_head
        assert not (workspace_repo / "local.txt").exists()

    @pytest.mark.asyncio
    async def test_sync_picks_up_new_remote_commits(self, workspace_repo, seed_repo):
        (seed_repo / "new.txt").write_text("upstream\n")
        git(seed_repo, "add", "-A")
        git(seed_repo, "commit", "-m", "upstream change")
        git(seed_repo, "push", "origin", "main")

        await git_ops.sync_with_remote(workspace_repo, "main")

        assert (workspace_repo / "new.txt").read_text() == "upstream\n"

    @pytest.mark.asyncio
    async def test_sync_fails_for_branch_missing_on_remote(self, workspace_repo):
        git(workspace_repo, "branch", "local-only")
        with pytest.raises(GitError, match="does not exist on origin"):
            await git_ops.sync_with_remote(workspace_repo, "local-only")

    @pytest.mark.asyncio
    async def test_pull_changes_resets_to_remote(self, workspace_repo, seed_repo):
        (seed_repo / "pulled.txt").write_text("x\n")
        git(seed_repo, "add", "-A")
        git(seed_repo, "commit", "-m", "pulled")
        git(seed_repo, "push", "origin", "main")

        await git_ops.pull_changes(workspace_repo, "main")

        assert (workspace_repo / "pulled.txt").exists()

    @pytest.mark.asyncio
    async def test_shallow_clone_is_detected_and_unshallowed(self, tmp_path, remote_repo, seed_repo):
        (seed_repo / "second.txt").write_text("2\n")
        git(seed_repo, "add", "-A")
        git(seed_repo, "commit", "-m", "second")
        git(seed_repo, "push", "origin", "main")

        shallow = tmp_path / "shallow"
        await git_ops.clone(f"file://{remote_repo}", shallow, depth=1)
        assert await git_ops.is_shallow(shallow)

        await git_ops.unshallow(shallow)
        assert not await git_ops.is_shallow(shallow)
        assert git(shallow, "rev-list", "--count", "HEAD") == "2"


# ═══════════════════════════════════════════════════════════════════════════
# 5. Working tree
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkingTree:
    @pytest.mark.asyncio
    async def test_clean_tree_has_no_changes(self, workspace_repo):
        assert not await git_ops.has_uncommitted_changes(workspace_repo)

    @pytest.mark.asyncio
    async def test_untracked_file_counts_as_change(self, workspace_repo):
        (workspace_repo / "new.txt").write_text("hi\n")
        assert await git_ops.has_uncommitted_changes(workspace_repo)

    @pytest.mark.asyncio
    async def test_commit_returns_new_head(self, workspace_repo):
        (workspace_repo / "file.txt").write_text("content\n")
        await git_ops.add_all(workspace_repo)
        sha = await git_ops.commit(workspace_repo, "add file", "Bot", "bot@example.com")

        assert sha == git(workspace_repo, "rev-parse", "HEAD")
        assert git(workspace_repo, "log", "-1", "--format=%an <%ae>") == "Bot <bot@example.com>"
        assert not await git_ops.has_uncommitted_changes(workspace_repo)

    @pytest.mark.asyncio
    async def test_discard_local_changes(self, workspace_repo):
        (workspace_repo / "README.md").write_text("edited\n")
        (workspace_repo / "junk.txt").write_text("junk\n")

        await git_ops.discard_local_changes(workspace_repo)

        assert (workspace_repo / "README.md").read_text() == "# Test Repo\n"
        assert not (workspace_repo / "junk.txt").exists()

    @pytest.mark.asyncio
    async def test_push_publishes_branch(self, workspace_repo, remote_repo):
        git(workspace_repo, "checkout", "-b", "pushed")
        (workspace_repo / "p.txt").write_text("p\n")
        git(workspace_repo, "add", "-A")
        git(workspace_repo, "commit", "-m", "p")

        await git_ops.push(workspace_repo, "pushed")

        assert git(remote_repo, "rev-parse", "pushed") == git(workspace_repo, "rev-parse", "HEAD")

    @pytest.mark.asyncio
    async def test_clone_failure_raises(self, tmp_path):
        with pytest.raises(GitError):
            await git_ops.clone(str(tmp_path / "missing.git"), tmp_path / "dest")
