"""Workspace manager: clone repositories and maintain their records.

Each workspace is an independent clone living in its own directory, named
after the workspace id::

    ~/codedesk-workspaces/        ← WORKSPACE_DIR
      3f9a1c2b/                   ← one dir per workspace
      a71e09d4/

The manager owns the directory lifecycle (clone, remove) and keeps the
:class:`~infra.workspace_store.WorkspaceStore` record in step with it.
Branch state inside a workspace is the job pipeline's business, not ours.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from app.core.logging import get_logger
from app.core.models import Workspace, WorkspaceMetadata, WorkspacePermissions, short_id
from infra import git_ops
from infra.factory import detect_provider, get_forge_client, repo_path_from_url
from infra.forge import ForgeError
from infra.git_ops import GitError
from infra.workspace_store import WorkspaceStore

logger = get_logger("infra.workspace")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WorkspaceError(Exception):
    """Raised when a workspace operation cannot be completed."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _authenticated_clone_url(repo_url: str) -> str:
    """Return a clone URL carrying the forge token, or *repo_url* unchanged.

    Only HTTPS URLs on a known forge are rewritten; SSH URLs rely on the
    host's SSH keys.
    """
    if not repo_url.startswith("https://") or detect_provider(repo_url) == "other":
        return repo_url
    try:
        client = get_forge_client(repo_url)
        return client.clone_url(repo_path_from_url(repo_url))
    except ForgeError as exc:
        logger.warning(
            "workspace: could not get authenticated URL for %s: %s; using plain URL",
            repo_url,
            exc,
        )
        return repo_url


def _directory_size(path: Path) -> int:
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file() and not item.is_symlink():
                total += item.stat().st_size
        except OSError:
            continue
    return total


# ---------------------------------------------------------------------------
# WorkspaceManager
# ---------------------------------------------------------------------------


class WorkspaceManager:
    """Create, inspect and remove workspaces under a shared root.

    Args:
        workspace_root: Directory that will contain all workspaces.
                        Created automatically if it does not exist.
        store:          Store holding the workspace records.
    """

    def __init__(self, workspace_root: str | Path, store: WorkspaceStore) -> None:
        self._root = Path(workspace_root).expanduser().resolve()
        self._store = store

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def clone(
        self,
        repo_url: str,
        target_branch: str | None = None,
        depth: int | None = None,
    ) -> Workspace:
        """Clone *repo_url* into a fresh workspace and record it.

        Args:
            repo_url:      HTTPS or SSH clone URL.
            target_branch: Branch to check out and treat as canonical.
                           Defaults to the remote's default branch.
            depth:         Optional shallow-clone depth.

        Returns:
            The stored :class:`~app.core.models.Workspace`.

        Raises:
            WorkspaceError: On any git failure or if the record cannot be saved.
        """
        workspace_id = short_id()
        local_path = self._root / workspace_id
        local_path.parent.mkdir(parents=True, exist_ok=True)

        auth_url = await asyncio.to_thread(_authenticated_clone_url, repo_url)
        logger.info("workspace.clone: %s → %s", repo_url, local_path)
        try:
            await git_ops.clone(auth_url, local_path, branch=target_branch, depth=depth)
            branch = target_branch or await git_ops.get_current_branch(local_path)
            commit_hash = await git_ops.get_head_commit(local_path)
        except GitError as exc:
            await asyncio.to_thread(shutil.rmtree, local_path, True)
            raise WorkspaceError(f"clone of {repo_url} failed: {exc}") from exc

        size = await asyncio.to_thread(_directory_size, local_path)
        workspace = Workspace(
            id=workspace_id,
            path=str(local_path),
            repo_url=repo_url,
            target_branch=branch,
            metadata=WorkspaceMetadata(commit_hash=commit_hash, size=size, is_active=True),
        )
        saved = await self._store.save_workspace(workspace)
        if not saved.ok:
            await asyncio.to_thread(shutil.rmtree, local_path, True)
            raise WorkspaceError(saved.error)

        logger.info("workspace.clone: done (%s on %s @ %s)", workspace_id, branch, commit_hash[:8])
        return workspace

    async def get(self, workspace_id: str) -> Workspace:
        """Load a workspace record, raising when it is missing or inactive."""
        loaded = await self._store.load_workspace(workspace_id)
        if not loaded.ok or loaded.data is None:
            raise WorkspaceError(loaded.error or f"workspace {workspace_id} not found")
        workspace = loaded.data
        if workspace.metadata.is_active and not Path(workspace.path).is_dir():
            raise WorkspaceError(f"workspace {workspace_id} path {workspace.path} does not exist")
        return workspace

    async def branches(self, workspace_id: str) -> dict[str, object]:
        """Return the current, local and remote branches of a workspace."""
        workspace = await self.get(workspace_id)
        try:
            return {
                "current": await git_ops.get_current_branch(workspace.path),
                "target": workspace.target_branch,
                "local": await git_ops.list_local_branches(workspace.path),
                "remote": await git_ops.list_remote_branches(workspace.path),
            }
        except GitError as exc:
            raise WorkspaceError(f"cannot list branches of {workspace_id}: {exc}") from exc

    async def refresh_permissions(self, workspace_id: str) -> WorkspacePermissions:
        """Ask the forge what the configured token may do and store the answer.

        Raises:
            WorkspaceError: If the workspace is unknown or the store update fails.
            ForgeError:     If the forge cannot be reached or rejects the call.
        """
        workspace = await self.get(workspace_id)
        permissions = await self._fetch_permissions(workspace.repo_url, workspace.target_branch)

        updated = await self._store.update_workspace(
            workspace_id, metadata={"permissions": permissions}
        )
        if not updated.ok:
            raise WorkspaceError(updated.error)
        logger.info(
            "workspace.permissions: %s → %s (protected=%s)",
            workspace_id,
            permissions.access_level_name,
            permissions.target_branch_protected,
        )
        return permissions

    async def update_target_branch(
        self,
        workspace_id: str,
        target_branch: str | None = None,
        refresh_permissions: bool = False,
    ) -> Workspace:
        """Point a workspace at another target branch and/or re-check permissions.

        Permissions are re-checked whenever the branch changes, since branch
        protection is per branch.  A forge that cannot be reached only logs
        a warning; the branch change still sticks.

        Raises:
            WorkspaceError: If the workspace is unknown, the branch does not
                            exist on the remote, or the store update fails.
        """
        workspace = await self.get(workspace_id)
        changes: dict[str, object] = {}
        branch = target_branch or workspace.target_branch
        changed = bool(target_branch) and target_branch != workspace.target_branch

        if changed:
            try:
                remote = await git_ops.list_remote_branches(workspace.path)
            except GitError as exc:
                raise WorkspaceError(f"cannot list branches of {workspace_id}: {exc}") from exc
            if branch not in remote:
                raise WorkspaceError(
                    f"Branch '{branch}' not found on remote. Available branches: {', '.join(remote)}"
                )
            changes["target_branch"] = branch
            logger.info(
                "workspace.update: %s target %s → %s", workspace_id, workspace.target_branch, branch
            )

        if (changed or refresh_permissions) and detect_provider(workspace.repo_url) != "other":
            try:
                changes["metadata"] = {
                    "permissions": await self._fetch_permissions(workspace.repo_url, branch)
                }
            except ForgeError as exc:
                logger.warning("workspace.update: permission check for %s failed: %s", workspace_id, exc)

        if not changes:
            return workspace
        updated = await self._store.update_workspace(workspace_id, **changes)
        if not updated.ok or updated.data is None:
            raise WorkspaceError(updated.error)
        return updated.data

    async def remove(self, workspace_id: str, workspace_path: str = "") -> None:
        """Delete a workspace directory and its record.

        Only directories inside the workspace root are ever removed.

        Raises:
            WorkspaceError: If the path escapes the root or the record cannot be deleted.
        """
        loaded = await self._store.load_workspace(workspace_id)
        path_str = loaded.data.path if loaded.ok and loaded.data else workspace_path
        if path_str:
            path = Path(path_str).expanduser().resolve()
            if not path.is_relative_to(self._root) or path == self._root:
                raise WorkspaceError(f"refusing to remove {path}: outside {self._root}")
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path)
                logger.info("workspace.remove: removed %s", path)

        if loaded.ok:
            deleted = await self._store.delete_workspace(workspace_id)
            if not deleted.ok:
                raise WorkspaceError(deleted.error)

    async def _fetch_permissions(self, repo_url: str, branch: str) -> WorkspacePermissions:
        client = get_forge_client(repo_url)
        remote = await asyncio.to_thread(
            client.get_repository_permissions, repo_path_from_url(repo_url), branch
        )
        return WorkspacePermissions(**remote.model_dump())

    def __repr__(self) -> str:  # pragma: no cover
        return f"WorkspaceManager(root={self._root!r})"
