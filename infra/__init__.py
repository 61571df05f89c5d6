"""codedesk infrastructure layer: git, forge API clients and workspace storage.

All external forge communication (GitHub, GitLab) goes through this package.
Use :func:`~infra.factory.get_forge_client` to obtain a client instance.

Quick start::

    from infra.factory import get_forge_client, repo_path_from_url

    url = "https://github.com/owner/repo.git"
    client = get_forge_client(url)
    pr = client.create_pr(repo_path_from_url(url), PRRequest(
        title="Automated changes from Claude Code",
        head_branch="main-1718000000000",
        base_branch="main",
    ))
"""

from infra.factory import detect_provider, get_forge_client, repo_path_from_url
from infra.forge import ForgeClient, ForgeError, PRRequest, PRResult, RepositoryPermissions
from infra.git_ops import GitError
from infra.github_client import GitHubClient
from infra.gitlab_client import GitLabClient
from infra.workspace import WorkspaceError, WorkspaceManager
from infra.workspace_store import JsonWorkspaceStore, StoreResult, WorkspaceStore

__all__ = [
    # Protocol & models
    "ForgeClient",
    "ForgeError",
    "PRRequest",
    "PRResult",
    "RepositoryPermissions",
    # Clients
    "GitHubClient",
    "GitLabClient",
    # Factory
    "detect_provider",
    "get_forge_client",
    "repo_path_from_url",
    # Git
    "GitError",
    # Workspace
    "JsonWorkspaceStore",
    "StoreResult",
    "WorkspaceStore",
    "WorkspaceManager",
    "WorkspaceError",
]
