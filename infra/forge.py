"""Unified forge interface: abstract protocol and shared data models.

All code that needs to talk to a source-code forge (GitHub or GitLab)
goes through a ``ForgeClient`` implementation.  Direct HTTP calls to forge
APIs outside this package are not allowed.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


class PRRequest(BaseModel):
    """Payload for creating a pull / merge request."""

    title: str
    body: str = ""
    head_branch: str
    base_branch: str


class PRResult(BaseModel):
    """Result returned after a PR/MR is created."""

    id: int
    url: str
    number: int


class RepositoryPermissions(BaseModel):
    """What the configured token may do on a repository and branch.

    ``access_level`` uses the GitLab scale (10 guest … 50 owner); GitHub
    roles are mapped onto it.
    """

    access_level: int = 0
    access_level_name: str = "none"
    target_branch_protected: bool = False
    can_push_to_protected: bool = False
    can_create_merge_request: bool = False


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ForgeClient(Protocol):
    """Minimal forge operations required by codedesk.

    Both ``GitHubClient`` and ``GitLabClient`` implement this protocol.
    Callers should type-hint against ``ForgeClient``, not against a concrete
    implementation class.

    All methods are synchronous.  Async callers should run them in a thread
    pool (e.g. ``asyncio.to_thread``).
    """

    # ------------------------------------------------------------------
    # Repository helpers
    # ------------------------------------------------------------------

    def clone_url(self, repo: str) -> str:
        """Return an authenticated HTTPS clone URL.

        The token is embedded in the URL so callers can pass it directly to
        ``git clone`` without additional credential configuration.

        Args:
            repo: ``owner/name`` (GitHub) or project path (GitLab).
        """
        ...

    def get_repository_permissions(self, repo: str, branch: str) -> RepositoryPermissions:
        """Return the token's access level and the protection state of *branch*.

        Args:
            repo:   ``owner/name`` (GitHub) or project path (GitLab).
            branch: Branch whose protection should be checked.

        Raises:
            ForgeError: on any HTTP or parsing error.
        """
        ...

    # ------------------------------------------------------------------
    # Pull / Merge requests
    # ------------------------------------------------------------------

    def create_pr(self, repo: str, pr: PRRequest) -> PRResult:
        """Open a pull request (GitHub) or merge request (GitLab).

        Args:
            repo: ``owner/name`` (GitHub) or project path (GitLab).
            pr:   :class:`PRRequest` with title, body, head/base branches.

        Returns:
            :class:`PRResult` with the new PR id, url, and number.
        """
        ...


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ForgeError(Exception):
    """Raised for any forge API error (HTTP errors, missing fields, …)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __repr__(self) -> str:  # pragma: no cover
        return f"ForgeError({self.args[0]!r}, status_code={self.status_code})"
