"""GitHub forge client.

Implements :class:`~infra.forge.ForgeClient` against the GitHub REST API v3.
Authentication uses a personal access token (PAT) supplied via the
``GITHUB_TOKEN`` environment variable / config key.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from infra.forge import ForgeError, PRRequest, PRResult, RepositoryPermissions

_GITHUB_API = "https://api.github.com"

# GitHub role → (GitLab-scale access level, name).  Highest role wins.
_ROLE_LEVELS: list[tuple[str, int, str]] = [
    ("admin", 50, "admin"),
    ("maintain", 40, "maintain"),
    ("push", 30, "write"),
    ("triage", 20, "triage"),
    ("pull", 10, "read"),
]


class GitHubClient:
    """GitHub REST API v3 client.

    Args:
        token: GitHub personal access token.  Pass an empty string to make
               unauthenticated requests (rate-limited to 60 req/h).
        base_url: API base URL.  Override in tests or for GitHub Enterprise.
        timeout: HTTP timeout in seconds (default 30).
    """

    def __init__(
        self,
        token: str = "",
        base_url: str = _GITHUB_API,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(headers=headers, timeout=timeout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise ForgeError(
                f"GitHub {method} {path} failed: {exc.response.status_code} {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ForgeError(f"GitHub {method} {path} network error: {exc}") from exc

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params)

    def _post(self, path: str, json: dict[str, Any]) -> Any:
        return self._request("POST", path, json=json)

    def _repo_path(self, repo: str) -> str:
        """Return URL-encoded ``/repos/owner/name``."""
        return f"/repos/{quote(repo, safe='/')}"

    # ------------------------------------------------------------------
    # ForgeClient implementation
    # ------------------------------------------------------------------

    def clone_url(self, repo: str) -> str:
        """Return an authenticated HTTPS clone URL.

        Args:
            repo: ``owner/name``.
        """
        data = self._get(self._repo_path(repo))
        clone = data.get("clone_url", f"https://github.com/{repo}.git")
        if self._client.headers.get("Authorization"):
            token = str(self._client.headers["Authorization"]).removeprefix("Bearer ")
            clone = clone.replace("https://", f"https://{token}@")
        return clone

    def get_repository_permissions(self, repo: str, branch: str) -> RepositoryPermissions:
        """Map the repo's ``permissions`` block and branch protection.

        Args:
            repo:   ``owner/name``.
            branch: Branch to check for protection.
        """
        data = self._get(self._repo_path(repo))
        flags: dict[str, bool] = data.get("permissions") or {}

        level, name = 0, "none"
        for role, role_level, role_name in _ROLE_LEVELS:
            if flags.get(role):
                level, name = role_level, role_name
                break

        branch_data = self._get(f"{self._repo_path(repo)}/branches/{quote(branch, safe='')}")
        protected = bool(branch_data.get("protected", False))

        return RepositoryPermissions(
            access_level=level,
            access_level_name=name,
            target_branch_protected=protected,
            can_push_to_protected=level >= 50 or (level >= 30 and not protected),
            can_create_merge_request=level >= 30,
        )

    def create_pr(self, repo: str, pr: PRRequest) -> PRResult:
        """Open a GitHub pull request.

        Args:
            repo: ``owner/name``.
            pr:   :class:`~infra.forge.PRRequest` with title, body, branches.
        """
        data = self._post(
            f"{self._repo_path(repo)}/pulls",
            json={
                "title": pr.title,
                "body": pr.body,
                "head": pr.head_branch,
                "base": pr.base_branch,
            },
        )
        return PRResult(
            id=data["id"],
            url=data["html_url"],
            number=data["number"],
        )

    def __repr__(self) -> str:  # pragma: no cover
        return f"GitHubClient(base_url={self._base_url!r})"
