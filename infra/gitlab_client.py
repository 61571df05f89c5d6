"""GitLab forge client.

Implements :class:`~infra.forge.ForgeClient` against the GitLab REST API v4.
Works with both gitlab.com and self-hosted GitLab instances; pass the full
base URL (e.g. ``https://gitlab.internal``) via the ``GITLAB_URL`` config key.

Authentication uses a personal access token (PAT) via the ``PRIVATE-TOKEN``
HTTP header.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from infra.forge import ForgeError, PRRequest, PRResult, RepositoryPermissions

ACCESS_LEVEL_NAMES: dict[int, str] = {
    0: "none",
    5: "minimal",
    10: "guest",
    20: "reporter",
    30: "developer",
    40: "maintainer",
    50: "owner",
}


def _encode_project(project_path: str) -> str:
    """URL-encode a project path (``group/subgroup/project`` → ``group%2Fsubgroup%2Fproject``)."""
    return quote(project_path, safe="")


class GitLabClient:
    """GitLab REST API v4 client.

    Args:
        token:    GitLab personal access token.
        base_url: GitLab instance URL, e.g. ``"https://gitlab.com"`` or
                  ``"https://gitlab.internal"``.  Trailing slash is stripped.
        timeout:  HTTP timeout in seconds (default 30).
    """

    def __init__(
        self,
        token: str = "",
        base_url: str = "https://gitlab.com",
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_base = f"{self._base_url}/api/v4"
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if token:
            headers["PRIVATE-TOKEN"] = token
        self._client = httpx.Client(headers=headers, timeout=timeout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._api_base}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise ForgeError(
                f"GitLab {method} {path} failed: {exc.response.status_code} {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ForgeError(f"GitLab {method} {path} network error: {exc}") from exc

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params)

    def _post(self, path: str, json: dict[str, Any]) -> Any:
        return self._request("POST", path, json=json)

    def _project_path(self, repo: str) -> str:
        """Return ``/projects/encoded-path``."""
        return f"/projects/{_encode_project(repo)}"

    # ------------------------------------------------------------------
    # ForgeClient implementation
    # ------------------------------------------------------------------

    def clone_url(self, repo: str) -> str:
        """Return an authenticated HTTPS clone URL.

        Embeds the token as a URL credential using the ``oauth2`` username
        convention supported by all GitLab versions.

        Args:
            repo: Project path.
        """
        data = self._get(self._project_path(repo))
        clone = data.get("http_url_to_repo", f"{self._base_url}/{repo}.git")
        token = self._client.headers.get("PRIVATE-TOKEN", "")
        if token:
            clone = clone.replace("https://", f"https://oauth2:{token}@")
        return clone

    def get_repository_permissions(self, repo: str, branch: str) -> RepositoryPermissions:
        """Combine project/group access level with the branch's push rules.

        A 404 from the protected-branches endpoint means the branch is not
        protected.

        Args:
            repo:   Project path.
            branch: Branch to check for protection.
        """
        data = self._get(self._project_path(repo))
        perms = data.get("permissions") or {}
        levels = [
            (perms.get(scope) or {}).get("access_level", 0)
            for scope in ("project_access", "group_access")
        ]
        level = max(levels)

        protected = False
        can_push_protected = False
        try:
            rule = self._get(
                f"{self._project_path(repo)}/protected_branches/{quote(branch, safe='')}"
            )
        except ForgeError as exc:
            if exc.status_code != 404:
                raise
        else:
            protected = True
            push_levels = [
                entry.get("access_level", 0)
                for entry in rule.get("push_access_levels", [])
                if entry.get("access_level")
            ]
            can_push_protected = bool(push_levels) and level >= min(push_levels)

        return RepositoryPermissions(
            access_level=level,
            access_level_name=ACCESS_LEVEL_NAMES.get(level, str(level)),
            target_branch_protected=protected,
            can_push_to_protected=can_push_protected if protected else level >= 30,
            can_create_merge_request=level >= 30,
        )

    def create_pr(self, repo: str, pr: PRRequest) -> PRResult:
        """Open a GitLab merge request.

        The source branch is removed once the MR is merged.

        Args:
            repo: Project path.
            pr:   :class:`~infra.forge.PRRequest` with title, body, branches.
        """
        data = self._post(
            f"{self._project_path(repo)}/merge_requests",
            json={
                "title": pr.title,
                "description": pr.body,
                "source_branch": pr.head_branch,
                "target_branch": pr.base_branch,
                "remove_source_branch": True,
            },
        )
        return PRResult(
            id=data["id"],
            url=data["web_url"],
            number=data["iid"],
        )

    def __repr__(self) -> str:  # pragma: no cover
        return f"GitLabClient(base_url={self._base_url!r})"
