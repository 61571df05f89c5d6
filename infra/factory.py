"""Forge client factory and repository-URL helpers.

:func:`get_forge_client` is the single entry-point for obtaining a
``ForgeClient`` instance.  It auto-detects the platform from the repository
URL and reads credentials from the application config.

Usage::

    from infra.factory import get_forge_client, repo_path_from_url

    url = "git@gitlab.com:group/project.git"
    client = get_forge_client(url)
    client.create_pr(repo_path_from_url(url), pr)
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from app.core.config import get_settings
from infra.forge import ForgeClient, ForgeError
from infra.github_client import GitHubClient
from infra.gitlab_client import GitLabClient

PROVIDER_GITHUB = "github"
PROVIDER_GITLAB = "gitlab"
PROVIDER_OTHER = "other"

# git@host:owner/repo.git  (scp-like SSH syntax)
_SCP_RE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")


def parse_repo_url(url: str) -> tuple[str, str]:
    """Split a clone URL into ``(host, path)``.

    Accepts HTTPS, ``ssh://`` and scp-like ``git@host:owner/repo.git``
    forms.  The returned path has no leading slash and no ``.git`` suffix.

    Raises:
        ForgeError: If *url* has no host or no ``owner/repo`` path.
    """
    ref = url.strip()
    if "://" in ref:
        parsed = urlparse(ref)
        host = parsed.hostname or ""
        path = parsed.path
    else:
        match = _SCP_RE.match(ref)
        if not match:
            raise ForgeError(f"Cannot parse repository URL {url!r}")
        host, path = match.group("host"), match.group("path")

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    if not host or path.count("/") < 1:
        raise ForgeError(f"Repository URL {url!r} does not contain owner/repo components")
    return host.lower(), path


def repo_path_from_url(url: str) -> str:
    """Return the forge API path (``owner/repo`` or ``group/sub/project``) for *url*."""
    return parse_repo_url(url)[1]


def detect_provider(url: str) -> str:
    """Return ``"github"``, ``"gitlab"`` or ``"other"`` for a repository URL."""
    lowered = url.lower()
    if "github.com" in lowered or "github." in lowered:
        return PROVIDER_GITHUB
    if "gitlab.com" in lowered or "gitlab." in lowered:
        return PROVIDER_GITLAB

    gitlab_url = (get_settings().gitlab_url or "").lower()
    gitlab_host = urlparse(gitlab_url).hostname or ""
    if gitlab_host:
        try:
            host, _ = parse_repo_url(url)
        except ForgeError:
            return PROVIDER_OTHER
        if host == gitlab_host:
            return PROVIDER_GITLAB
    return PROVIDER_OTHER


def get_forge_client(
    url: str,
    platform: str | None = None,
) -> ForgeClient:
    """Return a :class:`~infra.forge.ForgeClient` for *url*.

    Platform detection rules (first match wins):

    1. If *platform* is ``"github"`` / ``"gitlab"`` → that client.
    2. :func:`detect_provider` on *url*.
    3. Otherwise raise :class:`~infra.forge.ForgeError`.

    GitLab clients talk to ``GITLAB_URL`` unless the repository lives on
    gitlab.com.

    Args:
        url:      Repository clone URL (HTTPS or SSH) or web URL.
        platform: Optional override: ``"github"`` or ``"gitlab"``.

    Raises:
        ForgeError: If the platform cannot be determined from *url*.
    """
    settings = get_settings()

    if platform is not None:
        platform = platform.lower().strip()
        if platform not in (PROVIDER_GITHUB, PROVIDER_GITLAB):
            raise ForgeError(f"Unknown platform {platform!r}. Must be 'github' or 'gitlab'.")
    else:
        platform = detect_provider(url)

    if platform == PROVIDER_GITHUB:
        return GitHubClient(token=settings.github_token)

    if platform == PROVIDER_GITLAB:
        base_url = settings.gitlab_url or "https://gitlab.com"
        if "gitlab.com" in url.lower():
            base_url = "https://gitlab.com"
        return GitLabClient(token=settings.gitlab_token, base_url=base_url)

    raise ForgeError(
        f"Cannot determine forge platform from URL {url!r}. "
        "Set GITLAB_URL in config for self-hosted GitLab instances, "
        "or pass platform='github'/'gitlab' explicitly."
    )
