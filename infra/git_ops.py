"""Async wrappers around the ``git`` binary.

Every function takes the path of a working directory and runs one or more
git sub-commands in it through :func:`asyncio.create_subprocess_exec`, so a
slow ``fetch`` or ``push`` on one workspace never blocks jobs running on
another.  The module holds no state of its own.

Failures raise :class:`GitError`; checks that are expected to fail (``does
this ref exist?``) return ``False`` instead.
"""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger("git")

_CREDENTIAL_RE = re.compile(r"(https?://)[^@/\s]+@")
_REMOTE_HEAD_RE = re.compile(r"^\s*HEAD branch:\s*(\S+)\s*$", re.MULTILINE)
_LS_REMOTE_HEAD_RE = re.compile(r"refs/heads/(.+)$")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class GitError(Exception):
    """Raised when a git command exits non-zero, times out or cannot start."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------


def _redact(text: str) -> str:
    """Strip credentials embedded in clone URLs."""
    return _CREDENTIAL_RE.sub(r"\1***@", text)


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["LC_ALL"] = "C"
    return env


async def _exec_git(
    args: list[str], cwd: str | Path | None, timeout: float
) -> tuple[int, str, str]:
    cmd = ["git", *args]
    logger.debug("git | cwd=%s | %s", cwd, _redact(" ".join(cmd)))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_git_env(),
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found on PATH") from exc
    except NotADirectoryError as exc:
        raise GitError(f"working directory {cwd} is not a directory") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise GitError(f"git {_redact(' '.join(args[:2]))} timed out after {timeout}s") from exc

    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def run_git(
    args: list[str], cwd: str | Path | None = None, timeout: float | None = None
) -> str:
    """Run a git sub-command and return its stripped stdout.

    *timeout* defaults to the ``git_timeout_seconds`` setting.

    Raises:
        GitError: If git exits with a non-zero return code or times out.
    """
    if timeout is None:
        timeout = get_settings().git_timeout_seconds
    rc, stdout, stderr = await _exec_git(args, cwd, timeout)
    if rc != 0:
        stderr = _redact(stderr.strip())
        raise GitError(
            f"git {_redact(' '.join(args[:2]))} failed (exit {rc}): {stderr[:400]}",
            returncode=rc,
            stderr=stderr,
        )
    return stdout.strip()


async def _git_succeeds(args: list[str], cwd: str | Path, timeout: float = 60) -> bool:
    rc, _, _ = await _exec_git(args, cwd, timeout)
    return rc == 0


# ---------------------------------------------------------------------------
# Branch inspection
# ---------------------------------------------------------------------------


async def get_current_branch(path: str | Path) -> str:
    return await run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path)


async def list_local_branches(path: str | Path) -> list[str]:
    out = await run_git(["branch", "--format=%(refname:short)"], cwd=path)
    return [line.strip() for line in out.splitlines() if line.strip()]


async def list_remote_branches(path: str | Path) -> list[str]:
    """Return branch names present on ``origin`` (queried live via ``ls-remote``)."""
    out = await run_git(["ls-remote", "--heads", "origin"], cwd=path)
    branches: list[str] = []
    for line in out.splitlines():
        match = _LS_REMOTE_HEAD_RE.search(line.strip())
        if match and match.group(1) not in branches:
            branches.append(match.group(1))
    return branches


async def local_branch_exists(path: str | Path, branch: str) -> bool:
    return await _git_succeeds(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], path)


async def remote_tracking_branch_exists(path: str | Path, branch: str) -> bool:
    return await _git_succeeds(
        ["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{branch}"], path
    )


async def get_default_branch(path: str | Path) -> str:
    """Return the remote's HEAD branch.

    Reads ``git remote show origin``; when that does not name a branch,
    checks ``origin`` for ``main`` and then ``master``.  Falls back to
    ``"main"``.
    """
    try:
        out = await run_git(["remote", "show", "origin"], cwd=path)
        match = _REMOTE_HEAD_RE.search(out)
        if match and match.group(1) != "(unknown)":
            return match.group(1)
    except GitError as exc:
        logger.warning("git | remote show origin failed in %s: %s", path, exc)

    for candidate in ("main", "master"):
        try:
            out = await run_git(["ls-remote", "--heads", "origin", candidate], cwd=path)
        except GitError:
            continue
        if out.strip():
            return candidate

    return "main"


async def get_head_commit(path: str | Path, ref: str = "HEAD") -> str:
    return await run_git(["rev-parse", ref], cwd=path)


# ---------------------------------------------------------------------------
# Branch manipulation
# ---------------------------------------------------------------------------


async def create_branch(path: str | Path, branch: str, start_point: str | None = None) -> None:
    """Create *branch* and check it out."""
    args = ["checkout", "-b", branch]
    if start_point:
        args.append(start_point)
    await run_git(args, cwd=path)


async def switch_branch(path: str | Path, branch: str) -> None:
    """Check out *branch*, creating it from ``origin/<branch>`` or HEAD when missing."""
    if await local_branch_exists(path, branch):
        await run_git(["checkout", branch], cwd=path)
    elif await remote_tracking_branch_exists(path, branch):
        await run_git(["checkout", "-b", branch, "--track", f"origin/{branch}"], cwd=path)
    else:
        await run_git(["checkout", "-b", branch], cwd=path)
    logger.info("git | switched %s to %s", path, branch)


async def delete_branch(path: str | Path, branch: str) -> None:
    await run_git(["branch", "-D", branch], cwd=path)


async def clean_branches(path: str | Path, target_branch: str) -> list[str]:
    """Force-delete every local branch that is not protected.

    A branch is protected when it is checked out, equals *target_branch*, or
    exists on ``origin``.

    Returns:
        Names of the deleted branches.

    Raises:
        GitError: When listing branches or deleting one fails.
    """
    current = await get_current_branch(path)
    protected = {current, target_branch}
    for remote in await list_remote_branches(path):
        protected.add(remote.removeprefix("remotes/origin/"))

    deleted: list[str] = []
    for branch in await list_local_branches(path):
        if branch.startswith("remotes/") or branch in protected:
            continue
        await delete_branch(path, branch)
        deleted.append(branch)

    if deleted:
        logger.info("git | cleaned %d branch(es) in %s: %s", len(deleted), path, ", ".join(deleted))
    return deleted


# ---------------------------------------------------------------------------
# Remote synchronisation
# ---------------------------------------------------------------------------


async def is_shallow(path: str | Path) -> bool:
    out = await run_git(["rev-parse", "--is-shallow-repository"], cwd=path)
    return out.strip() == "true"


async def unshallow(path: str | Path) -> None:
    """Fetch the full history of a shallow clone."""
    logger.info("git | unshallowing %s", path)
    await run_git(["fetch", "--unshallow", "origin"], cwd=path)


async def fetch(path: str | Path) -> None:
    await run_git(["fetch", "--all", "--prune"], cwd=path)


async def pull_changes(path: str | Path, branch: str) -> None:
    """Fetch and hard-reset *branch* to ``origin/<branch>`` when it exists remotely."""
    await fetch(path)
    if await remote_tracking_branch_exists(path, branch):
        await run_git(["reset", "--hard", f"origin/{branch}"], cwd=path)
    else:
        logger.info("git | %s has no remote counterpart, keeping local state", branch)


async def sync_with_remote(path: str | Path, branch: str) -> None:
    """Check out *branch* and make it identical to ``origin/<branch>``.

    Shallow clones are unshallowed first so later pushes and merge-base
    lookups have the history they need.

    Raises:
        GitError: On any git failure, including a missing remote branch.
    """
    await switch_branch(path, branch)
    if await is_shallow(path):
        await unshallow(path)
    await fetch(path)
    if not await remote_tracking_branch_exists(path, branch):
        raise GitError(f"branch {branch!r} does not exist on origin")
    await run_git(["reset", "--hard", f"origin/{branch}"], cwd=path)


async def push(path: str | Path, branch: str, set_upstream: bool = True) -> None:
    args = ["push"]
    if set_upstream:
        args.append("-u")
    args += ["origin", branch]
    await run_git(args, cwd=path)
    logger.info("git | pushed %s from %s", branch, path)


# ---------------------------------------------------------------------------
# Working tree
# ---------------------------------------------------------------------------


async def has_uncommitted_changes(path: str | Path) -> bool:
    out = await run_git(["status", "--porcelain"], cwd=path)
    return bool(out.strip())


async def add_all(path: str | Path) -> None:
    await run_git(["add", "-A"], cwd=path)


async def commit(
    path: str | Path,
    message: str,
    author_name: str = "",
    author_email: str = "",
) -> str:
    """Commit the staged changes and return the new commit hash."""
    args: list[str] = []
    if author_name:
        args += ["-c", f"user.name={author_name}"]
    if author_email:
        args += ["-c", f"user.email={author_email}"]
    args += ["commit", "-m", message]
    await run_git(args, cwd=path)
    return await get_head_commit(path)


async def discard_local_changes(path: str | Path) -> None:
    """Throw away tracked modifications and untracked files."""
    await run_git(["reset", "--hard", "HEAD"], cwd=path)
    await run_git(["clean", "-fd"], cwd=path)


async def clone(
    url: str,
    dest: str | Path,
    branch: str | None = None,
    depth: int | None = None,
    timeout: float | None = None,
) -> None:
    args = ["clone"]
    if branch:
        args += ["--branch", branch]
    if depth:
        args += ["--depth", str(depth), "--no-single-branch"]
    args += [url, str(dest)]
    await run_git(args, timeout=timeout)
