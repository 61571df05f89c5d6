"""Shared fixtures: isolated settings and throwaway git repositories."""

from __future__ import annotations

import stat
import sys
import textwrap
from pathlib import Path

import pytest

from app.core.config import Settings
from helpers import configure_identity, git


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch) -> Settings:
    """Fresh settings per test, pointing every path into tmp_path."""
    for var in (
        "ANTHROPIC_API_KEY", "GITHUB_TOKEN", "GITLAB_TOKEN", "CLAUDE_WRAPPER",
        "GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL", "GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL",
    ):
        monkeypatch.delenv(var, raising=False)

    s = Settings(
        _env_file=None,
        workspace_dir=str(tmp_path / "workspaces"),
        data_dir=str(tmp_path / "data"),
        log_file=str(tmp_path / "logs" / "codedesk.log"),
        anthropic_api_key="sk-test",
        claude_auth_mode="auto",
        gitlab_url="https://gitlab.com",
        git_author_name="codedesk-test",
        git_author_email="codedesk@test",
        claude_activity_check_interval_seconds=0.05,
        queue_max_workers=4,
    )
    monkeypatch.setattr("app.core.config._settings", s)
    return s


@pytest.fixture
def remote_repo(tmp_path) -> Path:
    """Bare repository with one commit on ``main``, usable as ``origin``."""
    bare = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", str(bare))
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    git(tmp_path, "init", str(seed))
    configure_identity(seed)
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    (seed / "README.md").write_text("# Test Repo\n")
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "init")
    git(seed, "remote", "add", "origin", str(bare))
    git(seed, "push", "origin", "main")
    return bare


@pytest.fixture
def seed_repo(tmp_path, remote_repo) -> Path:
    """The clone that seeded the remote; pushes from here simulate other users."""
    return tmp_path / "seed"


@pytest.fixture
def workspace_repo(tmp_path, remote_repo) -> Path:
    """A clone of ``remote_repo`` on ``main``, inside the workspace root."""
    path = tmp_path / "workspaces" / "ws1"
    path.parent.mkdir(parents=True, exist_ok=True)
    git(tmp_path, "clone", str(remote_repo), str(path))
    configure_identity(path)
    return path


@pytest.fixture
def fake_cli(tmp_path):
    """Factory writing an executable Python script that stands in for ``claude``."""

    def _make(body: str, name: str = "fake-claude") -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(
            f"#!{sys.executable}\n"
            "import json, os, sys, time\n"
            + textwrap.dedent(body)
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make
