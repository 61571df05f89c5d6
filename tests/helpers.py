"""Helpers shared by the test modules (importable because tests/ has no __init__)."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def configure_identity(repo: Path) -> None:
    git(repo, "config", "user.email", "test@test")
    git(repo, "config", "user.name", "test")


def result_line(text: str, **extra) -> str:
    """A stream-json ``result`` message as the CLI prints it."""
    return json.dumps({"type": "result", "subtype": "success", "result": text, **extra})
