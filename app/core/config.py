"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for codedesk. Reads from .env automatically."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Claude Code CLI ────────────────────────────────────────────────
    anthropic_api_key: str = ""
    claude_binary: str = "claude"

    # Optional sandbox wrapper script.  Invoked as
    #   bash <wrapper> <workspace> <claude args...>
    claude_wrapper: str = ""

    # "api"  → ANTHROPIC_API_KEY must be set and is passed to the CLI
    # "cli"  → the CLI uses its own login; the key is stripped from the env
    # "auto" → pass the key when present, otherwise rely on the CLI login
    claude_auth_mode: str = "auto"

    # Inactivity ceilings: the process is killed after this long without
    # producing any stdout/stderr.  Total runtime is unbounded.
    claude_inactivity_timeout_seconds: float = 300.0
    claude_ask_inactivity_timeout_seconds: float = 300.0
    claude_activity_check_interval_seconds: float = 30.0
    claude_error_preview_chars: int = 500
    claude_version_timeout_seconds: float = 10.0

    # ── Storage ────────────────────────────────────────────────────────
    # Cloned repositories live in <workspace_dir>/<workspace id>/
    workspace_dir: str = "~/codedesk-workspaces"
    # Job records and the workspace index live here
    data_dir: str = "~/.codedesk"

    @field_validator("workspace_dir", "data_dir")
    @classmethod
    def _resolve_dir(cls, value: str) -> str:
        if value:
            return str(Path(value).expanduser().resolve())
        return value

    # ── Git ────────────────────────────────────────────────────────────
    git_author_name: str = "codedesk"
    git_author_email: str = "codedesk@local"
    git_timeout_seconds: int = 300

    # ── Forge / Source-control API credentials ─────────────────────────
    github_token: str = ""
    gitlab_token: str = ""
    # Base URL of your GitLab instance ("https://gitlab.com" or self-hosted).
    gitlab_url: str = "https://gitlab.com"

    # ── Job queue ──────────────────────────────────────────────────────
    # Number of workspaces that may run a job at the same time.
    queue_max_workers: int = 4
    job_retention_days: int = 7
    job_cleanup_interval_seconds: int = 3600
    callback_timeout_seconds: float = 10.0
    callback_max_attempts: int = 3

    # Web UI
    web_host: str = "127.0.0.1"
    web_port: int = 8420

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/codedesk.log"

    @property
    def jobs_dir(self) -> Path:
        return Path(self.data_dir) / "jobs"

    @property
    def workspace_index_path(self) -> Path:
        return Path(self.data_dir) / ".workspace-index.json"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Singleton accessor."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
