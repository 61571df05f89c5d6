"""Shared data models: workspaces, jobs, payloads and results."""

from __future__ import annotations

import os
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


def short_id() -> str:
    """Return an 8-character hex token used for workspace and job ids."""
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


class WorkspacePermissions(BaseModel):
    """Forge permissions of the configured token on a workspace's repository."""

    access_level: int = 0
    access_level_name: str = "none"
    target_branch_protected: bool = False
    can_push_to_protected: bool = False
    can_create_merge_request: bool = False
    checked_at: datetime = Field(default_factory=utcnow)


class WorkspaceMetadata(BaseModel):
    commit_hash: str = ""
    size: int = 0
    is_active: bool = True
    permissions: WorkspacePermissions | None = None
    tags: list[str] = Field(default_factory=list)


class Workspace(BaseModel):
    """A cloned repository the service runs jobs against."""

    id: str = Field(default_factory=short_id)
    path: str
    repo_url: str
    target_branch: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)
    metadata: WorkspaceMetadata = Field(default_factory=WorkspaceMetadata)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobType(StrEnum):
    CLAUDE_CODE = "claude-code"
    GIT_PUSH = "git-push"
    GIT_MR = "git-mr"
    WORKSPACE_CLEANUP = "workspace-cleanup"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class CallbackConfig(BaseModel):
    """Where to POST the job outcome once it reaches a terminal state."""

    url: str
    secret: str = ""


class Job(BaseModel):
    id: str = Field(default_factory=short_id)
    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    result: dict[str, Any] | None = None
    error: str | None = None
    error_classification: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def lane_key(self) -> str:
        """Jobs sharing a lane key never run concurrently."""
        return lane_key_for(self.payload)


def lane_key_for(payload: dict[str, Any]) -> str:
    """Return the serialization key for a payload.

    Every job payload names the working directory it touches, so the key is
    that directory with symlinks and ``..`` resolved.  Jobs of any type on
    the same checkout therefore share a lane.
    """
    path = payload.get("workspace_path")
    if path:
        return os.path.realpath(path)
    return str(payload.get("workspace_id") or "_global")


class ExecutionResult(BaseModel):
    """Outcome of ``JobQueue.execute_or_queue``."""

    immediate: bool
    job_id: str | None = None
    result: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Job payloads
# ---------------------------------------------------------------------------


class ClaudeCodeJobPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace_id: str
    workspace_path: str = Field(min_length=1)
    question: str
    context: str | None = None
    repo_url: str = ""
    source_branch: str | None = None
    edit_request: bool = False
    create_mr: bool = True
    task_id: str | None = None
    callback: CallbackConfig | None = None


class GitWorkflowResult(BaseModel):
    """Branch topology an edit runs against. Lives for one job only."""

    merge_request_required: bool
    source_branch: str
    target_branch: str


class GitPushJobPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace_id: str | None = None
    workspace_path: str = Field(min_length=1)
    branch: str
    repo_url: str = ""


class GitMRJobPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace_id: str | None = None
    workspace_path: str = Field(min_length=1)
    git_workflow: GitWorkflowResult
    repo_url: str
    task_id: str | None = None


class WorkspaceCleanupJobPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace_id: str
    workspace_path: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PostExecutionResult(BaseModel):
    has_changes: bool
    commit_hash: str | None = None
    merge_request_url: str | None = None
    pushed_branch: str | None = None


class ClaudeUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cost_usd: float | None = None


class ClaudeCodeResult(BaseModel):
    """Normalized output of one Claude Code invocation."""

    output: str
    json_logs: list[dict[str, Any]] = Field(default_factory=list)
    raw_output: str = ""
    usage: ClaudeUsage | None = None
    result_subtype: str | None = None
    duration_ms: int | None = None


class ClaudeCodeJobResult(BaseModel):
    output: str
    execution_time_ms: int
    git_init_result: GitWorkflowResult | None = None
    post_execution: PostExecutionResult | None = None
    usage: ClaudeUsage | None = None
    json_logs: list[dict[str, Any]] = Field(default_factory=list)
    raw_output: str = ""
