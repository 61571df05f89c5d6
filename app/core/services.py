"""Construction of the long-lived service objects.

Everything stateful (workspace store, job store, queue) is created once here
at startup and handed to whoever needs it; nothing reaches for a module-level
singleton.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.core.claude_executor import ClaudeCodeExecutor
from app.core.config import Settings, get_settings
from app.core.git_workflow import GitWorkflowEngine
from app.core.job_handlers import JobHandlers
from app.core.job_queue import JobQueue
from app.core.job_store import JobStore
from app.core.post_execution import PostExecutionHandler
from infra.workspace import WorkspaceManager
from infra.workspace_store import JsonWorkspaceStore, WorkspaceStore


@dataclass
class Services:
    settings: Settings
    store: WorkspaceStore
    workspaces: WorkspaceManager
    executor: ClaudeCodeExecutor
    queue: JobQueue


def build_services(settings: Settings | None = None) -> Services:
    settings = settings or get_settings()
    store = JsonWorkspaceStore(settings.workspace_index_path)
    workspaces = WorkspaceManager(settings.workspace_dir, store)
    executor = ClaudeCodeExecutor(settings)
    handlers = JobHandlers(
        workflow=GitWorkflowEngine(store),
        executor=executor,
        post_execution=PostExecutionHandler(),
        workspaces=workspaces,
    )
    queue = JobQueue(JobStore(settings.jobs_dir), handlers.as_mapping(), settings)
    return Services(
        settings=settings,
        store=store,
        workspaces=workspaces,
        executor=executor,
        queue=queue,
    )
