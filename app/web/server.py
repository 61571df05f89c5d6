"""FastAPI web server: HTTP front door to the job queue.

Ask and edit requests are always queued; the response carries a job id to
poll at ``/api/jobs/{job_id}``.  Workspace routes cover cloning, branch
listing, permission refresh and cleanup.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.core.errors import CLASS_CONFIGURATION, CodedeskError
from app.core.logging import get_logger
from app.core.models import (
    CallbackConfig,
    ClaudeCodeJobPayload,
    Job,
    JobStatus,
    JobType,
    Workspace,
    WorkspaceCleanupJobPayload,
)
from app.core.services import Services, build_services
from infra.forge import ForgeError
from infra.workspace import WorkspaceError

logger = get_logger("web.server")


# ── Models ────────────────────────────────────────────────────────────────

class AskRequest(BaseModel):
    workspace_id: str
    question: str = Field(min_length=1)
    context: str | None = None
    source_branch: str | None = None
    callback: CallbackConfig | None = None


class EditRequest(AskRequest):
    create_mr: bool = True
    task_id: str | None = None


class CloneRequest(BaseModel):
    repo_url: str = Field(min_length=1)
    target_branch: str | None = None
    depth: int | None = Field(default=None, ge=1)


class CleanupRequest(BaseModel):
    workspace_id: str


class WorkspaceUpdateRequest(BaseModel):
    target_branch: str | None = Field(default=None, min_length=1)
    refresh_permissions: bool = False


# ── Helpers ───────────────────────────────────────────────────────────────

def get_services(request: Request) -> Services:
    return request.app.state.services


def _job_view(job: Job) -> dict[str, Any]:
    data = job.model_dump(mode="json")
    callback = data["payload"].get("callback")
    if isinstance(callback, dict):
        callback.pop("secret", None)
    return data


async def _require_workspace(services: Services, workspace_id: str) -> Workspace:
    try:
        return await services.workspaces.get(workspace_id)
    except WorkspaceError as exc:
        raise HTTPException(
            status_code=404,
            detail={"error": "workspace_not_found", "details": str(exc)},
        ) from exc


async def _require_claude(services: Services) -> None:
    if not await services.executor.check_available():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "claude_unavailable",
                "details": f"{services.settings.claude_binary} is not installed or not runnable",
            },
        )


async def _queue_claude_job(
    services: Services, req: AskRequest, edit: bool
) -> dict[str, Any]:
    workspace = await _require_workspace(services, req.workspace_id)
    await _require_claude(services)

    payload = ClaudeCodeJobPayload(
        workspace_id=workspace.id,
        workspace_path=workspace.path,
        question=req.question,
        context=req.context,
        repo_url=workspace.repo_url,
        source_branch=req.source_branch,
        edit_request=edit,
        create_mr=getattr(req, "create_mr", True),
        task_id=getattr(req, "task_id", None),
        callback=req.callback,
    )
    queued = await services.queue.execute_or_queue(JobType.CLAUDE_CODE, payload, force_queue=True)
    kind = "Edit" if edit else "Ask"
    return {
        "success": True,
        "queued": True,
        "job_id": queued.job_id,
        "message": f"{kind} request queued. Poll /api/jobs/{queued.job_id} for the result.",
        "workspace": workspace.id,
    }


# ── App factory ───────────────────────────────────────────────────────────

def create_app(services_factory: Callable[[], Services] = build_services) -> FastAPI:
    """Build the FastAPI app; *services_factory* runs once inside the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = services_factory()
        app.state.services = services
        await services.queue.start()
        logger.info("Web server started, job queue running")
        yield
        await services.queue.stop()
        logger.info("Lifespan cleanup complete")

    app = FastAPI(title="codedesk", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {"error": "http", "details": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(CodedeskError)
    async def _codedesk_error(request: Request, exc: CodedeskError) -> JSONResponse:
        status = 400 if exc.classification == CLASS_CONFIGURATION else 500
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(ForgeError)
    async def _forge_error(request: Request, exc: ForgeError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"error": "forge", "details": str(exc)})

    @app.exception_handler(WorkspaceError)
    async def _workspace_error(request: Request, exc: WorkspaceError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "workspace", "details": str(exc)})

    # ── Health ──

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    # ── Ask / edit ──

    @app.post("/api/ask")
    async def ask(req: AskRequest, services: Services = Depends(get_services)):
        return await _queue_claude_job(services, req, edit=False)

    @app.post("/api/edit")
    async def edit(req: EditRequest, services: Services = Depends(get_services)):
        return await _queue_claude_job(services, req, edit=True)

    # ── Jobs ──

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str, services: Services = Depends(get_services)):
        job = services.queue.get_job(job_id)
        if job is None:
            raise HTTPException(
                status_code=404,
                detail={"error": "job_not_found", "details": f"job {job_id} not found"},
            )
        return _job_view(job)

    @app.get("/api/jobs")
    async def list_jobs(
        status: str | None = Query(default=None, description="Comma-separated statuses"),
        services: Services = Depends(get_services),
    ):
        statuses: set[JobStatus] | None = None
        if status:
            try:
                statuses = {JobStatus(s.strip()) for s in status.split(",") if s.strip()}
            except ValueError as exc:
                raise HTTPException(
                    status_code=422,
                    detail={"error": "invalid_status", "details": str(exc)},
                ) from exc
        return {"jobs": [_job_view(job) for job in services.queue.list_jobs(statuses)]}

    @app.get("/api/queue/status")
    async def queue_status(services: Services = Depends(get_services)):
        return services.queue.status()

    # ── Workspaces ──

    @app.get("/api/workspaces")
    async def list_workspaces(services: Services = Depends(get_services)):
        listed = await services.store.get_all_workspaces()
        if not listed.ok:
            raise HTTPException(
                status_code=500, detail={"error": "store", "details": listed.error}
            )
        return {"workspaces": [ws.model_dump(mode="json") for ws in listed.data or []]}

    @app.get("/api/workspaces/{workspace_id}/branches")
    async def workspace_branches(workspace_id: str, services: Services = Depends(get_services)):
        await _require_workspace(services, workspace_id)
        return await services.workspaces.branches(workspace_id)

    @app.post("/api/workspaces/{workspace_id}/refresh-permissions")
    async def refresh_permissions(workspace_id: str, services: Services = Depends(get_services)):
        await _require_workspace(services, workspace_id)
        permissions = await services.workspaces.refresh_permissions(workspace_id)
        return {"success": True, "permissions": permissions.model_dump(mode="json")}

    @app.post("/api/workspaces/{workspace_id}/update")
    async def update_workspace(
        workspace_id: str, req: WorkspaceUpdateRequest, services: Services = Depends(get_services)
    ):
        await _require_workspace(services, workspace_id)
        workspace = await services.workspaces.update_target_branch(
            workspace_id, req.target_branch, req.refresh_permissions
        )
        return {"success": True, "workspace": workspace.model_dump(mode="json")}

    @app.post("/api/clone")
    async def clone(req: CloneRequest, services: Services = Depends(get_services)):
        workspace = await services.workspaces.clone(req.repo_url, req.target_branch, req.depth)
        return {"success": True, "workspace": workspace.model_dump(mode="json")}

    @app.post("/api/cleanup")
    async def cleanup(req: CleanupRequest, services: Services = Depends(get_services)):
        workspace = await _require_workspace(services, req.workspace_id)
        queued = await services.queue.execute_or_queue(
            JobType.WORKSPACE_CLEANUP,
            WorkspaceCleanupJobPayload(workspace_id=workspace.id, workspace_path=workspace.path),
            force_queue=True,
        )
        return {"success": True, "queued": True, "job_id": queued.job_id}

    return app


app = create_app()
