"""Asynchronous job queue with per-workspace serialization.

Every job belongs to a *lane*, keyed by the resolved path of the workspace it
touches, whatever its job type.
Each lane is drained by its own asyncio task, one job at a time and in
enqueue order, so two jobs never touch the same working directory at once.
Different lanes run concurrently, bounded by ``queue_max_workers``.

:meth:`JobQueue.execute_or_queue` runs a job inline when its lane is idle and
a worker slot is free, otherwise it queues it; callers that must not block
(the ask/edit endpoints) pass ``force_queue=True``.

Handlers raise on failure.  The queue records the exception's message as
the job's terminal ``failed`` state and logs the traceback; it never retries.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from typing import Any

from pydantic import BaseModel, ValidationError

from app.core.callbacks import notify_callback
from app.core.config import Settings, get_settings
from app.core.errors import JobError, classify
from app.core.job_store import JobStore
from app.core.logging import get_logger
from app.core.models import (
    CallbackConfig,
    ClaudeCodeJobPayload,
    ExecutionResult,
    GitMRJobPayload,
    GitPushJobPayload,
    Job,
    JobStatus,
    JobType,
    WorkspaceCleanupJobPayload,
    lane_key_for,
    utcnow,
)

logger = get_logger("jobs.queue")

JobHandler = Callable[[Job], Awaitable[dict[str, Any] | None]]
CallbackNotifier = Callable[[Job, CallbackConfig], Awaitable[bool]]

PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.CLAUDE_CODE: ClaudeCodeJobPayload,
    JobType.GIT_PUSH: GitPushJobPayload,
    JobType.GIT_MR: GitMRJobPayload,
    JobType.WORKSPACE_CLEANUP: WorkspaceCleanupJobPayload,
}

RESTART_ERROR = "Job interrupted by service restart"


def validate_payload(job_type: JobType, payload: BaseModel | dict[str, Any]) -> dict[str, Any]:
    """Check *payload* against its job type and return it as JSON-ready data.

    Raises:
        JobError: If the payload does not fit the job type.
    """
    model = PAYLOAD_MODELS[job_type]
    try:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        return model.model_validate(payload).model_dump(mode="json")
    except ValidationError as exc:
        raise JobError(f"Invalid {job_type} payload", details=str(exc)) from exc


class JobQueue:
    """Admit, persist, schedule and run jobs.

    Args:
        store:    Job record store.
        handlers: Coroutine per job type; returns the job's result dict.
        settings: Configuration; defaults to :func:`get_settings`.
        notifier: Callback sender, replaceable in tests.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: dict[JobType, JobHandler],
        settings: Settings | None = None,
        notifier: CallbackNotifier = notify_callback,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._settings = settings or get_settings()
        self._notifier = notifier
        self._max_workers = max(1, self._settings.queue_max_workers)
        self._slots = asyncio.Semaphore(self._max_workers)
        self._lane_locks: dict[str, asyncio.Lock] = {}
        self._lane_users: dict[str, int] = {}
        self._pending: dict[str, deque[str]] = {}
        self._drainers: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._cleanup_task: asyncio.Task | None = None
        self._running = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover persisted jobs and start retention cleanup.

        Jobs that were ``running`` when the process died are failed; jobs that
        were still ``queued`` are scheduled again in creation order.
        """
        recovered = 0
        for job in await self._store.load_all():
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.error = RESTART_ERROR
                job.error_classification = "internal"
                job.finished_at = utcnow()
                await self._store.save(job)
                logger.warning("queue | job %s was running at shutdown, marked failed", job.id)
            elif job.status == JobStatus.QUEUED:
                self._schedule(job)
                recovered += 1
        if recovered:
            logger.info("queue | re-queued %d job(s) from a previous run", recovered)

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("queue | started (max_workers=%d)", self._max_workers)

    async def stop(self) -> None:
        tasks = list(self._drainers.values()) + list(self._background)
        if self._cleanup_task is not None:
            tasks.append(self._cleanup_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._drainers.clear()
        self._background.clear()
        self._cleanup_task = None
        logger.info("queue | stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await self._store.cleanup(self._settings.job_retention_days)
            except OSError as exc:
                logger.error("queue | job cleanup failed: %s", exc)
            await asyncio.sleep(self._settings.job_cleanup_interval_seconds)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def enqueue(self, job_type: JobType, payload: BaseModel | dict[str, Any]) -> Job:
        """Validate, persist and schedule a job. Returns the queued record."""
        job = Job(type=job_type, payload=validate_payload(job_type, payload))
        job = await self._store.save(job)
        self._schedule(job)
        logger.info("queue | queued %s job %s on lane %s", job.type, job.id, job.lane_key)
        return job

    async def execute_or_queue(
        self,
        job_type: JobType,
        payload: BaseModel | dict[str, Any],
        force_queue: bool = False,
    ) -> ExecutionResult:
        """Run the job now if its lane and a worker slot are free, else queue it.

        An inline job that fails re-raises its exception after the failure
        has been recorded.
        """
        data = validate_payload(job_type, payload)
        lane = lane_key_for(data)

        if force_queue or not self._lane_idle(lane) or self._slots.locked():
            job = await self.enqueue(job_type, data)
            return ExecutionResult(immediate=False, job_id=job.id)

        job = await self._store.save(Job(type=job_type, payload=data))
        logger.info("queue | running %s job %s inline", job.type, job.id)
        job_id = job.id
        async with self._lane_turn(lane):
            job, error = await self._execute(job_id)
        if error is not None:
            raise error
        return ExecutionResult(immediate=True, job_id=job_id, result=job.result if job else None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self._store.get(job_id)

    def list_jobs(self, statuses: set[JobStatus] | None = None) -> list[Job]:
        return self._store.list_jobs(statuses)

    def status(self) -> dict[str, Any]:
        counts = {str(status): 0 for status in JobStatus}
        for job in self._store.list_jobs():
            counts[str(job.status)] += 1
        return {
            "jobs": counts,
            "max_workers": self._max_workers,
            "running": self._running,
            "active_lanes": sorted(self._drainers),
            "pending": {lane: len(ids) for lane, ids in self._pending.items() if ids},
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _lane_turn(self, lane: str) -> AsyncIterator[None]:
        """Hold a worker slot and the lane's lock.

        The lock lives only while someone holds or waits for it, so lanes
        of long-gone workspaces leave nothing behind.
        """
        lock = self._lane_locks.setdefault(lane, asyncio.Lock())
        self._lane_users[lane] = self._lane_users.get(lane, 0) + 1
        try:
            async with self._slots, lock:
                yield
        finally:
            self._lane_users[lane] -= 1
            if not self._lane_users[lane]:
                del self._lane_users[lane]
                self._lane_locks.pop(lane, None)

    def _lane_idle(self, lane: str) -> bool:
        return (
            not self._pending.get(lane)
            and lane not in self._drainers
            and lane not in self._lane_users
        )

    def _schedule(self, job: Job) -> None:
        lane = job.lane_key
        self._pending.setdefault(lane, deque()).append(job.id)
        if lane not in self._drainers:
            self._drainers[lane] = asyncio.create_task(self._drain(lane), name=f"lane-{lane}")

    async def _drain(self, lane: str) -> None:
        pending = self._pending[lane]
        try:
            while pending:
                job_id = pending.popleft()
                try:
                    async with self._lane_turn(lane):
                        await self._execute(job_id)
                except Exception:
                    logger.exception("queue | lane %s could not run job %s", lane, job_id)
        finally:
            # No await between the emptiness check above and this removal,
            # so _schedule never sees a finished drainer for a non-empty lane.
            self._drainers.pop(lane, None)
            if not pending:
                self._pending.pop(lane, None)

    async def _execute(self, job_id: str) -> tuple[Job | None, BaseException | None]:
        job = self._store.get(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            logger.warning("queue | job %s vanished or is no longer queued, skipping", job_id)
            return job, None

        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        job = await self._store.save(job)
        self._running += 1
        logger.info("queue | job %s (%s) running", job.id, job.type)

        error: BaseException | None = None
        try:
            handler = self._handlers.get(job.type)
            if handler is None:
                raise JobError(f"No handler registered for job type {job.type}")
            result = await handler(job)
            job.status = JobStatus.COMPLETED
            job.result = result
        except Exception as exc:
            logger.error("queue | job %s failed: %s", job.id, exc, exc_info=True)
            error = exc
            job.status = JobStatus.FAILED
            job.error = str(exc)
            job.error_classification = classify(exc)
        finally:
            self._running -= 1

        job.finished_at = utcnow()
        job = await self._store.save(job)
        elapsed = (job.finished_at - job.started_at).total_seconds() if job.started_at else 0.0
        logger.info("queue | job %s %s in %.1fs", job.id, job.status, elapsed)

        self._fire_callback(job)
        return job, error

    def _fire_callback(self, job: Job) -> None:
        raw = job.payload.get("callback")
        if not raw:
            return
        callback = CallbackConfig.model_validate(raw)
        task = asyncio.create_task(self._notifier(job, callback))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
