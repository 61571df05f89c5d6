"""File-backed job records.

One JSON file per job::

    {data_dir}/jobs/{job_id}.json

Records are kept in memory as well; the files exist so job status survives
a restart and can still be polled afterwards.  A record that reached
``completed`` or ``failed`` is never rewritten.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError

from app.core.errors import JobError
from app.core.logging import get_logger
from app.core.models import Job, JobStatus, utcnow
from infra.fileio import atomic_write_text

logger = get_logger("jobs.store")


class JobStore:
    """Persist :class:`~app.core.models.Job` records as JSON files.

    Args:
        jobs_dir: Directory holding one file per job.
    """

    def __init__(self, jobs_dir: str | Path) -> None:
        self._dir = Path(jobs_dir)
        self._jobs: dict[str, Job] = {}

    def _file(self, job_id: str) -> Path:
        return self._dir / f"{job_id}.json"

    async def load_all(self) -> list[Job]:
        """Read every job file into memory, oldest first."""
        jobs = await asyncio.to_thread(_read_all, self._dir)
        self._jobs = {job.id: job for job in jobs}
        return sorted((job.model_copy(deep=True) for job in jobs), key=lambda job: job.created_at)

    async def save(self, job: Job) -> Job:
        """Persist *job* and return a copy of what was stored.

        The store keeps its own snapshot; callers mutate their copies freely
        and call :meth:`save` again to record the change.

        Raises:
            JobError: If the stored record is already terminal.
        """
        existing = self._jobs.get(job.id)
        if existing is not None and existing.status.is_terminal:
            raise JobError(f"job {job.id} is already {existing.status}")
        snapshot = job.model_copy(deep=True)
        await asyncio.to_thread(atomic_write_text, self._file(job.id), snapshot.model_dump_json(indent=2))
        self._jobs[job.id] = snapshot
        return snapshot.model_copy(deep=True)

    def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(self, statuses: set[JobStatus] | None = None) -> list[Job]:
        jobs = [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if statuses is None or job.status in statuses
        ]
        return sorted(jobs, key=lambda job: job.created_at)

    async def cleanup(self, retention_days: int) -> int:
        """Delete finished jobs older than *retention_days*. Returns the count removed."""
        cutoff = utcnow() - timedelta(days=retention_days)
        expired = [
            job.id
            for job in self._jobs.values()
            if job.status.is_terminal and (job.finished_at or job.created_at) < cutoff
        ]
        for job_id in expired:
            await asyncio.to_thread(self._file(job_id).unlink, True)
            self._jobs.pop(job_id, None)
        if expired:
            logger.info("job_store: removed %d job(s) older than %d days", len(expired), retention_days)
        return len(expired)


def _read_all(directory: Path) -> list[Job]:
    if not directory.is_dir():
        return []
    jobs: list[Job] = []
    for path in directory.glob("*.json"):
        try:
            jobs.append(Job.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValidationError) as exc:
            logger.warning("job_store: skipping unreadable %s: %s", path.name, exc)
    return jobs

