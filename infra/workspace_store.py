"""Persistent workspace records.

The store is the single source of truth for :class:`~app.core.models.Workspace`
records.  Every public method is async and returns a :class:`StoreResult`
instead of raising, so callers decide for themselves whether a missing or
unreadable record is fatal.

:class:`JsonWorkspaceStore` keeps all records in one JSON index file::

    {data_dir}/.workspace-index.json   →  {"workspaces": {"<id>": {...}, ...}}

Writes are atomic (temp file, fsync, rename) and run in a worker thread.  A
read-through cache keyed by workspace id answers repeated loads; any
mutation of a record drops its cache entry.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from pydantic import ValidationError

from app.core.logging import get_logger
from app.core.models import Workspace, WorkspaceMetadata, utcnow
from infra.fileio import atomic_write_text

logger = get_logger("infra.workspace_store")

T = TypeVar("T")


@dataclass
class StoreResult(Generic[T]):
    """Success/failure envelope returned by every store operation."""

    ok: bool
    data: T | None = None
    error: str = ""

    @classmethod
    def success(cls, data: T | None = None) -> "StoreResult[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "StoreResult[T]":
        return cls(ok=False, error=error)


@runtime_checkable
class WorkspaceStore(Protocol):
    """Key-value store of workspaces keyed by id."""

    async def load_workspace(self, workspace_id: str) -> StoreResult[Workspace]: ...

    async def save_workspace(self, workspace: Workspace) -> StoreResult[Workspace]: ...

    async def get_all_workspaces(self) -> StoreResult[list[Workspace]]: ...

    async def update_workspace(self, workspace_id: str, **changes: Any) -> StoreResult[Workspace]: ...

    async def delete_workspace(self, workspace_id: str) -> StoreResult[None]: ...


class JsonWorkspaceStore:
    """:class:`WorkspaceStore` backed by a single JSON index file.

    Args:
        index_path: Location of the index file.  Parent directories are
                    created on first write.
    """

    def __init__(self, index_path: str | Path) -> None:
        self._path = Path(index_path)
        self._cache: dict[str, Workspace] = {}
        self._lock = asyncio.Lock()
        # Bumped by every mutation; a load only caches what it read if no
        # mutation landed while the index was being read.
        self._generation = 0

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_workspace(self, workspace_id: str) -> StoreResult[Workspace]:
        cached = self._cache.get(workspace_id)
        if cached is not None:
            return StoreResult.success(cached.model_copy(deep=True))

        generation = self._generation
        try:
            records = await self._read_index()
        except (OSError, ValueError) as exc:
            logger.error("workspace_store: cannot read %s: %s", self._path, exc)
            return StoreResult.failure(f"cannot read workspace index: {exc}")

        raw = records.get(workspace_id)
        if raw is None:
            return StoreResult.failure(f"workspace {workspace_id} not found")
        try:
            workspace = Workspace.model_validate(raw)
        except ValidationError as exc:
            return StoreResult.failure(f"workspace {workspace_id} is corrupt: {exc}")

        if generation == self._generation:
            self._cache[workspace_id] = workspace
        return StoreResult.success(workspace.model_copy(deep=True))

    async def save_workspace(self, workspace: Workspace) -> StoreResult[Workspace]:
        async with self._lock:
            try:
                records = await self._read_index()
                records[workspace.id] = workspace.model_dump(mode="json")
                await self._write_index(records)
            except (OSError, ValueError) as exc:
                logger.error("workspace_store: save %s failed: %s", workspace.id, exc)
                return StoreResult.failure(f"cannot save workspace {workspace.id}: {exc}")
            finally:
                self._cache.pop(workspace.id, None)
                self._generation += 1
        logger.info("workspace_store: saved %s (%s)", workspace.id, workspace.repo_url)
        return StoreResult.success(workspace)

    async def get_all_workspaces(self) -> StoreResult[list[Workspace]]:
        try:
            records = await self._read_index()
        except (OSError, ValueError) as exc:
            return StoreResult.failure(f"cannot read workspace index: {exc}")

        workspaces: list[Workspace] = []
        for workspace_id, raw in records.items():
            try:
                workspaces.append(Workspace.model_validate(raw))
            except ValidationError as exc:
                logger.warning("workspace_store: skipping corrupt record %s: %s", workspace_id, exc)
        workspaces.sort(key=lambda ws: ws.created_at)
        return StoreResult.success(workspaces)

    async def update_workspace(self, workspace_id: str, **changes: Any) -> StoreResult[Workspace]:
        """Apply *changes* to a stored workspace.

        Top-level fields are replaced; a ``metadata`` dict is merged into
        the existing metadata.  ``last_accessed`` is bumped on every update.
        """
        async with self._lock:
            try:
                records = await self._read_index()
                raw = records.get(workspace_id)
                if raw is None:
                    return StoreResult.failure(f"workspace {workspace_id} not found")

                current = Workspace.model_validate(raw)
                metadata_changes = changes.pop("metadata", None)
                data = current.model_dump()
                data.update(changes)
                if isinstance(metadata_changes, WorkspaceMetadata):
                    data["metadata"] = metadata_changes.model_dump()
                elif metadata_changes:
                    data["metadata"].update(metadata_changes)
                data["id"] = workspace_id
                data["last_accessed"] = utcnow()
                updated = Workspace.model_validate(data)

                records[workspace_id] = updated.model_dump(mode="json")
                await self._write_index(records)
            except (OSError, ValueError) as exc:
                logger.error("workspace_store: update %s failed: %s", workspace_id, exc)
                return StoreResult.failure(f"cannot update workspace {workspace_id}: {exc}")
            finally:
                self._cache.pop(workspace_id, None)
                self._generation += 1
        return StoreResult.success(updated)

    async def delete_workspace(self, workspace_id: str) -> StoreResult[None]:
        async with self._lock:
            try:
                records = await self._read_index()
                if records.pop(workspace_id, None) is None:
                    return StoreResult.failure(f"workspace {workspace_id} not found")
                await self._write_index(records)
            except (OSError, ValueError) as exc:
                return StoreResult.failure(f"cannot delete workspace {workspace_id}: {exc}")
            finally:
                self._cache.pop(workspace_id, None)
                self._generation += 1
        logger.info("workspace_store: deleted %s", workspace_id)
        return StoreResult.success()

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    async def _read_index(self) -> dict[str, Any]:
        return await asyncio.to_thread(_read_index_file, self._path)

    async def _write_index(self, records: dict[str, Any]) -> None:
        payload = json.dumps({"workspaces": records}, indent=2, default=str)
        await asyncio.to_thread(atomic_write_text, self._path, payload)

    def __repr__(self) -> str:  # pragma: no cover
        return f"JsonWorkspaceStore(path={str(self._path)!r})"


def _read_index_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = json.loads(path.read_text(encoding="utf-8") or "{}")
    if not isinstance(data, dict):
        raise ValueError("workspace index must be a JSON object")
    workspaces = data.get("workspaces", {})
    if not isinstance(workspaces, dict):
        raise ValueError("'workspaces' must be a JSON object")
    return workspaces

