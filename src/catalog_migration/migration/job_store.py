"""Job store interface and in-memory implementation."""

import asyncio
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from pydantic import BaseModel

from catalog_migration.core.constants import DEFAULT_LIST_LIMIT
from catalog_migration.core.exceptions import JobNotFoundError
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.models import ACTIVE_STATUSES, MigrationJob

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "source",
        "processing",
        "progress",
        "started_at",
        "completed_at",
        "final_stats",
        "resumed_from",
        "heartbeat_at",
    }
)


@runtime_checkable
class JobStore(Protocol):
    """Durable record of migration jobs.

    Updates are partial: only the named fields are written, so the run loop
    never rewrites the whole job while an operator reads or appends to it.
    """

    async def create(self, job: MigrationJob) -> MigrationJob: ...

    async def get(self, job_id: UUID) -> MigrationJob | None: ...

    async def list_jobs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[MigrationJob]: ...

    async def update(self, job_id: UUID, **fields: Any) -> None: ...

    async def append_errors(self, job_id: UUID, messages: Sequence[str]) -> None: ...

    async def delete(self, job_id: UUID) -> None: ...

    async def find_active(self, destination_table: str | None = None) -> list[MigrationJob]: ...


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")


class InMemoryJobStore:
    """Process-local job store for tests and dry runs."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, MigrationJob] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: MigrationJob) -> MigrationJob:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        logger.info(f"Created job {job.id}")
        return job.model_copy(deep=True)

    async def get(self, job_id: UUID) -> MigrationJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[MigrationJob]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def update(self, job_id: UUID, **fields: Any) -> None:
        check_update_fields(fields)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            data = job.model_dump()
            for name, value in fields.items():
                data[name] = value.model_dump() if isinstance(value, BaseModel) else value
            self._jobs[job_id] = MigrationJob.model_validate(data)

    async def append_errors(self, job_id: UUID, messages: Sequence[str]) -> None:
        if not messages:
            return
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            job.error_log.extend(messages)

    async def delete(self, job_id: UUID) -> None:
        async with self._lock:
            if self._jobs.pop(job_id, None) is None:
                raise JobNotFoundError(job_id)
        logger.info(f"Deleted job {job_id}")

    async def find_active(self, destination_table: str | None = None) -> list[MigrationJob]:
        jobs = [
            job
            for job in await self.list_jobs(limit=len(self._jobs) or 1)
            if job.status in ACTIVE_STATUSES
            and (destination_table is None or job.destination.table == destination_table)
        ]
        return jobs
