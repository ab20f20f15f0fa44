"""Supabase-backed job store."""

from collections.abc import Sequence
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from supabase import AsyncClient, acreate_client

from catalog_migration.core.constants import DEFAULT_LIST_LIMIT
from catalog_migration.core.exceptions import ConfigurationError, JobNotFoundError
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.job_store import check_update_fields
from catalog_migration.migration.models import ACTIVE_STATUSES, MigrationJob

logger = get_logger(__name__)

# Model field -> table column, where they differ.
_COLUMNS = {
    "source": "source_config",
    "destination": "destination_config",
    "processing": "processing_config",
}


def _to_column_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    return value


def job_to_row(job: MigrationJob) -> dict[str, Any]:
    """Serialize a job into a `migration_jobs` row."""
    data = job.model_dump(mode="json")
    return {_COLUMNS.get(name, name): value for name, value in data.items()}


def row_to_job(row: dict[str, Any]) -> MigrationJob:
    """Parse a `migration_jobs` row into a job."""
    reverse = {column: name for name, column in _COLUMNS.items()}
    data = {reverse.get(column, column): value for column, value in row.items()}
    data["error_log"] = data.get("error_log") or []
    return MigrationJob.model_validate(data)


class SupabaseJobStore:
    """Job store persisting to the `migration_jobs` table in Supabase."""

    def __init__(self, async_client: AsyncClient, settings: MigrationSettings):
        self.settings = settings
        self.client: AsyncClient = async_client
        self.table = settings.supabase_jobs_table

    @classmethod
    async def connect(cls, settings: MigrationSettings) -> "SupabaseJobStore":
        """Create the async Supabase client and wrap it."""
        if not settings.supabase_url or not settings.supabase_key:
            raise ConfigurationError("Supabase URL and key must be set")
        client = await acreate_client(settings.supabase_url, settings.supabase_key)
        return cls(client, settings)

    # ==================== Job Operations ====================

    async def create(self, job: MigrationJob) -> MigrationJob:
        """Insert a new job row."""
        response = await self.client.table(self.table).insert(job_to_row(job)).execute()
        created = row_to_job(response.data[0])
        logger.info(f"Created job {created.id} with {created.progress.total:,} records")
        return created

    async def get(self, job_id: UUID) -> MigrationJob | None:
        response = await (
            self.client.table(self.table).select("*").eq("id", str(job_id)).limit(1).execute()
        )
        if not response.data:
            return None
        return row_to_job(response.data[0])

    async def list_jobs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[MigrationJob]:
        """Newest jobs first."""
        response = await (
            self.client.table(self.table)
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [row_to_job(row) for row in response.data]

    async def update(self, job_id: UUID, **fields: Any) -> None:
        """Write only the given fields."""
        check_update_fields(fields)
        data = {_COLUMNS.get(name, name): _to_column_value(value) for name, value in fields.items()}
        response = await (
            self.client.table(self.table).update(data).eq("id", str(job_id)).execute()
        )
        if not response.data:
            raise JobNotFoundError(job_id)

    async def append_errors(self, job_id: UUID, messages: Sequence[str]) -> None:
        """Append to error_log. The run loop is the only writer for its job."""
        if not messages:
            return
        response = await (
            self.client.table(self.table)
            .select("error_log")
            .eq("id", str(job_id))
            .limit(1)
            .execute()
        )
        if not response.data:
            raise JobNotFoundError(job_id)
        current = list(response.data[0].get("error_log") or [])
        current.extend(messages)
        await (
            self.client.table(self.table)
            .update({"error_log": current})
            .eq("id", str(job_id))
            .execute()
        )

    async def delete(self, job_id: UUID) -> None:
        response = await self.client.table(self.table).delete().eq("id", str(job_id)).execute()
        if not response.data:
            raise JobNotFoundError(job_id)
        logger.info(f"Deleted job {job_id}")

    async def find_active(self, destination_table: str | None = None) -> list[MigrationJob]:
        """Get all jobs with status 'pending', 'running' or 'paused'."""
        query = (
            self.client.table(self.table)
            .select("*")
            .in_("status", [status.value for status in ACTIVE_STATUSES])
        )
        if destination_table is not None:
            query = query.eq("destination_config->>table", destination_table)
        response = await query.order("created_at", desc=True).execute()
        return [row_to_job(row) for row in response.data]
