"""Resume planning from what the destination actually holds."""

from uuid import UUID

from catalog_migration.core.constants import RESUME_FROM_START
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.controller import JobController
from catalog_migration.migration.job_store import JobStore
from catalog_migration.migration.models import (
    JobStatus,
    Key,
    MigrationConfig,
    MigrationJob,
    MigrationStats,
    PendingWork,
    ResumeResult,
    SourceSpec,
)
from catalog_migration.migration.mysql_client import SourceReader
from catalog_migration.repositories.catalog_repository import CatalogRepository

logger = get_logger(__name__)


class ResumePlanner:
    """Derives the checkpoint by inspecting the destination, never from job counters.

    After a crash the job's progress fields may lag behind what was committed,
    so the highest key present in the destination is the only trusted
    checkpoint. Extraction then continues with ``key > checkpoint``.
    """

    def __init__(
        self,
        *,
        settings: MigrationSettings,
        controller: JobController,
        store: JobStore,
        source: SourceReader,
        catalog: CatalogRepository,
    ):
        self.settings = settings
        self.controller = controller
        self.store = store
        self.source = source
        self.catalog = catalog

    async def check_progress(
        self,
        destination_table: str | None = None,
        *,
        key_field: str | None = None,
        exclude_key_prefixes: list[str] | None = None,
    ) -> MigrationStats:
        """Aggregate counts and the highest migrated key in the destination."""
        table = destination_table or self.settings.destination_table
        stats = await self.catalog.migration_stats(
            table,
            key_field or self.settings.source_key_field,
            self.settings.exclude_key_prefixes
            if exclude_key_prefixes is None
            else exclude_key_prefixes,
        )
        logger.info(
            f"Destination {table}: {stats.total_migrated:,} migrated, "
            f"{stats.with_embeddings:,} with embeddings, last key {stats.last_migrated_key!r}"
        )
        return stats

    async def get_pending_work(
        self,
        last_key: Key | None,
        limit: int = 10,
        source: SourceSpec | None = None,
    ) -> PendingWork:
        """Count and preview source rows with ``key > last_key``."""
        spec = source or self.settings.default_migration_config().source
        if last_key is not None:
            spec = spec.model_copy(update={"start_after": last_key})
        pending_count = await self.source.count_records(spec)
        next_batch = await self.source.fetch_batch(spec, after_key=None, limit=limit)
        return PendingWork(pending_count=pending_count, next_batch=next_batch)

    async def _continue(self, job: MigrationJob) -> None:
        if job.status == JobStatus.PENDING:
            await self.controller.start(job.id)
        elif job.status == JobStatus.PAUSED:
            await self.controller.resume(job.id)
        elif job.status == JobStatus.RUNNING and not self.controller.has_live_loop(job):
            await self.controller.recover(job.id)
        elif job.status == JobStatus.RUNNING:
            logger.info(f"Job {job.id} is still advancing under a live run loop")

    async def resume(self, existing_job_id: UUID | None = None) -> ResumeResult:
        """Continue an unfinished job, or start a fresh one after the checkpoint.

        The fresh job's source carries ``start_after = checkpoint`` and its
        destination never truncates.
        """
        existing: MigrationJob | None = None
        template = self.settings.default_migration_config()
        if existing_job_id is not None:
            existing = await self.controller.get_status(existing_job_id)
            template = MigrationConfig(
                source=existing.source,
                destination=existing.destination,
                processing=existing.processing,
            )

        table = template.destination.table
        stats = await self.check_progress(
            table,
            key_field=template.source.key_field,
            exclude_key_prefixes=template.source.exclude_key_prefixes,
        )
        checkpoint = stats.last_migrated_key
        source = template.source
        if checkpoint is not None:
            source = source.model_copy(update={"start_after": checkpoint})

        pending = await self.source.count_records(source)
        if pending == 0:
            logger.info(f"Nothing left to migrate into {table} after key {checkpoint!r}")
            return ResumeResult(job_id=None, resumed_from=checkpoint, total_pending=0)

        if existing is not None and not existing.status.is_terminal:
            candidates = [existing]
        else:
            candidates = await self.store.find_active(table)
        if candidates:
            job = candidates[0]
            logger.info(f"Reusing {job.status.value} job {job.id} for {table}")
            await self._continue(job)
            return ResumeResult(job_id=job.id, resumed_from=checkpoint, total_pending=pending)

        config = MigrationConfig(
            source=source,
            destination=template.destination.model_copy(update={"clean_before": False}),
            processing=template.processing.model_copy(
                update={"pause_requested": False, "cancel_requested": False}
            ),
        )
        job = await self.controller.create(config)
        resumed_from = str(checkpoint) if checkpoint is not None else RESUME_FROM_START
        await self.store.update(job.id, resumed_from=resumed_from)
        await self.controller.start(job.id)
        logger.info(f"Resume job {job.id} started after {resumed_from} ({pending:,} pending)")
        return ResumeResult(job_id=job.id, resumed_from=checkpoint, total_pending=pending)
