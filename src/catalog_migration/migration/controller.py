"""Job controller: lifecycle operations and the per-job run loop."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from catalog_migration.core.constants import DEFAULT_LIST_LIMIT
from catalog_migration.core.exceptions import (
    BatchIntegrityError,
    ConfigurationError,
    InvalidStateError,
    JobNotFoundError,
    SourceConnectionError,
)
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.batch_loader import BatchLoader
from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.enrichment import RecordEnricher
from catalog_migration.migration.job_store import JobStore
from catalog_migration.migration.models import (
    FinalStats,
    JobProgress,
    JobStatus,
    MigrationConfig,
    MigrationJob,
    utcnow,
)
from catalog_migration.migration.mysql_client import SourceReader
from catalog_migration.migration.state_machine import can_transition, ensure_transition
from catalog_migration.repositories.acronym_repository import AcronymRepository
from catalog_migration.repositories.catalog_repository import CatalogRepository
from catalog_migration.services.embedding_service import EmbeddingService
from catalog_migration.text_processing.acronyms import AcronymExpander

logger = get_logger(__name__)


class JobControl:
    """In-process control channel for one run loop.

    Requests are observed only between batches, so an in-flight batch always
    finishes (or fails) before the loop stops. Requests made by other
    processes arrive through the stored processing flags instead.
    """

    def __init__(self) -> None:
        self._pause = asyncio.Event()
        self._cancel = asyncio.Event()

    def request_pause(self) -> None:
        self._pause.set()

    def request_cancel(self) -> None:
        self._cancel.set()

    @property
    def pause_requested(self) -> bool:
        return self._pause.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()


def _update_rates(
    progress: JobProgress,
    processed_this_run: int,
    elapsed_seconds: float,
) -> None:
    # Keep processed <= total even if the source grew after the initial count.
    if progress.processed > progress.total:
        progress.total = progress.processed
    progress.percentage = (
        min(100.0, round(progress.processed / progress.total * 100, 2)) if progress.total else 0.0
    )
    rate = processed_this_run / elapsed_seconds if elapsed_seconds > 0 else 0.0
    progress.records_per_second = round(rate, 2)
    remaining = progress.total - progress.processed
    progress.estimated_remaining_minutes = round(remaining / rate / 60, 1) if rate > 0 else None


class JobController:
    """Creates migration jobs and drives them through their state machine.

    Each started job runs as one asyncio task owned by this controller; a job
    id never has more than one live task.
    """

    def __init__(
        self,
        *,
        settings: MigrationSettings,
        store: JobStore,
        source: SourceReader,
        catalog: CatalogRepository,
        loader: BatchLoader,
        embeddings: EmbeddingService,
        acronyms: AcronymRepository | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.source = source
        self.catalog = catalog
        self.loader = loader
        self.embeddings = embeddings
        self.acronyms = acronyms
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[UUID, asyncio.Task[None]] = {}
        self._controls: dict[UUID, JobControl] = {}

    # ==================== Queries ====================

    async def get_status(self, job_id: UUID) -> MigrationJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[MigrationJob]:
        return await self.store.list_jobs(limit)

    def is_running(self, job_id: UUID) -> bool:
        """True if this process owns a live run loop for the job."""
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def _heartbeat_is_fresh(self, job: MigrationJob) -> bool:
        if job.heartbeat_at is None:
            return False
        age = (utcnow() - job.heartbeat_at).total_seconds()
        return age < self.settings.heartbeat_timeout_seconds

    def has_live_loop(self, job: MigrationJob) -> bool:
        """True if a run loop in this or another process is still advancing the job.

        Other processes are judged by ``heartbeat_at``, which every loop
        refreshes on each progress write.
        """
        if self.is_running(job.id):
            return True
        return job.status == JobStatus.RUNNING and self._heartbeat_is_fresh(job)

    async def wait(self, job_id: UUID) -> MigrationJob:
        """Wait for the job's current run loop to return, then report its status."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return await self.get_status(job_id)

    # ==================== Creation ====================

    async def create(self, config: MigrationConfig) -> MigrationJob:
        """Validate the configuration against the source and persist a pending job.

        Raises:
            ConfigurationError: Source unreachable, table or mapped columns
                missing, bad identifiers, or a forbidden clean-before.
        """
        source = config.source
        self.catalog.quote(config.destination.table)

        try:
            reachable = await self.source.test_connection()
            columns = await self.source.get_table_columns(source.table) if reachable else []
        except (SourceConnectionError, TimeoutError) as e:
            raise ConfigurationError(f"Source database is not reachable: {e}") from e
        if not reachable:
            raise ConfigurationError("Source database is not reachable")
        if not columns:
            raise ConfigurationError(f"Source table '{source.table}' does not exist")

        known = {column.lower() for column in columns}
        missing = sorted({c for c in source.fields.values() if c.lower() not in known})
        if missing:
            raise ConfigurationError(
                f"Columns missing from source table '{source.table}': {', '.join(missing)}"
            )

        if config.destination.clean_before:
            await self._guard_clean_before(config.destination.table)

        total = await self.source.count_records(source)
        job = MigrationJob(
            source=source,
            destination=config.destination,
            processing=config.processing,
            progress=JobProgress(total=total),
        )
        job = await self.store.create(job)
        logger.info(
            f"Created migration job {job.id}: {source.table} -> {config.destination.table} "
            f"({total:,} records)"
        )
        return job

    async def _guard_clean_before(self, table: str) -> None:
        """Truncating is refused while another job or a partial resume owns the table."""
        active = await self.store.find_active(table)
        if active:
            raise ConfigurationError(
                f"clean_before refused: job {active[0].id} on '{table}' is "
                f"{active[0].status.value}"
            )
        for job in await self.store.list_jobs(DEFAULT_LIST_LIMIT):
            if (
                job.destination.table == table
                and job.resumed_from is not None
                and job.status != JobStatus.COMPLETED
            ):
                raise ConfigurationError(
                    f"clean_before refused: resume job {job.id} on '{table}' ended "
                    f"{job.status.value}; finish the resume before truncating"
                )

    # ==================== Lifecycle ====================

    async def start(self, job_id: UUID) -> MigrationJob:
        """Move a pending job to running and launch its loop without waiting for it."""
        job = await self.get_status(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(
                f"Job {job_id} can only be started from 'pending', not '{job.status.value}'",
                current_status=job.status.value,
            )
        ensure_transition(job.id, job.status, JobStatus.RUNNING)
        now = utcnow()
        await self.store.update(
            job_id, status=JobStatus.RUNNING, started_at=now, heartbeat_at=now
        )
        await self._launch(job_id)
        logger.info(f"Started job {job_id}")
        return await self.get_status(job_id)

    async def pause(self, job_id: UUID) -> MigrationJob:
        """Ask a running job to pause at its next batch boundary."""
        job = await self.get_status(job_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidStateError(
                f"Job {job_id} can only be paused while running, not '{job.status.value}'",
                current_status=job.status.value,
            )
        processing = job.processing.model_copy(update={"pause_requested": True})
        await self.store.update(job_id, processing=processing)

        if self.is_running(job_id):
            self._controls[job_id].request_pause()
            logger.info(f"Pause requested for job {job_id}")
        elif self._heartbeat_is_fresh(job):
            # The owning loop reads the stored flag at its next batch boundary.
            logger.info(f"Pause requested for job {job_id}; its run loop is in another process")
        else:
            # No live loop anywhere; nothing is mid-batch.
            await self._transition(job_id, JobStatus.PAUSED)
            logger.info(f"Paused job {job_id} (no active loop)")
        return await self.get_status(job_id)

    async def resume(self, job_id: UUID) -> MigrationJob:
        """Re-enter the run loop of a paused job from its persisted checkpoint."""
        job = await self.get_status(job_id)
        if job.status != JobStatus.PAUSED:
            raise InvalidStateError(
                f"Job {job_id} can only be resumed while paused, not '{job.status.value}'",
                current_status=job.status.value,
            )
        previous = self._tasks.get(job_id)
        if previous is not None and not previous.done():
            await previous

        processing = job.processing.model_copy(update={"pause_requested": False})
        await self._transition(
            job_id, JobStatus.RUNNING, processing=processing, heartbeat_at=utcnow()
        )
        await self._launch(job_id)
        logger.info(f"Resumed job {job_id} after key {job.progress.last_key!r}")
        return await self.get_status(job_id)

    async def recover(self, job_id: UUID) -> MigrationJob:
        """Relaunch a job left 'running' by a process that no longer exists.

        Refused while the job's heartbeat is younger than
        ``heartbeat_timeout_seconds``, since its loop may still be alive.
        """
        job = await self.get_status(job_id)
        if job.status != JobStatus.RUNNING or self.has_live_loop(job):
            raise InvalidStateError(
                f"Job {job_id} is not an orphaned running job",
                current_status=job.status.value,
            )
        logger.warning(f"Recovering orphaned job {job_id} after key {job.progress.last_key!r}")
        await self.store.update(job_id, heartbeat_at=utcnow())
        await self._launch(job_id)
        return await self.get_status(job_id)

    async def cancel(self, job_id: UUID) -> MigrationJob:
        """Cancel a non-terminal job; a live loop stops at its next batch boundary."""
        job = await self.get_status(job_id)
        ensure_transition(job.id, job.status, JobStatus.CANCELLED)

        if self.has_live_loop(job):
            processing = job.processing.model_copy(update={"cancel_requested": True})
            await self.store.update(job_id, processing=processing)
            if self.is_running(job_id):
                self._controls[job_id].request_cancel()
                logger.info(f"Cancel requested for job {job_id}")
            else:
                logger.info(f"Cancel requested for job {job_id}; its run loop is in another process")
        else:
            await self._transition(job_id, JobStatus.CANCELLED, completed_at=utcnow())
            logger.info(f"Cancelled job {job_id}")
        return await self.get_status(job_id)

    async def delete(self, job_id: UUID) -> None:
        """Delete a job. Only terminal jobs may be deleted."""
        job = await self.get_status(job_id)
        if not job.status.is_terminal:
            raise InvalidStateError(
                f"Job {job_id} is {job.status.value}; only completed, failed or "
                "cancelled jobs can be deleted",
                current_status=job.status.value,
            )
        await self.store.delete(job_id)

    async def pause_all(self) -> None:
        """Request a pause for every live loop and wait for them to stop."""
        running = [job_id for job_id in list(self._tasks) if self.is_running(job_id)]
        for job_id in running:
            self._controls[job_id].request_pause()
        await asyncio.gather(*(self._tasks[job_id] for job_id in running), return_exceptions=True)

    # ==================== Internals ====================

    async def _transition(self, job_id: UUID, target: JobStatus, **fields: Any) -> None:
        job = await self.get_status(job_id)
        ensure_transition(job_id, job.status, target)
        await self.store.update(job_id, status=target, **fields)
        logger.info(f"Job {job_id}: {job.status.value} -> {target.value}")

    async def _finish(self, job_id: UUID, target: JobStatus, **fields: Any) -> bool:
        """Transition from inside the run loop without ever raising on a lost race.

        Another process may have moved the job meanwhile (e.g. cancelled it
        after its heartbeat went stale). Then only progress is saved.
        """
        job = await self.get_status(job_id)
        if not can_transition(job.status, target):
            logger.warning(
                f"Job {job_id} is already {job.status.value}; not moving it to {target.value}"
            )
            if "progress" in fields:
                await self.store.update(job_id, progress=fields["progress"])
            return False
        await self.store.update(job_id, status=target, **fields)
        logger.info(f"Job {job_id}: {job.status.value} -> {target.value}")
        return True

    async def _record_batch_failure(
        self,
        job: MigrationJob,
        progress: JobProgress,
        message: str,
        consecutive_errors: int,
    ) -> bool:
        """Persist a failed batch. Returns True once the retry budget is exhausted."""
        logger.error(
            f"Job {job.id}: {message} "
            f"({consecutive_errors}/{job.processing.retry_attempts} consecutive)"
        )
        await self.store.append_errors(job.id, [message])
        await self.store.update(job.id, progress=progress, heartbeat_at=utcnow())
        if consecutive_errors <= job.processing.retry_attempts:
            return False

        if await self._finish(
            job.id, JobStatus.FAILED, progress=progress, completed_at=utcnow()
        ):
            await self.store.append_errors(
                job.id, [f"Job aborted after {consecutive_errors} consecutive batch errors"]
            )
            logger.error(f"Job {job.id} failed: retry budget exhausted")
        return True

    async def _launch(self, job_id: UUID) -> None:
        if self.is_running(job_id):
            raise InvalidStateError(f"Job {job_id} already has an active run loop")
        control = JobControl()
        self._controls[job_id] = control
        self._tasks[job_id] = asyncio.create_task(
            self._run(job_id, control), name=f"migration-{job_id}"
        )

    async def _build_enricher(self, job: MigrationJob) -> RecordEnricher:
        expander = AcronymExpander()
        if job.processing.text_cleaning.enabled and self.acronyms is not None:
            try:
                expander = await self.acronyms.load_expander()
            except SQLAlchemyError as e:
                logger.warning(f"Acronym dictionary unavailable, embedding original text: {e}")
        return RecordEnricher(expander, self.catalog, self.settings.expansion_lock_column)

    async def _process_batch(
        self,
        job: MigrationJob,
        rows: list[dict[str, Any]],
        enricher: RecordEnricher,
    ) -> tuple[int, list[str]]:
        """Normalize, embed and load one batch. Returns (inserted, record errors)."""
        records = await enricher.prepare(
            rows, job.source, job.destination.table, job.processing.text_cleaning
        )
        embed_errors = await self.embeddings.embed_records(
            records,
            sub_batch_size=job.processing.embedding_batch_size,
            max_concurrency=job.processing.max_concurrent_embeddings,
        )
        result = await self.loader.load_batch(
            records, job.destination.table, list(job.source.fields), job.source.key_field
        )
        return result.inserted_count, [*embed_errors, *result.errors]

    async def _run(self, job_id: UUID, control: JobControl) -> None:
        job = await self.get_status(job_id)
        progress = job.progress.model_copy()
        checkpoint = progress.last_key if progress.last_key is not None else job.source.start_after
        processed_at_start = progress.processed
        run_started = self._clock()
        consecutive_errors = 0
        delay = job.processing.delay_between_batches_ms / 1000
        key_column = job.source.key_column

        logger.info(f"Run loop for job {job_id} starting after key {checkpoint!r}")
        try:
            first_entry = (
                progress.last_key is None and progress.processed == 0 and job.resumed_from is None
            )
            if job.destination.clean_before and first_entry:
                await self.catalog.truncate(job.destination.table)

            enricher = await self._build_enricher(job)

            while True:
                stored = await self.get_status(job_id)
                if stored.status != JobStatus.RUNNING:
                    logger.warning(
                        f"Job {job_id} is {stored.status.value} in the job store; "
                        f"run loop stopping at key {checkpoint!r}"
                    )
                    return
                if control.cancel_requested or stored.processing.cancel_requested:
                    await self._finish(
                        job_id, JobStatus.CANCELLED, progress=progress, completed_at=utcnow()
                    )
                    return
                if control.pause_requested or stored.processing.pause_requested:
                    processing = stored.processing.model_copy(update={"pause_requested": False})
                    await self._finish(
                        job_id, JobStatus.PAUSED, progress=progress, processing=processing
                    )
                    return

                rows: list[dict[str, Any]] = []
                batch_number = progress.current_batch + 1
                try:
                    rows = await self.source.fetch_batch(
                        job.source, after_key=checkpoint, limit=job.processing.batch_size
                    )
                    if not rows:
                        break
                    inserted, record_errors = await self._process_batch(job, rows, enricher)
                except ConfigurationError:
                    raise
                except BatchIntegrityError as e:
                    # Rolled back below the success threshold; move past it rather
                    # than loop on a systemic failure.
                    consecutive_errors += 1
                    skipped_to = rows[-1][key_column]
                    message = (
                        f"Batch {batch_number} failed: {e}; keys "
                        f"{rows[0][key_column]!r}..{skipped_to!r} skipped"
                    )
                    progress.current_batch = batch_number
                    progress.errors += len(rows)
                    checkpoint = skipped_to
                    progress.last_key = checkpoint
                    if await self._record_batch_failure(job, progress, message, consecutive_errors):
                        return
                    await self._sleep(delay)
                    continue
                except Exception as e:
                    # Nothing was committed; the same page is read again.
                    consecutive_errors += 1
                    message = f"Batch {batch_number} failed: {e}"
                    if await self._record_batch_failure(job, progress, message, consecutive_errors):
                        return
                    await self._sleep(delay)
                    continue

                consecutive_errors = 0
                progress.current_batch = batch_number
                checkpoint = rows[-1][key_column]
                progress.last_key = checkpoint
                progress.processed += inserted
                progress.errors += len(record_errors)
                _update_rates(
                    progress, progress.processed - processed_at_start, self._clock() - run_started
                )
                if record_errors:
                    await self.store.append_errors(job_id, record_errors)
                await self.store.update(job_id, progress=progress, heartbeat_at=utcnow())

                logger.info(
                    f"Job {job_id} batch {progress.current_batch}: {inserted}/{len(rows)} loaded, "
                    f"{progress.processed:,}/{progress.total:,} ({progress.percentage}%), "
                    f"{progress.records_per_second} rec/s, ETA "
                    f"{progress.estimated_remaining_minutes} min"
                )
                await self._sleep(delay)

            if job.destination.create_indexes:
                await self.catalog.create_indexes(job.destination.table, job.source.key_field)

            current = await self.get_status(job_id)
            started_at = current.started_at or job.created_at
            completed_at = utcnow()
            progress.estimated_remaining_minutes = 0.0
            final_stats = FinalStats(
                total_processed=progress.processed,
                total_errors=progress.errors,
                duration_seconds=round((completed_at - started_at).total_seconds(), 2),
            )
            completed = await self._finish(
                job_id,
                JobStatus.COMPLETED,
                progress=progress,
                completed_at=completed_at,
                final_stats=final_stats,
            )
            if completed:
                logger.info(
                    f"Job {job_id} completed: {progress.processed:,} migrated, "
                    f"{progress.errors:,} errors in {final_stats.duration_seconds}s"
                )

        except asyncio.CancelledError:
            # Left 'running' on purpose so it can be recovered later.
            logger.warning(f"Run loop for job {job_id} cancelled at key {checkpoint!r}")
            raise
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            await self.store.append_errors(job_id, [f"Job failed: {e}"])
            await self._finish(job_id, JobStatus.FAILED, progress=progress, completed_at=utcnow())
