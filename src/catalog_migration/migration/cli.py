"""Operator command line for migration jobs.

Examples:
  # Create a job from the default profile and print its id
  python -m catalog_migration.migration.cli create

  # Create from a JSON MigrationConfig, truncating the destination first
  python -m catalog_migration.migration.cli create --config job.json --clean-before

  # Run a job in the foreground (Ctrl-C pauses, SIGTERM cancels)
  python -m catalog_migration.migration.cli run <job-id>

  # Continue from whatever the destination already holds
  python -m catalog_migration.migration.cli resume-checkpoint --wait
"""

import argparse
import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import UUID

from catalog_migration.config import Settings, get_settings
from catalog_migration.core.exceptions import MigrationError
from catalog_migration.core.logging import get_logger, setup_logging
from catalog_migration.migration.batch_loader import BatchLoader
from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.controller import JobController
from catalog_migration.migration.models import JobStatus, MigrationConfig, MigrationJob
from catalog_migration.migration.mysql_client import MySQLClient
from catalog_migration.migration.resume import ResumePlanner
from catalog_migration.migration.supabase_client import SupabaseJobStore
from catalog_migration.repositories.acronym_repository import AcronymRepository
from catalog_migration.repositories.catalog_repository import (
    CatalogRepository,
    create_destination_engine,
)
from catalog_migration.services.embedding_service import EmbeddingService
from catalog_migration.services.rate_limiter import RateLimitedClient

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Wired collaborators for one CLI invocation."""

    settings: MigrationSettings
    app_settings: Settings
    controller: JobController
    planner: ResumePlanner
    source: MySQLClient
    catalog: CatalogRepository
    limiter: RateLimitedClient

    async def aclose(self) -> None:
        await self.limiter.shutdown()
        await self.source.close()
        await self.catalog.engine.dispose()


async def build_runtime(settings: MigrationSettings, app_settings: Settings) -> Runtime:
    store = await SupabaseJobStore.connect(settings)
    source = MySQLClient(settings)
    engine = create_destination_engine(
        settings.destination_database_url,
        pool_size=settings.destination_pool_size,
        statement_timeout=settings.destination_statement_timeout,
    )
    catalog = CatalogRepository(engine)
    limiter = RateLimitedClient.from_settings(app_settings)
    limiter.start_reporting()

    controller = JobController(
        settings=settings,
        store=store,
        source=source,
        catalog=catalog,
        loader=BatchLoader(catalog, settings.success_rate_threshold),
        embeddings=EmbeddingService(app_settings, limiter),
        acronyms=AcronymRepository(engine, settings.acronym_table),
    )
    planner = ResumePlanner(
        settings=settings,
        controller=controller,
        store=store,
        source=source,
        catalog=catalog,
    )
    return Runtime(settings, app_settings, controller, planner, source, catalog, limiter)


def register_signal_handlers(controller: JobController, job_id: UUID) -> None:
    """SIGINT requests a pause, SIGTERM a cancel; both take effect between batches."""
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[Any]] = set()

    def _done(task: asyncio.Task[Any]) -> None:
        pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Control request for job {job_id} rejected: {task.exception()}")

    def _request(action: Callable[[UUID], Awaitable[Any]], name: str) -> None:
        logger.warning(f"Received {name}, forwarding to job {job_id}")
        task = loop.create_task(action(job_id))
        pending.add(task)
        task.add_done_callback(_done)

    loop.add_signal_handler(signal.SIGINT, _request, controller.pause, "SIGINT")
    loop.add_signal_handler(signal.SIGTERM, _request, controller.cancel, "SIGTERM")


def _print_job(job: MigrationJob) -> None:
    print(job.model_dump_json(indent=2))
    if job.last_error:
        print(f"Last error: {job.last_error}")
    if job.estimated_completion:
        print(f"Estimated completion: {job.estimated_completion.isoformat()}")


def _load_config(args: argparse.Namespace, settings: MigrationSettings) -> MigrationConfig:
    if args.config:
        config = MigrationConfig.model_validate_json(Path(args.config).read_text())
    else:
        config = settings.default_migration_config()
    if args.clean_before:
        config.destination.clean_before = True
    if args.batch_size:
        config.processing.batch_size = args.batch_size
    return config


async def _run_job(runtime: Runtime, job_id: UUID) -> MigrationJob:
    controller = runtime.controller
    job = await controller.get_status(job_id)
    register_signal_handlers(controller, job_id)
    if job.status == JobStatus.PENDING:
        await controller.start(job_id)
    elif job.status == JobStatus.PAUSED:
        await controller.resume(job_id)
    elif job.status == JobStatus.RUNNING and controller.has_live_loop(job):
        logger.info(f"Job {job_id} is running in another process; use status to follow it")
        return job
    elif job.status == JobStatus.RUNNING:
        await controller.recover(job_id)
    else:
        logger.info(f"Job {job_id} is already {job.status.value}")
        return job
    return await controller.wait(job_id)


async def dispatch(args: argparse.Namespace) -> int:
    settings = MigrationSettings()
    runtime = await build_runtime(settings, get_settings())
    controller = runtime.controller
    try:
        if args.command == "create":
            job = await controller.create(_load_config(args, settings))
            print(job.id)
            if args.start:
                job = await _run_job(runtime, job.id)
                _print_job(job)
        elif args.command == "run":
            job = await _run_job(runtime, args.job_id)
            _print_job(job)
            return 0 if job.status in (JobStatus.COMPLETED, JobStatus.PAUSED) else 1
        elif args.command == "status":
            _print_job(await controller.get_status(args.job_id))
        elif args.command == "list":
            for job in await controller.list_jobs(args.limit):
                print(
                    f"{job.id}  {job.status.value:<9}  {job.destination.table:<20}  "
                    f"{job.progress.processed:>10,}/{job.progress.total:<10,}  "
                    f"{job.created_at.isoformat()}"
                )
        elif args.command == "cancel":
            _print_job(await controller.cancel(args.job_id))
        elif args.command == "delete":
            await controller.delete(args.job_id)
            logger.info(f"Deleted job {args.job_id}")
        elif args.command == "resume-checkpoint":
            result = await runtime.planner.resume(args.job_id)
            print(
                f"job_id={result.job_id} resumed_from={result.resumed_from!r} "
                f"total_pending={result.total_pending}"
            )
            if result.job_id is not None and args.wait:
                register_signal_handlers(controller, result.job_id)
                _print_job(await controller.wait(result.job_id))
        elif args.command == "verify":
            table = args.table or settings.destination_table
            report = await runtime.catalog.verify_integrity(
                table,
                settings.source_key_field,
                runtime.app_settings.vector_dimensions,
                sample_size=args.sample_size,
                exclude_key_prefixes=settings.exclude_key_prefixes,
            )
            print(f"valid={report.valid}")
            for issue in report.issues:
                print(f"  - {issue}")
            return 0 if report.valid else 1
        elif args.command == "test-connection":
            source_ok = await runtime.source.test_connection()
            destination_ok = await runtime.catalog.test_connection()
            print(f"source={'ok' if source_ok else 'FAILED'}")
            print(f"destination={'ok' if destination_ok else 'FAILED'}")
            return 0 if source_ok and destination_ok else 1
        return 0
    finally:
        await runtime.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catalog-migration",
        description="Create, run and inspect catalog migration jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Validate a configuration and create a pending job")
    create.add_argument("--config", help="Path to a JSON MigrationConfig (default profile if omitted)")
    create.add_argument(
        "--clean-before", action="store_true", help="Truncate the destination on first run"
    )
    create.add_argument("--batch-size", type=int, help="Override the batch size")
    create.add_argument("--start", action="store_true", help="Start the job and wait for it")

    for name, text in (
        ("run", "Start a pending job, resume a paused one, and wait"),
        ("status", "Show a job"),
        ("cancel", "Cancel a job"),
        ("delete", "Delete a finished job"),
    ):
        command = commands.add_parser(name, help=text)
        command.add_argument("job_id", type=UUID)

    listing = commands.add_parser("list", help="List recent jobs")
    listing.add_argument("--limit", type=int, default=50)

    resume = commands.add_parser(
        "resume-checkpoint", help="Resume from the destination's highest migrated key"
    )
    resume.add_argument("--job-id", type=UUID, help="Job whose configuration to continue")
    resume.add_argument("--wait", action="store_true", help="Wait for the resumed job")

    verify = commands.add_parser("verify", help="Sampled integrity checks on the destination")
    verify.add_argument("--table", help="Destination table (default from settings)")
    verify.add_argument("--sample-size", type=int, default=100)

    commands.add_parser("test-connection", help="Check source and destination connectivity")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    args = build_parser().parse_args(argv)
    setup_logging()
    try:
        sys.exit(asyncio.run(dispatch(args)))
    except MigrationError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
