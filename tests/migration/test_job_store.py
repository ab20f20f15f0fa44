"""Tests for the in-memory job store."""

from datetime import timedelta
from uuid import uuid4

import pytest

from catalog_migration.core.exceptions import JobNotFoundError
from catalog_migration.migration.job_store import InMemoryJobStore, JobStore
from catalog_migration.migration.models import (
    DestinationSpec,
    JobProgress,
    JobStatus,
    MigrationJob,
    ProcessingSpec,
    SourceSpec,
    utcnow,
)


def make_job(table: str = "products", **fields) -> MigrationJob:
    return MigrationJob(
        source=SourceSpec(table="products", fields={"code": "code", "description": "description"}),
        destination=DestinationSpec(table=table),
        processing=ProcessingSpec(),
        **fields,
    )


def test_in_memory_store_satisfies_protocol():
    assert isinstance(InMemoryJobStore(), JobStore)


@pytest.mark.asyncio
async def test_create_and_get_return_copies(job_store: InMemoryJobStore):
    job = make_job()
    created = await job_store.create(job)
    created.progress.processed = 99

    fetched = await job_store.get(job.id)
    assert fetched is not None
    assert fetched.id == job.id
    assert fetched.progress.processed == 0


@pytest.mark.asyncio
async def test_get_missing_returns_none(job_store: InMemoryJobStore):
    assert await job_store.get(uuid4()) is None


@pytest.mark.asyncio
async def test_partial_update(job_store: InMemoryJobStore):
    job = await job_store.create(make_job())
    await job_store.update(job.id, status=JobStatus.RUNNING, progress=JobProgress(total=10, processed=4))

    updated = await job_store.get(job.id)
    assert updated is not None
    assert updated.status == JobStatus.RUNNING
    assert updated.progress.processed == 4
    assert updated.destination == job.destination


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(job_store: InMemoryJobStore):
    job = await job_store.create(make_job())
    with pytest.raises(ValueError):
        await job_store.update(job.id, id=uuid4())


@pytest.mark.asyncio
async def test_update_missing_job(job_store: InMemoryJobStore):
    with pytest.raises(JobNotFoundError):
        await job_store.update(uuid4(), status=JobStatus.RUNNING)


@pytest.mark.asyncio
async def test_append_errors_keeps_order(job_store: InMemoryJobStore):
    job = await job_store.create(make_job())
    await job_store.append_errors(job.id, ["first"])
    await job_store.append_errors(job.id, ["second", "third"])
    await job_store.append_errors(job.id, [])

    fetched = await job_store.get(job.id)
    assert fetched is not None
    assert fetched.error_log == ["first", "second", "third"]
    assert fetched.last_error == "third"


@pytest.mark.asyncio
async def test_list_newest_first_with_limit(job_store: InMemoryJobStore):
    now = utcnow()
    older = await job_store.create(make_job(created_at=now - timedelta(minutes=5)))
    newer = await job_store.create(make_job(created_at=now))

    jobs = await job_store.list_jobs()
    assert [j.id for j in jobs] == [newer.id, older.id]
    assert len(await job_store.list_jobs(limit=1)) == 1


@pytest.mark.asyncio
async def test_find_active_filters_status_and_table(job_store: InMemoryJobStore):
    pending = await job_store.create(make_job())
    await job_store.create(make_job(status=JobStatus.COMPLETED))
    await job_store.create(make_job(table="other"))

    active = await job_store.find_active("products")
    assert [j.id for j in active] == [pending.id]
    assert len(await job_store.find_active()) == 2


@pytest.mark.asyncio
async def test_delete(job_store: InMemoryJobStore):
    job = await job_store.create(make_job())
    await job_store.delete(job.id)
    assert await job_store.get(job.id) is None
    with pytest.raises(JobNotFoundError):
        await job_store.delete(job.id)
