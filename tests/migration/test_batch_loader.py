"""Tests for transactional batch loading on SQLite."""

import pytest
from sqlalchemy import text

from catalog_migration.core.exceptions import BatchIntegrityError
from catalog_migration.migration.batch_loader import BatchLoader
from catalog_migration.migration.models import Record
from catalog_migration.repositories.catalog_repository import CatalogRepository
from conftest import make_row

FIELDS = ["code", "description", "brand", "category"]


def make_records(count: int, bad: int = 0, description: str = "TUBO PVC") -> list[Record]:
    """``bad`` records violate the NOT NULL description constraint."""
    records = []
    for i in range(count):
        code = f"A{i:03d}"
        row = make_row(code, None if i < bad else description)
        records.append(Record(key=code, source_row=row, row=row, embedding=[0.5] * 4))
    return records


async def fetch_rows(catalog: CatalogRepository) -> list[tuple]:
    async with catalog.engine.connect() as conn:
        result = await conn.execute(
            text("SELECT code, description, embedding FROM products ORDER BY code")
        )
        return [tuple(row) for row in result]


@pytest.mark.asyncio
async def test_empty_batch(catalog: CatalogRepository):
    result = await BatchLoader(catalog).load_batch([], "products", FIELDS, "code")
    assert result.inserted_count == 0
    assert result.errors == []


@pytest.mark.asyncio
async def test_eight_of_ten_commits_with_two_errors(catalog: CatalogRepository):
    loader = BatchLoader(catalog, success_rate_threshold=0.7)

    result = await loader.load_batch(make_records(10, bad=2), "products", FIELDS, "code")

    assert result.inserted_count == 8
    assert len(result.errors) == 2
    assert result.errors[0].startswith("Record A000:")
    assert await catalog.count_rows("products") == 8


@pytest.mark.asyncio
async def test_exactly_at_threshold_commits(catalog: CatalogRepository):
    loader = BatchLoader(catalog, success_rate_threshold=0.7)

    result = await loader.load_batch(make_records(10, bad=3), "products", FIELDS, "code")

    assert result.inserted_count == 7
    assert await catalog.count_rows("products") == 7


@pytest.mark.asyncio
async def test_below_threshold_rolls_back_everything(catalog: CatalogRepository):
    loader = BatchLoader(catalog, success_rate_threshold=0.7)
    await loader.load_batch(make_records(10, description="ORIGINAL"), "products", FIELDS, "code")
    before = await fetch_rows(catalog)

    with pytest.raises(BatchIntegrityError) as exc_info:
        await loader.load_batch(
            make_records(10, bad=4, description="CHANGED"), "products", FIELDS, "code"
        )

    assert exc_info.value.inserted == 6
    assert exc_info.value.attempted == 10
    assert len(exc_info.value.errors) == 4
    # Successful upserts of the failed batch left no trace.
    assert await fetch_rows(catalog) == before


@pytest.mark.asyncio
async def test_threshold_is_configurable(catalog: CatalogRepository):
    strict = BatchLoader(catalog, success_rate_threshold=1.0)

    with pytest.raises(BatchIntegrityError):
        await strict.load_batch(make_records(10, bad=1), "products", FIELDS, "code")
    assert await catalog.count_rows("products") == 0


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_keeps_latest_values(catalog: CatalogRepository):
    loader = BatchLoader(catalog)
    first = Record(key="A1", source_row={}, row=make_row("A1", "TUBO PVC"), embedding=[1.0] * 4)
    second = Record(key="A1", source_row={}, row=make_row("A1", "TUBO CPVC"), embedding=[2.0] * 4)

    await loader.load_batch([first], "products", FIELDS, "code")
    await loader.load_batch([second], "products", FIELDS, "code")

    assert await fetch_rows(catalog) == [("A1", "TUBO CPVC", "[2.0,2.0,2.0,2.0]")]


@pytest.mark.asyncio
async def test_missing_embedding_inserted_as_null(catalog: CatalogRepository):
    record = Record(key="A1", source_row={}, row=make_row("A1"), embedding=None)

    result = await BatchLoader(catalog).load_batch([record], "products", FIELDS, "code")

    assert result.inserted_count == 1
    assert await fetch_rows(catalog) == [("A1", "TUBO PVC", None)]


@pytest.mark.asyncio
async def test_upsert_does_not_touch_unmapped_columns(catalog: CatalogRepository):
    async with catalog.engine.begin() as conn:
        await conn.execute(
            text(
                "INSERT INTO products (code, description, expansion_locked) "
                "VALUES ('A1', 'OLD', 1)"
            )
        )
    record = Record(key="A1", source_row={}, row=make_row("A1", "NEW"), embedding=[1.0] * 4)

    await BatchLoader(catalog).load_batch([record], "products", FIELDS, "code")

    async with catalog.engine.connect() as conn:
        locked = (
            await conn.execute(text("SELECT expansion_locked FROM products WHERE code = 'A1'"))
        ).scalar_one()
    assert locked == 1
