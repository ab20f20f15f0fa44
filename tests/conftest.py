# conftest.py
from collections.abc import Awaitable, Callable
from types import SimpleNamespace
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text

from catalog_migration.config import LimiterProfile, Settings
from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.job_store import InMemoryJobStore
from catalog_migration.migration.models import Key, SourceSpec
from catalog_migration.repositories.catalog_repository import (
    CatalogRepository,
    create_destination_engine,
)

DIMENSIONS = 4

PRODUCTS_DDL = """
CREATE TABLE products (
    code TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    brand TEXT,
    category TEXT,
    embedding TEXT,
    expansion_locked BOOLEAN NOT NULL DEFAULT 0
)
"""

ACRONYMS_DDL = """
CREATE TABLE acronyms (
    acronym TEXT NOT NULL,
    expansion TEXT NOT NULL,
    keywords TEXT,
    active BOOLEAN NOT NULL DEFAULT 1
)
"""


def make_row(code: str, description: str | None = "TUBO PVC", **extra: Any) -> dict[str, Any]:
    return {
        "code": code,
        "description": description,
        "brand": extra.get("brand", "ACME"),
        "category": extra.get("category", "PLUMBING"),
    }


class FakeSource:
    """In-memory SourceReader with keyset pagination over sorted rows."""

    def __init__(self, rows: list[dict[str, Any]], columns: list[str] | None = None):
        self.rows = sorted(rows, key=lambda r: r["code"])
        self.columns = columns or ["code", "description", "brand", "category"]
        self.reachable = True
        self.fetch_calls: list[Key | None] = []
        self.fail_next_fetches = 0
        self.on_fetch: Callable[[int], Awaitable[None]] | None = None

    async def test_connection(self) -> bool:
        return self.reachable

    async def get_table_columns(self, table: str) -> list[str]:
        return list(self.columns) if table == "products" else []

    def _matching(self, spec: SourceSpec, after_key: Key | None) -> list[dict[str, Any]]:
        checkpoint = after_key if after_key is not None else spec.start_after
        key = spec.key_column
        return [
            row
            for row in self.rows
            if not any(str(row[key]).startswith(p) for p in spec.exclude_key_prefixes)
            and (checkpoint is None or row[key] > checkpoint)
        ]

    async def count_records(self, spec: SourceSpec, after_key: Key | None = None) -> int:
        return len(self._matching(spec, after_key))

    async def fetch_batch(
        self, spec: SourceSpec, *, after_key: Key | None, limit: int
    ) -> list[dict[str, Any]]:
        self.fetch_calls.append(after_key)
        if self.on_fetch is not None:
            await self.on_fetch(len(self.fetch_calls))
        if self.fail_next_fetches:
            self.fail_next_fetches -= 1
            raise TimeoutError("source query timed out")
        return [dict(row) for row in self._matching(spec, after_key)[:limit]]

    async def close(self) -> None:
        return None


class FakeEmbeddings:
    """Stands in for ``AsyncOpenAI().embeddings``."""

    def __init__(self, dimensions: int = DIMENSIONS):
        self.dimensions = dimensions
        self.calls: list[list[str]] = []
        self.error: Exception | None = None

    async def create(self, *, model: str, input: list[str], dimensions: int | None = None):
        self.calls.append(list(input))
        if self.error is not None:
            raise self.error
        size = dimensions or self.dimensions
        return SimpleNamespace(
            data=[
                SimpleNamespace(index=i, embedding=[float(len(value))] * size)
                for i, value in enumerate(input)
            ]
        )


class PassThroughExecutor:
    """RemoteExecutor without any quota."""

    def __init__(self) -> None:
        self.categories: list[str] = []

    async def execute(self, category, operation, *, priority=5, operation_id=None):
        self.categories.append(category)
        return await operation()


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="test-openai-key",
        openai_embedding_model="text-embedding-3-large",
        vector_dimensions=DIMENSIONS,
        embedding_limiter=LimiterProfile(
            max_concurrent=2,
            min_time_ms=0,
            reservoir=1000,
            reservoir_refresh_amount=1000,
            backoff_base_ms=1,
            backoff_max_ms=20,
        ),
    )


@pytest.fixture
def migration_settings() -> MigrationSettings:
    return MigrationSettings(
        _env_file=None,
        batch_size=3,
        embedding_batch_size=2,
        delay_between_batches_ms=0,
        retry_attempts=2,
        exclude_key_prefixes=["TP"],
        destination_table="products",
        acronym_table="acronyms",
        expansion_lock_column="expansion_locked",
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite destination through aiosqlite."""
    engine = create_destination_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    async with engine.begin() as conn:
        await conn.execute(text(PRODUCTS_DDL))
        await conn.execute(text(ACRONYMS_DDL))
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def catalog(engine) -> CatalogRepository:
    return CatalogRepository(engine)


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def executor() -> PassThroughExecutor:
    return PassThroughExecutor()
