"""Repository for the vector-indexed destination catalog."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from sqlalchemy import TextClause, bindparam, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from catalog_migration.core.constants import EMBEDDING_COLUMN
from catalog_migration.core.exceptions import ConfigurationError
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.models import IntegrityReport, Key, MigrationStats, Record

logger = get_logger(__name__)

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.]+$")


def create_destination_engine(
    url: str,
    *,
    pool_size: int = 5,
    statement_timeout: float | None = None,
) -> AsyncEngine:
    """Create the async engine for the destination store.

    PostgreSQL (asyncpg) is the production target. SQLite (aiosqlite) is
    accepted for dry runs and tests; it gets explicit BEGIN handling so that
    savepoints nest inside the batch transaction.
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(url)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_implicit_begin(dbapi_connection: Any, _record: Any) -> None:
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _emit_begin(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN")

        return engine

    connect_args: dict[str, Any] = {}
    if statement_timeout is not None and "asyncpg" in url:
        connect_args["command_timeout"] = statement_timeout
        connect_args["timeout"] = statement_timeout
    return create_async_engine(
        url,
        pool_size=pool_size,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


def format_vector(embedding: Sequence[float] | None) -> str | None:
    """pgvector text literal, e.g. ``[0.1,0.2]``."""
    if embedding is None:
        return None
    return "[" + ",".join(repr(float(value)) for value in embedding) + "]"


def vector_dimensions(literal: str | None) -> int:
    if not literal:
        return 0
    body = literal.strip().strip("[]").strip()
    return len(body.split(",")) if body else 0


class CatalogRepository:
    """SQL access to the destination table, its indexes and its health."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def is_postgres(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    def quote(self, name: str) -> str:
        """Validate and quote a (possibly schema-qualified) identifier."""
        if not name or not _IDENTIFIER_PATTERN.match(name):
            raise ConfigurationError(
                f"Invalid identifier: {name!r}. "
                "Only alphanumeric characters, underscores, and dots are allowed."
            )
        preparer = self._engine.dialect.identifier_preparer
        return ".".join(preparer.quote(part) for part in name.split("."))

    def _exclusions(self, key: str, prefixes: Sequence[str]) -> tuple[list[str], dict[str, Any]]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        for idx, prefix in enumerate(prefixes):
            clauses.append(f"{key} NOT LIKE :excl{idx} ESCAPE '\\'")
            params[f"excl{idx}"] = _like_prefix(prefix)
        return clauses, params

    # ==================== Upsert ====================

    def upsert_statement(self, table: str, fields: Sequence[str], key_field: str) -> TextClause:
        """Insert, or update every non-key column on key conflict."""
        if key_field not in fields:
            raise ConfigurationError(f"Key field '{key_field}' missing from field mapping")
        columns = [self.quote(f) for f in fields] + [self.quote(EMBEDDING_COLUMN)]
        values = [f":p{idx}" for idx in range(len(fields))]
        values.append("CAST(:embedding AS vector)" if self.is_postgres else ":embedding")
        updates = [
            f"{column} = EXCLUDED.{column}"
            for field, column in zip([*fields, EMBEDDING_COLUMN], columns, strict=True)
            if field != key_field
        ]
        return text(
            f"INSERT INTO {self.quote(table)} ({', '.join(columns)}) "
            f"VALUES ({', '.join(values)}) "
            f"ON CONFLICT ({self.quote(key_field)}) DO UPDATE SET {', '.join(updates)}"
        )

    @staticmethod
    def upsert_params(record: Record, fields: Sequence[str]) -> dict[str, Any]:
        params = {f"p{idx}": record.row.get(field) for idx, field in enumerate(fields)}
        params["embedding"] = format_vector(record.embedding)
        return params

    # ==================== Maintenance ====================

    async def truncate(self, table: str) -> None:
        """Remove every row from the destination table."""
        statement = (
            f"TRUNCATE TABLE {self.quote(table)}"
            if self.is_postgres
            else f"DELETE FROM {self.quote(table)}"
        )
        logger.info(f"Cleaning destination table {table}")
        async with self._engine.begin() as conn:
            await conn.execute(text(statement))
        logger.info(f"Table {table} cleaned")

    async def create_indexes(self, table: str, key_field: str) -> None:
        """Create vector and key indexes. Failures are logged, never raised."""
        safe = table.replace(".", "_")
        statements: list[str] = []
        if self.is_postgres:
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {self.quote(f'idx_{safe}_{EMBEDDING_COLUMN}')} "
                f"ON {self.quote(table)} USING ivfflat ({self.quote(EMBEDDING_COLUMN)} "
                "vector_cosine_ops) WITH (lists = 100)"
            )
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {self.quote(f'idx_{safe}_{key_field}')} "
            f"ON {self.quote(table)} ({self.quote(key_field)})"
        )

        logger.info(f"Creating indexes for table {table}")
        for statement in statements:
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(text(statement))
            except SQLAlchemyError as e:
                logger.error(f"Failed to create index on {table}: {e}")
        logger.info(f"Indexes ensured for {table}")

    # ==================== Lookups ====================

    async def expansion_locked_keys(
        self,
        table: str,
        key_field: str,
        lock_column: str,
        keys: Sequence[Key],
    ) -> set[Key]:
        """Keys whose acronym expansion is permanently disabled."""
        if not keys:
            return set()
        statement = text(
            f"SELECT {self.quote(key_field)} AS record_key FROM {self.quote(table)} "
            f"WHERE {self.quote(key_field)} IN :keys AND {self.quote(lock_column)} = :locked"
        ).bindparams(bindparam("keys", expanding=True))
        async with self._engine.connect() as conn:
            result = await conn.execute(statement, {"keys": list(keys), "locked": True})
            return {row.record_key for row in result}

    async def test_connection(self) -> bool:
        """Return True when the destination answers a trivial query."""
        try:
            async with self._engine.connect() as conn:
                return (await conn.execute(text("SELECT 1"))).scalar_one() == 1
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Destination connection test failed: {e}")
            return False

    async def count_rows(self, table: str) -> int:
        async with self._engine.connect() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {self.quote(table)}"))
            return int(result.scalar_one())

    async def migration_stats(
        self,
        table: str,
        key_field: str,
        exclude_key_prefixes: Sequence[str] = (),
    ) -> MigrationStats:
        """Counts and highest key already in the destination."""
        key = self.quote(key_field)
        clauses, params = self._exclusions(key, exclude_key_prefixes)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        statement = text(
            f"SELECT COUNT(*) AS total_migrated, MAX({key}) AS last_key, "
            f"COUNT({self.quote(EMBEDDING_COLUMN)}) AS with_embeddings "
            f"FROM {self.quote(table)} {where}"
        )
        async with self._engine.connect() as conn:
            row = (await conn.execute(statement, params)).one()
        return MigrationStats(
            total_migrated=int(row.total_migrated or 0),
            last_migrated_key=row.last_key,
            with_embeddings=int(row.with_embeddings or 0),
        )

    async def verify_integrity(
        self,
        table: str,
        key_field: str,
        dimensions: int,
        *,
        sample_size: int = 100,
        exclude_key_prefixes: Sequence[str] = (),
    ) -> IntegrityReport:
        """Sampled checks for missing embeddings, wrong dimensions and duplicate keys."""
        key = self.quote(key_field)
        embedding = self.quote(EMBEDDING_COLUMN)
        clauses, params = self._exclusions(key, exclude_key_prefixes)
        exclusion = "".join(f" AND {clause}" for clause in clauses)
        issues: list[str] = []

        try:
            async with self._engine.connect() as conn:
                missing = (
                    await conn.execute(
                        text(
                            f"SELECT COUNT(*) FROM {self.quote(table)} "
                            f"WHERE {embedding} IS NULL{exclusion}"
                        ),
                        params,
                    )
                ).scalar_one()
                if missing:
                    issues.append(f"{missing} records without embeddings")

                sample = await conn.execute(
                    text(
                        f"SELECT {key} AS record_key, CAST({embedding} AS TEXT) AS embedding "
                        f"FROM {self.quote(table)} WHERE {embedding} IS NOT NULL "
                        f"ORDER BY {key} LIMIT :sample_size"
                    ),
                    {"sample_size": sample_size},
                )
                wrong = [
                    row.record_key
                    for row in sample
                    if vector_dimensions(row.embedding) != dimensions
                ]
                if wrong:
                    issues.append(
                        f"{len(wrong)} sampled records with wrong embedding dimensions "
                        f"(expected {dimensions}), e.g. {wrong[:5]}"
                    )

                duplicates = (
                    await conn.execute(
                        text(
                            f"SELECT {key} FROM {self.quote(table)} "
                            f"GROUP BY {key} HAVING COUNT(*) > 1"
                        )
                    )
                ).all()
                if duplicates:
                    issues.append(f"{len(duplicates)} duplicate keys")
        except SQLAlchemyError as e:
            logger.error(f"Integrity verification failed for {table}: {e}")
            return IntegrityReport(valid=False, issues=[f"Verification error: {e}"])

        return IntegrityReport(valid=not issues, issues=issues)
