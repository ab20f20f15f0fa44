"""MySQL client wrapper for paginated catalog extraction."""

import asyncio
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol, runtime_checkable

import aiomysql  # pyright: ignore[reportMissingTypeStubs]
from aiomysql import Pool  # pyright: ignore[reportMissingTypeStubs]

from catalog_migration.core.exceptions import ConfigurationError, SourceConnectionError
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.models import Key, SourceSpec

logger = get_logger(__name__)

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.]+$")


def validate_identifier(name: str) -> str:
    """Validate a table/column name to prevent SQL injection."""
    # Allow only alphanumeric, underscore, and dot (for db.table notation)
    if not name or not _IDENTIFIER_PATTERN.match(name):
        raise ConfigurationError(
            f"Invalid identifier: {name!r}. "
            "Only alphanumeric characters, underscores, and dots are allowed."
        )
    return name


def quote_identifier(name: str) -> str:
    return ".".join(f"`{part}`" for part in validate_identifier(name).split("."))


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


@runtime_checkable
class SourceReader(Protocol):
    """Ordered, filtered, paginated reads from the source catalog."""

    async def test_connection(self) -> bool: ...

    async def get_table_columns(self, table: str) -> list[str]: ...

    async def count_records(self, spec: SourceSpec, after_key: Key | None = None) -> int: ...

    async def fetch_batch(
        self, spec: SourceSpec, *, after_key: Key | None, limit: int
    ) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...


class MySQLClient:
    """Async MySQL client for reading the source catalog.

    Every read is ordered by the business key so that the last key of a batch
    is a valid resume checkpoint.
    """

    def __init__(self, settings: MigrationSettings):
        self.settings = settings
        self.pool: Pool | None = None
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Create connection pool."""
        async with self._connect_lock:
            if self.pool is not None:
                return
            logger.info(
                f"Connecting to MySQL: {self.settings.mysql_host}:{self.settings.mysql_port}"
            )
            try:
                self.pool = await aiomysql.create_pool(  # pyright: ignore[reportUnknownMemberType]
                    host=self.settings.mysql_host,
                    port=self.settings.mysql_port,
                    user=self.settings.mysql_user,
                    password=self.settings.mysql_password,
                    db=self.settings.mysql_database,
                    minsize=1,
                    maxsize=self.settings.mysql_pool_size,
                    connect_timeout=self.settings.mysql_connect_timeout,
                    autocommit=True,
                )
            except (aiomysql.Error, OSError) as e:
                raise SourceConnectionError(f"Failed to connect to MySQL: {e}") from e
            logger.info("MySQL connection pool created")

    async def close(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.pool.close()  # pyright: ignore[reportUnknownMemberType]
            await self.pool.wait_closed()  # pyright: ignore[reportUnknownMemberType]
            self.pool = None
            logger.info("MySQL connection pool closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiomysql.Connection]:
        """Acquire a connection from the pool, connecting on first use."""
        if not self.pool:
            await self.connect()
        assert self.pool is not None
        async with self.pool.acquire() as conn:  # pyright: ignore[reportUnknownMemberType, reportUnknownVariableType]
            yield conn

    async def _fetch_all(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        """Run a read query with the configured timeout."""

        async def _run() -> list[dict[str, Any]]:
            async with self.acquire() as conn:
                async with conn.cursor(aiomysql.DictCursor) as cursor:  # pyright: ignore[reportUnknownMemberType, reportUnknownVariableType]
                    await cursor.execute(query, params)  # pyright: ignore[reportUnknownMemberType]
                    rows = await cursor.fetchall()  # pyright: ignore[reportUnknownMemberType, reportUnknownVariableType]
                    return list(rows)  # pyright: ignore[reportUnknownArgumentType]

        try:
            return await asyncio.wait_for(_run(), timeout=self.settings.mysql_query_timeout)
        except aiomysql.OperationalError as e:
            raise SourceConnectionError(f"MySQL query failed: {e}") from e

    async def test_connection(self) -> bool:
        """Return True when the source answers a trivial query."""
        try:
            rows = await self._fetch_all("SELECT 1 AS test", [])
        except (SourceConnectionError, TimeoutError) as e:
            logger.error(f"MySQL connection test failed: {e}")
            return False
        return bool(rows) and rows[0].get("test") == 1

    async def get_table_columns(self, table: str) -> list[str]:
        """Column names of a source table, in ordinal order (empty if it does not exist)."""
        validate_identifier(table)
        schema, _, name = table.rpartition(".")
        query = """
            SELECT COLUMN_NAME
            FROM INFORMATION_SCHEMA.COLUMNS
            WHERE TABLE_NAME = %s AND TABLE_SCHEMA = COALESCE(%s, DATABASE())
            ORDER BY ORDINAL_POSITION
        """
        rows = await self._fetch_all(query, [name, schema or None])
        return [row["COLUMN_NAME"] for row in rows]

    def build_where(self, spec: SourceSpec, after_key: Key | None = None) -> tuple[str, list[Any]]:
        """Combine the job filter, key exclusions and checkpoint predicate."""
        key = quote_identifier(spec.key_column)
        clauses: list[str] = []
        params: list[Any] = []

        if spec.filter:
            # Operator-supplied predicate, trusted as configuration.
            # Literal % must survive the driver's parameter formatting.
            clauses.append(f"({spec.filter.replace('%', '%%')})")
        for prefix in spec.exclude_key_prefixes:
            clauses.append(f"{key} NOT LIKE %s")
            params.append(_like_prefix(prefix))

        checkpoint = after_key if after_key is not None else spec.start_after
        if checkpoint is not None:
            clauses.append(f"{key} > %s")
            params.append(checkpoint)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def count_records(self, spec: SourceSpec, after_key: Key | None = None) -> int:
        """Count rows matching the job filter (and checkpoint, if any)."""
        where, params = self.build_where(spec, after_key)
        query = f"SELECT COUNT(*) AS total FROM {quote_identifier(spec.table)} {where}"
        rows = await self._fetch_all(query, params)
        return int(rows[0]["total"]) if rows else 0

    async def fetch_batch(
        self,
        spec: SourceSpec,
        *,
        after_key: Key | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Fetch the next `limit` rows with key > after_key, ordered by key.

        Args:
            spec: Source table, mapping and filter.
            after_key: Exclusive lower bound on the key; falls back to spec.start_after.
            limit: Maximum number of rows.

        Returns:
            Rows keyed by source column name.
        """
        columns = list(dict.fromkeys(spec.fields.values()))
        select = ", ".join(quote_identifier(column) for column in columns)
        where, params = self.build_where(spec, after_key)
        query = f"""
            SELECT {select}
            FROM {quote_identifier(spec.table)}
            {where}
            ORDER BY {quote_identifier(spec.key_column)}
            LIMIT %s
        """
        rows = await self._fetch_all(query, [*params, limit])
        logger.debug(f"Fetched {len(rows)} rows from {spec.table} after key {after_key!r}")
        return rows
