"""Transactional batch writes to the destination catalog."""

from collections.abc import Sequence

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError

from catalog_migration.core.exceptions import (
    BatchIntegrityError,
    RecordError,
    SourceConnectionError,
)
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.models import LoadResult, Record
from catalog_migration.repositories.catalog_repository import CatalogRepository

logger = get_logger(__name__)


def _describe(error: SQLAlchemyError) -> str:
    if isinstance(error, DBAPIError) and error.orig is not None:
        return str(error.orig)
    return str(error)


class BatchLoader:
    """Writes one batch as a single all-or-nothing transaction.

    Each record is upserted inside its own savepoint so a bad row only
    undoes itself. The outer transaction commits when
    ``inserted / attempted >= success_rate_threshold``; otherwise it is
    rolled back and ``BatchIntegrityError`` is raised.
    """

    def __init__(self, repository: CatalogRepository, success_rate_threshold: float = 0.7):
        self.repository = repository
        self.success_rate_threshold = success_rate_threshold

    async def load_batch(
        self,
        records: Sequence[Record],
        table: str,
        fields: Sequence[str],
        key_field: str,
    ) -> LoadResult:
        """Upsert records keyed by ``key_field``.

        Args:
            records: Records with destination-shaped rows and optional embeddings.
            table: Destination table.
            fields: Destination fields to write (the embedding column is implied).
            key_field: Conflict target.

        Returns:
            LoadResult with the inserted count and per-record error messages.
        """
        if not records:
            return LoadResult(inserted_count=0)

        statement = self.repository.upsert_statement(table, fields, key_field)
        errors: list[str] = []
        inserted = 0

        try:
            async with self.repository.engine.connect() as conn:
                transaction = await conn.begin()
                try:
                    for record in records:
                        try:
                            async with conn.begin_nested():
                                await conn.execute(
                                    statement, self.repository.upsert_params(record, fields)
                                )
                            inserted += 1
                        except SQLAlchemyError as e:
                            error = RecordError(record.key, _describe(e))
                            logger.error(f"Failed to upsert {error.message}")
                            errors.append(error.message)

                    success_rate = inserted / len(records)
                    if success_rate < self.success_rate_threshold:
                        await transaction.rollback()
                        logger.error(
                            f"Rolling back batch for {table}: {inserted}/{len(records)} "
                            f"records succeeded ({success_rate:.0%} < "
                            f"{self.success_rate_threshold:.0%})"
                        )
                        raise BatchIntegrityError(
                            inserted, len(records), errors, self.success_rate_threshold
                        )
                    await transaction.commit()
                finally:
                    if transaction.is_active:
                        await transaction.rollback()
        except (OperationalError, InterfaceError, OSError) as e:
            raise SourceConnectionError(f"Destination unreachable: {e}") from e

        logger.info(
            f"Committed {inserted}/{len(records)} records to {table} "
            f"({inserted / len(records):.0%} success)"
        )
        return LoadResult(inserted_count=inserted, errors=errors)
