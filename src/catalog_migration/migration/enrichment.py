"""Source rows to Records: field mapping, text cleanup and acronym expansion."""

from collections.abc import Sequence
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from catalog_migration.core.logging import get_logger
from catalog_migration.migration.models import Key, Record, SourceSpec, TextCleaningSpec
from catalog_migration.repositories.catalog_repository import CatalogRepository
from catalog_migration.text_processing.acronyms import AcronymExpander
from catalog_migration.text_processing.normalize_text import normalize_text

logger = get_logger(__name__)


def build_record(row: dict[str, Any], source: SourceSpec) -> Record:
    """Map a source row onto destination fields, keeping every value as read."""
    mapped = {field: row.get(column) for field, column in source.fields.items()}
    return Record(key=mapped[source.key_field], source_row=row, row=mapped)


class RecordEnricher:
    """Prepares the embedding text of each record.

    The destination row always keeps the original text. Only
    ``Record.embedding_text`` carries the normalized, expanded form.
    """

    def __init__(
        self,
        expander: AcronymExpander,
        catalog: CatalogRepository | None = None,
        lock_column: str | None = None,
    ):
        self.expander = expander
        self.catalog = catalog
        self.lock_column = lock_column

    async def _locked_keys(self, table: str, key_field: str, keys: Sequence[Key]) -> set[Key]:
        if self.catalog is None or not self.lock_column:
            return set()
        return await self.catalog.expansion_locked_keys(table, key_field, self.lock_column, keys)

    async def prepare(
        self,
        rows: Sequence[dict[str, Any]],
        source: SourceSpec,
        destination_table: str,
        cleaning: TextCleaningSpec,
    ) -> list[Record]:
        """Build records for a batch and fill in their embedding text."""
        records = [build_record(row, source) for row in rows]
        if source.text_field is None:
            return records

        expand = cleaning.enabled
        locked: set[Key] = set()
        if expand:
            try:
                locked = await self._locked_keys(
                    destination_table, source.key_field, [r.key for r in records]
                )
            except SQLAlchemyError as e:
                # Without the lock list no record may be expanded.
                logger.warning(f"Expansion lock lookup failed, using original text: {e}")
                expand = False
        expander = self.expander.merged(cleaning.acronym_mapping) if expand else self.expander

        for record in records:
            value = record.row.get(source.text_field)
            if value is None or str(value).strip() == "":
                continue
            text = normalize_text(str(value))
            record.expansion_locked = record.key in locked
            if expand and not record.expansion_locked and len(expander):
                expanded = expander.expand(text)
                record.expansion_applied = expanded != text.upper()
                text = expanded
            record.embedding_text = text or None

        if locked:
            logger.debug(f"Skipped expansion for {len(locked)} locked records")
        return records
