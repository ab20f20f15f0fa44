"""Repository for the destination-side acronym dictionary."""

from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from catalog_migration.core.logging import get_logger
from catalog_migration.repositories.catalog_repository import CatalogRepository
from catalog_migration.text_processing.acronyms import AcronymEntry, AcronymExpander

logger = get_logger(__name__)


def _parse_keywords(value: Any) -> tuple[str, ...]:
    """Keywords are stored either as an array or as a comma-separated string."""
    if not value:
        return ()
    if isinstance(value, str):
        value = value.strip("{}").split(",")
    return tuple(kw.strip().strip('"') for kw in value if kw and kw.strip())


class AcronymRepository:
    """Loads active entries of the acronym dictionary."""

    def __init__(self, engine: AsyncEngine, table: str):
        self._catalog = CatalogRepository(engine)
        self._engine = engine
        self.table = table

    async def load_entries(self) -> list[AcronymEntry]:
        statement = text(
            "SELECT acronym, expansion, keywords "
            f"FROM {self._catalog.quote(self.table)} WHERE active = :active"
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(statement, {"active": True})
            entries = [
                AcronymEntry(
                    acronym=row.acronym,
                    expansion=row.expansion,
                    keywords=_parse_keywords(row.keywords),
                )
                for row in result
                if row.acronym and row.expansion
            ]
        logger.info(f"Loaded {len(entries)} acronyms from {self.table}")
        return entries

    async def load_expander(self) -> AcronymExpander:
        return AcronymExpander(await self.load_entries())
