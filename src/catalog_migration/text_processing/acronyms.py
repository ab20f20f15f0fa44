"""Dictionary-driven acronym expansion for embedding text."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from catalog_migration.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AcronymEntry:
    """One dictionary entry.

    When ``keywords`` is non-empty the entry only applies to texts containing
    at least one of them (e.g. ``S/C`` means "SIN COSTURA" next to ``TUBO``).
    """

    acronym: str
    expansion: str
    keywords: tuple[str, ...] = ()


def _entry_pattern(acronym: str) -> re.Pattern[str]:
    # Token boundaries only on sides where the acronym itself has word characters.
    left = r"(?<!\w)" if acronym[0].isalnum() or acronym[0] == "_" else ""
    right = r"(?!\w)" if acronym[-1].isalnum() or acronym[-1] == "_" else ""
    return re.compile(f"{left}{re.escape(acronym)}{right}", re.IGNORECASE)


class AcronymExpander:
    """Rewrites acronyms to their full terms, longest acronym first."""

    def __init__(self, entries: Iterable[AcronymEntry] = ()):
        ordered = sorted(
            (entry for entry in entries if entry.acronym.strip()),
            key=lambda entry: len(entry.acronym),
            reverse=True,
        )
        self._entries = [(entry, _entry_pattern(entry.acronym.strip())) for entry in ordered]

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> AcronymExpander:
        return cls(AcronymEntry(acronym, expansion) for acronym, expansion in mapping.items())

    @property
    def entries(self) -> list[AcronymEntry]:
        return [entry for entry, _ in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def merged(self, mapping: Mapping[str, str]) -> AcronymExpander:
        """Return a new expander where ``mapping`` overrides same-named entries."""
        if not mapping:
            return self
        overridden = {acronym.upper() for acronym in mapping}
        kept = [entry for entry in self.entries if entry.acronym.upper() not in overridden]
        extra = [AcronymEntry(acronym, expansion) for acronym, expansion in mapping.items()]
        return AcronymExpander([*kept, *extra])

    def expand(self, text: str) -> str:
        """Expand acronyms in ``text``.

        The result is upper case, matching the dictionary's canonical form.
        """
        if not text:
            return text

        expanded = text.upper()
        for entry, pattern in self._entries:
            if entry.keywords and not any(kw.upper() in expanded for kw in entry.keywords):
                continue
            replacement = entry.expansion.upper()
            expanded = pattern.sub(lambda _m, r=replacement: r, expanded)

        if expanded != text.upper():
            logger.debug(f'Expanded text: "{text}" -> "{expanded}"')
        return expanded
