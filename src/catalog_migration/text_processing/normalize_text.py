"""Text normalization utilities for embedding input."""

import html
import re
import unicodedata
from collections import deque

from catalog_migration.core.logging import get_logger

logger = get_logger(__name__)

# Regex patterns compiled once for efficiency
_ZW_PATTERN = re.compile(r"[\u200B-\u200D\uFEFF]")  # Zero-width characters
_WHITESPACE_PATTERN = re.compile(r"\s{2,}")


def _replace_control_chars(value: str) -> str:
    """Turn tabs and line breaks into spaces and drop other control characters."""
    buffer: deque[str] = deque()
    for ch in value:
        if ch in ("\n", "\r", "\t"):
            buffer.append(" ")
        elif ch >= " " and ch != "\x7f":
            buffer.append(ch)
    return "".join(buffer)


def normalize_text(value: str) -> str:
    """Normalize a catalog description before it is expanded and embedded.

    Steps:
        1. Unicode normalization (NFKC) and HTML entity decoding.
        2. Line breaks and tabs become spaces; other control chars are dropped.
        3. Zero-width characters are removed.
        4. Runs of whitespace collapse to one space; the result is trimmed.

    Args:
        value: Raw text.

    Returns:
        Single-line normalized text.
    """
    if value == "":
        return value

    text = unicodedata.normalize("NFKC", value)
    text = html.unescape(text)
    text = _replace_control_chars(text)
    text = _ZW_PATTERN.sub("", text)
    text = _WHITESPACE_PATTERN.sub(" ", text).strip()

    logger.debug("Normalized text length from %d to %d chars", len(value), len(text))
    return text
