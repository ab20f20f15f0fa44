"""Tests for text normalization utilities."""

import pytest

from catalog_migration.text_processing.normalize_text import normalize_text


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("café", "café"),
        ("cafe\u0301", "café"),  # Combining accent
        ("\uff54\uff55\uff42\uff4f", "tubo"),  # Full-width characters
    ],
)
def test_unicode_normalization(raw: str, expected: str) -> None:
    assert normalize_text(raw) == expected


def test_html_entities_decoded() -> None:
    assert normalize_text("TUBO 1&quot; PVC") == 'TUBO 1" PVC'
    assert normalize_text("M&amp;M") == "M&M"


def test_zero_width_characters_removed() -> None:
    assert normalize_text("TUBO\u200bPVC") == "TUBOPVC"
    assert normalize_text("\ufeffCODO") == "CODO"


def test_line_breaks_and_tabs_become_spaces() -> None:
    assert normalize_text("TUBO\nPVC\t3/4") == "TUBO PVC 3/4"
    assert normalize_text("CODO\r\n90") == "CODO 90"


def test_control_characters_dropped() -> None:
    assert normalize_text("VALVULA\x00 BOLA\x7f") == "VALVULA BOLA"


def test_whitespace_collapsed_and_trimmed() -> None:
    assert normalize_text("   TUBO    PVC   ") == "TUBO PVC"


def test_empty_string() -> None:
    assert normalize_text("") == ""
