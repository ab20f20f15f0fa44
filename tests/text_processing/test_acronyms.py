"""Tests for dictionary-driven acronym expansion."""

import logging

import pytest

from catalog_migration.text_processing.acronyms import AcronymEntry, AcronymExpander


def test_expands_whole_tokens_only() -> None:
    expander = AcronymExpander.from_mapping({"GALV": "GALVANIZADO"})
    assert expander.expand("tubo galv 1/2") == "TUBO GALVANIZADO 1/2"
    # Part of a longer word is left alone.
    assert expander.expand("GALVX") == "GALVX"


def test_result_is_upper_case() -> None:
    expander = AcronymExpander()
    assert expander.expand("Tubo pvc") == "TUBO PVC"


def test_longest_acronym_first() -> None:
    expander = AcronymExpander(
        [AcronymEntry("C", "CODO"), AcronymEntry("C/R", "CON ROSCA")]
    )
    assert expander.expand("niple c/r") == "NIPLE CON ROSCA"


def test_keyword_context_required() -> None:
    expander = AcronymExpander([AcronymEntry("S/C", "SIN COSTURA", keywords=("TUBO",))])
    assert expander.expand("tubo s/c 2") == "TUBO SIN COSTURA 2"
    assert expander.expand("cable s/c") == "CABLE S/C"


def test_merged_mapping_overrides_entries() -> None:
    base = AcronymExpander.from_mapping({"PVC": "POLICLORURO DE VINILO", "HG": "HIERRO GALVANIZADO"})
    merged = base.merged({"pvc": "PLASTICO"})

    assert len(merged) == 2
    assert merged.expand("tubo pvc hg") == "TUBO PLASTICO HIERRO GALVANIZADO"
    # The original expander is unchanged.
    assert base.expand("pvc") == "POLICLORURO DE VINILO"


def test_merged_with_empty_mapping_returns_same_expander() -> None:
    base = AcronymExpander.from_mapping({"HG": "HIERRO GALVANIZADO"})
    assert base.merged({}) is base


def test_blank_acronyms_ignored() -> None:
    expander = AcronymExpander([AcronymEntry("  ", "NOTHING"), AcronymEntry("HG", "HIERRO")])
    assert len(expander) == 1


def test_expansion_is_logged_at_debug(caplog: pytest.LogCaptureFixture) -> None:
    expander = AcronymExpander.from_mapping({"GALV": "GALVANIZADO"})

    with caplog.at_level(logging.DEBUG, logger="catalog_migration.text_processing.acronyms"):
        expander.expand("tubo galv")

    assert 'Expanded text: "tubo galv" -> "TUBO GALVANIZADO"' in caplog.messages
