"""Tests for script-aware answer text normalization."""
from __future__ import annotations

import pytest

from answerlink.config import load_config
from answerlink.contracts import Locale
from answerlink.normalization import ScriptClass, TextNormalizer, detect_script

US = Locale(country="US", language="en")
CN = Locale(country="CN", language="zh")
RU = Locale(country="RU", language="ru")
SA = Locale(country="SA", language="ar")


@pytest.fixture(name="normalizer")
def fixture_normalizer() -> TextNormalizer:
    return TextNormalizer(load_config().normalization)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1. Yes", "Yes"),
        ("2) No", "No"),
        ("(3) Maybe", "Maybe"),
        ("4: Sometimes", "Sometimes"),
    ],
)
def test_strip_enumeration_removes_leading_markers(normalizer: TextNormalizer, text: str, expected: str) -> None:
    stripped = normalizer.strip_enumeration(text, US)
    assert stripped.remainder == expected
    assert stripped.stripped


@pytest.mark.parametrize("text", ["1.5 hours", "10:30 am", "1-5 times", "1/2 cup", "2024 model"])
def test_strip_enumeration_keeps_numbers_that_are_values(normalizer: TextNormalizer, text: str) -> None:
    stripped = normalizer.strip_enumeration(text, US)
    assert stripped.remainder == text
    assert not stripped.stripped


def test_strip_enumeration_refuses_to_leave_too_short_remainder(normalizer: TextNormalizer) -> None:
    stripped = normalizer.strip_enumeration("1. A", US)
    assert not stripped.stripped
    assert stripped.remainder == "1. A"


def test_logographic_remainder_may_be_a_single_character(normalizer: TextNormalizer) -> None:
    stripped = normalizer.strip_enumeration("1. 是", CN)
    assert stripped.stripped
    assert stripped.remainder == "是"


def test_fold_removes_case_accents_and_punctuation(normalizer: TextNormalizer) -> None:
    assert normalizer.normalize("Café, s'il vous plaît!", US) == "cafe s il vous plait"
    assert normalizer.normalize("  YES  ", US) == "yes"


def test_fold_transliterates_cyrillic(normalizer: TextNormalizer) -> None:
    assert normalizer.normalize("1. Да", RU) == "da"


def test_preserve_locales_keep_their_script(normalizer: TextNormalizer) -> None:
    assert normalizer.script_class(SA) is ScriptClass.PRESERVE
    assert normalizer.normalize("نعم!", SA) == "نعم"


def test_pair_with_markers_on_both_sides_compares_equal(normalizer: TextNormalizer) -> None:
    pair = normalizer.normalize_pair("1. Yes", "2. Yes", US)
    assert pair.exact
    assert pair.left.marker == "1"
    assert pair.right.marker == "2"


def test_pair_with_marker_on_one_side_compares_equal(normalizer: TextNormalizer) -> None:
    assert normalizer.normalize_pair("Yes", "3) yes", US).exact


def test_pair_of_empty_forms_is_not_exact(normalizer: TextNormalizer) -> None:
    assert not normalizer.normalize_pair("!!!", "???", US).exact


def test_logographic_tokens_split_per_character(normalizer: TextNormalizer) -> None:
    form = normalizer.normalize("每天 喝茶", CN)
    assert normalizer.tokens(form, CN) == ["每", "天", "喝", "茶"]
    assert normalizer.tokens("every day", US) == ["every", "day"]


def test_detect_script_and_complex_locales(normalizer: TextNormalizer) -> None:
    assert detect_script("hello") is ScriptClass.FOLD
    assert detect_script("こんにちは") is ScriptClass.LOGOGRAPHIC
    assert detect_script("שלום") is ScriptClass.PRESERVE
    assert detect_script("123") is ScriptClass.FOLD
    assert normalizer.is_complex_locale(CN)
    assert normalizer.is_complex_locale(SA)
    assert not normalizer.is_complex_locale(US)
