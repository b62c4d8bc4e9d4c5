"""Script-aware canonicalization of answer and question texts.

The normalized forms produced here are comparison keys only. They feed the
similarity search and the safety guards and are never displayed or stored.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from answerlink.config import NormalizationConfig
from answerlink.contracts import Locale

LOGGER = logging.getLogger(__name__)


class ScriptClass(str, Enum):
    """Normalization strategy selected for a locale or text."""

    FOLD = "fold"
    PRESERVE = "preserve"
    LOGOGRAPHIC = "logographic"


# A leading "1. ", "2)", "(3)" or "4:" marker. The lookahead keeps decimals
# ("1.5"), ranges ("1-5", "1/2") and times ("10:30") intact.
_ENUMERATION_PATTERN = re.compile(
    r"^\s*(?:\(\s*(?P<paren>\d{1,3})\s*\)|(?P<bare>\d{1,3})\s*[.)\]:])(?![\d.,:/\-])\s*"
)
_WHITESPACE_PATTERN = re.compile(r"\s+")

_LOGOGRAPHIC_NAME_PREFIXES = ("CJK", "HIRAGANA", "KATAKANA", "HANGUL", "IDEOGRAPHIC")
_PRESERVE_NAME_PREFIXES = (
    "ARABIC",
    "HEBREW",
    "THAI",
    "LAO",
    "KHMER",
    "MYANMAR",
    "DEVANAGARI",
    "BENGALI",
    "TAMIL",
    "TELUGU",
    "GURMUKHI",
    "GUJARATI",
    "KANNADA",
    "MALAYALAM",
    "SINHALA",
    "GEORGIAN",
    "ARMENIAN",
)

_CYRILLIC_TO_LATIN: Dict[str, str] = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "e",
    "ж": "zh", "з": "z", "и": "i", "й": "i", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "kh", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "shch",
    "ъ": "", "ы": "y", "ь": "", "э": "e", "ю": "yu", "я": "ya",
    "є": "ye", "і": "i", "ї": "yi", "ґ": "g", "ў": "u", "ј": "j",
    "љ": "lj", "њ": "nj", "ћ": "c", "ђ": "dj", "џ": "dz",
}
_GREEK_TO_LATIN: Dict[str, str] = {
    "α": "a", "β": "v", "γ": "g", "δ": "d", "ε": "e", "ζ": "z", "η": "i",
    "θ": "th", "ι": "i", "κ": "k", "λ": "l", "μ": "m", "ν": "n", "ξ": "x",
    "ο": "o", "π": "p", "ρ": "r", "σ": "s", "ς": "s", "τ": "t", "υ": "y",
    "φ": "f", "χ": "ch", "ψ": "ps", "ω": "o",
}
_TRANSLITERATION = str.maketrans({**_CYRILLIC_TO_LATIN, **_GREEK_TO_LATIN})


@dataclass(frozen=True, slots=True)
class StrippedText:
    """Result of removing a leading enumeration marker."""

    original: str
    remainder: str
    marker: Optional[str] = None

    @property
    def stripped(self) -> bool:
        return self.marker is not None


@dataclass(frozen=True, slots=True)
class NormalizedPair:
    """Comparison forms for a candidate pair after symmetric marker handling."""

    left: StrippedText
    right: StrippedText
    left_form: str
    right_form: str

    @property
    def exact(self) -> bool:
        """Return whether both sides collapse to the same non-empty form."""

        return bool(self.left_form) and self.left_form == self.right_form


def _is_strippable(char: str) -> bool:
    category = unicodedata.category(char)
    return category.startswith("P") or category.startswith("S")


def _strip_punctuation(text: str) -> str:
    cleaned = "".join(" " if _is_strippable(char) else char for char in text)
    return _WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def detect_script(text: str) -> ScriptClass:
    """Classify text by the dominant script of its letters."""

    counts = {ScriptClass.FOLD: 0, ScriptClass.PRESERVE: 0, ScriptClass.LOGOGRAPHIC: 0}
    for char in text:
        if not char.isalpha():
            continue
        name = unicodedata.name(char, "")
        if name.startswith(_LOGOGRAPHIC_NAME_PREFIXES):
            counts[ScriptClass.LOGOGRAPHIC] += 1
        elif name.startswith(_PRESERVE_NAME_PREFIXES):
            counts[ScriptClass.PRESERVE] += 1
        else:
            counts[ScriptClass.FOLD] += 1
    best = max(counts.items(), key=lambda item: item[1])
    if best[1] == 0:
        return ScriptClass.FOLD
    return best[0]


class TextNormalizer:
    """Produce comparison forms for answer texts within one locale."""

    def __init__(self, config: NormalizationConfig) -> None:
        self._config = config
        self._logographic = frozenset(config.logographic_languages)
        self._preserve = frozenset(config.preserve_languages)

    def script_class(self, locale: Locale, text: str = "") -> ScriptClass:
        """Return the normalization strategy for a locale, sniffing text if unknown."""

        language = locale.language.split("-")[0]
        if language in self._logographic:
            return ScriptClass.LOGOGRAPHIC
        if language in self._preserve:
            return ScriptClass.PRESERVE
        if text:
            return detect_script(text)
        return ScriptClass.FOLD

    def is_complex_locale(self, locale: Locale) -> bool:
        """Return whether the locale uses a logographic or complex script."""

        return self.script_class(locale) is not ScriptClass.FOLD

    def strip_enumeration(self, text: str, locale: Locale) -> StrippedText:
        """Remove a leading enumeration marker when a usable remainder survives.

        Args:
            text: Raw answer text.
            locale: Locale deciding the minimum remainder length.

        Returns:
            StrippedText: The remainder, or the untouched text when the strip
            would leave too little behind.
        """

        match = _ENUMERATION_PATTERN.match(text)
        if match is None:
            return StrippedText(original=text, remainder=text.strip())
        remainder = text[match.end():].strip()
        minimum = self._config.min_remainder_chars
        if self.script_class(locale, remainder) is ScriptClass.LOGOGRAPHIC:
            minimum = self._config.logographic_min_remainder_chars
        if len(remainder) < minimum:
            return StrippedText(original=text, remainder=text.strip())
        marker = match.group("paren") or match.group("bare")
        return StrippedText(original=text, remainder=remainder, marker=marker)

    def fold(self, text: str, locale: Locale) -> str:
        """Apply the script-specific canonicalization to already stripped text."""

        script = self.script_class(locale, text)
        if script is ScriptClass.LOGOGRAPHIC:
            return _strip_punctuation(unicodedata.normalize("NFKC", text))
        if script is ScriptClass.PRESERVE:
            return _strip_punctuation(unicodedata.normalize("NFC", text))
        decomposed = unicodedata.normalize("NFKD", text)
        without_marks = "".join(char for char in decomposed if not unicodedata.combining(char))
        transliterated = without_marks.casefold().translate(_TRANSLITERATION)
        return _strip_punctuation(transliterated)

    def normalize(self, text: str, locale: Locale) -> str:
        """Return the comparison form of a single text."""

        return self.fold(self.strip_enumeration(text, locale).remainder, locale)

    def normalize_pair(self, left: str, right: str, locale: Locale) -> NormalizedPair:
        """Normalize both sides of a pair under the symmetric marker policy.

        A marker present on only one side is stripped from that side; markers
        on both sides are stripped from both so differing index values such as
        ``"1. Yes"`` and ``"2. Yes"`` compare equal.
        """

        left_stripped = self.strip_enumeration(left, locale)
        right_stripped = self.strip_enumeration(right, locale)
        if left_stripped.stripped and right_stripped.stripped:
            LOGGER.debug(
                "Stripped markers %s/%s from both sides of pair", left_stripped.marker, right_stripped.marker
            )
        return NormalizedPair(
            left=left_stripped,
            right=right_stripped,
            left_form=self.fold(left_stripped.remainder, locale),
            right_form=self.fold(right_stripped.remainder, locale),
        )

    def tokens(self, form: str, locale: Locale) -> List[str]:
        """Split a comparison form into tokens; logographic text splits per character."""

        if self.script_class(locale, form) is ScriptClass.LOGOGRAPHIC:
            return [char for char in form if not char.isspace()]
        return form.split()
