"""Safety guard chain run on every candidate pair before adjudication."""
from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Sequence, Set, Tuple

from answerlink.config import GuardsConfig
from answerlink.contracts import Locale
from answerlink.normalization import NormalizedPair, TextNormalizer

LOGGER = logging.getLogger(__name__)

_NUMBER_PATTERN = re.compile(r"\d+(?:[.,]\d+)*")

_UNIT_PATTERNS = {
    "currency": re.compile(
        r"[$€£¥₹₽₩]|\b(?:usd|eur|gbp|jpy|dollars?|euros?|pounds? sterling|yen|rupees?)\b"
    ),
    "percent": re.compile(r"[%‰]|\b(?:percent|per cent|pct)\b"),
    "length": re.compile(
        r"\b\d*\s*(?:km|kilometers?|kilometres?|miles?|mi|meters?|metres?|cm|mm|feet|ft|inch(?:es)?)\b"
    ),
    "mass": re.compile(r"\b\d*\s*(?:kg|kilograms?|lbs?|grams?|stone)\b"),
    "duration": re.compile(r"\b(?:hours?|hrs?|minutes?|mins?|seconds?|secs?)\b"),
}

_MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9, "october": 10,
    "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
_WEEKDAYS = {
    "monday": 1, "tuesday": 2, "tue": 2, "tues": 2, "wednesday": 3,
    "thursday": 4, "thu": 4, "thurs": 4, "friday": 5, "fri": 5,
    "saturday": 6, "sunday": 7,
}
_ISO_DATE_PATTERN = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_YEAR_PATTERN = re.compile(r"\b(19\d{2}|20\d{2})\b")
_QUARTER_PATTERN = re.compile(r"\bq([1-4])\b")
_WORD_PATTERN = re.compile(r"[a-z]+")


@dataclass(frozen=True, slots=True)
class GuardDecision:
    """Outcome of running the guard chain on one pair."""

    passed: bool
    guard: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True, slots=True)
class _GuardInput:
    left_raw: str
    right_raw: str
    left_tokens: Tuple[str, ...]
    right_tokens: Tuple[str, ...]


GuardFunction = Callable[[_GuardInput, bool, int], Optional[str]]


def _canonical_number(token: str) -> str:
    """Canonicalize a numeric token so "1,000" and "1000" compare equal."""

    if "," in token and "." not in token:
        groups = token.split(",")
        if all(len(group) == 3 for group in groups[1:]):
            return str(int("".join(groups)))
        token = token.replace(",", ".")
    else:
        token = token.replace(",", "")
    try:
        value = float(token)
    except ValueError:
        return token
    if value.is_integer():
        return str(int(value))
    return repr(value)


def extract_numbers(text: str) -> List[str]:
    """Return canonical numeric tokens found in ``text``."""

    return [_canonical_number(match.group(0)) for match in _NUMBER_PATTERN.finditer(text)]


def extract_unit_classes(text: str) -> FrozenSet[str]:
    """Return the unit or symbol classes mentioned in ``text``."""

    lowered = text.lower()
    return frozenset(name for name, pattern in _UNIT_PATTERNS.items() if pattern.search(lowered))


def extract_calendar_tokens(text: str) -> FrozenSet[str]:
    """Return canonical month, weekday, quarter, year and ISO-date tokens."""

    lowered = text.lower()
    tokens: Set[str] = set()
    for match in _ISO_DATE_PATTERN.finditer(lowered):
        tokens.add(f"date:{match.group(1)}-{match.group(2)}-{match.group(3)}")
    without_dates = _ISO_DATE_PATTERN.sub(" ", lowered)
    for match in _YEAR_PATTERN.finditer(without_dates):
        tokens.add(f"year:{match.group(1)}")
    for match in _QUARTER_PATTERN.finditer(without_dates):
        tokens.add(f"quarter:{match.group(1)}")
    for word in _WORD_PATTERN.findall(without_dates):
        if word in _MONTHS:
            tokens.add(f"month:{_MONTHS[word]:02d}")
        elif word in _WEEKDAYS:
            tokens.add(f"weekday:{_WEEKDAYS[word]}")
    return frozenset(tokens)


def numeric_guard(payload: _GuardInput, strict: bool, tolerance: int) -> Optional[str]:
    """Reject when both sides carry numbers and the numbers differ."""

    left = extract_numbers(payload.left_raw)
    right = extract_numbers(payload.right_raw)
    if not left or not right:
        return None
    if strict:
        differs = Counter(left) != Counter(right)
    else:
        differs = set(left) != set(right)
    if differs:
        return f"numeric values differ ({', '.join(left)} vs {', '.join(right)})"
    return None


def subset_guard(payload: _GuardInput, strict: bool, tolerance: int) -> Optional[str]:
    """Reject when one text contains the other beyond the tolerated token difference."""

    left = set(payload.left_tokens)
    right = set(payload.right_tokens)
    if not left or not right or left == right:
        return None
    if left < right:
        extra = len(right - left)
    elif right < left:
        extra = len(left - right)
    else:
        return None
    if extra > tolerance:
        return f"one side contains the other plus {extra} tokens"
    return None


def _conflicting(left: FrozenSet[str], right: FrozenSet[str], strict: bool) -> bool:
    if not left or not right:
        return False
    if strict:
        return left != right
    return not (left & right)


def structure_guard(payload: _GuardInput, strict: bool, tolerance: int) -> Optional[str]:
    """Reject conflicting units or symbols such as currency versus percent."""

    left = extract_unit_classes(payload.left_raw)
    right = extract_unit_classes(payload.right_raw)
    if _conflicting(left, right, strict):
        return f"unit classes differ ({sorted(left)} vs {sorted(right)})"
    return None


def date_guard(payload: _GuardInput, strict: bool, tolerance: int) -> Optional[str]:
    """Reject conflicting calendar references."""

    left = extract_calendar_tokens(payload.left_raw)
    right = extract_calendar_tokens(payload.right_raw)
    if _conflicting(left, right, strict):
        return f"calendar tokens differ ({sorted(left)} vs {sorted(right)})"
    return None


_GUARDS: Sequence[Tuple[str, GuardFunction]] = (
    ("numeric", numeric_guard),
    ("subset", subset_guard),
    ("structure", structure_guard),
    ("date", date_guard),
)


class GuardChain:
    """Run the numeric, subset, structure and date guards in order."""

    def __init__(self, config: GuardsConfig, normalizer: TextNormalizer) -> None:
        self._config = config
        self._normalizer = normalizer
        self._strict = config.mode == "strict"
        self._tolerance = (
            config.subset_token_tolerance if self._strict else config.relaxed_subset_token_tolerance
        )

    @property
    def strict(self) -> bool:
        return self._strict

    def evaluate(self, left: str, right: str, locale: Locale) -> GuardDecision:
        """Normalize and evaluate a raw text pair."""

        return self.evaluate_pair(self._normalizer.normalize_pair(left, right, locale), locale)

    def evaluate_pair(self, pair: NormalizedPair, locale: Locale) -> GuardDecision:
        """Evaluate an already normalized pair, short-circuiting on the first rejection.

        Args:
            pair: Pair produced by :meth:`TextNormalizer.normalize_pair`.
            locale: Locale of both texts.

        Returns:
            GuardDecision: ``passed`` is ``False`` with the rejecting guard name
            when any guard fires.
        """

        payload = _GuardInput(
            left_raw=pair.left.remainder,
            right_raw=pair.right.remainder,
            left_tokens=tuple(self._normalizer.tokens(pair.left_form, locale)),
            right_tokens=tuple(self._normalizer.tokens(pair.right_form, locale)),
        )
        for name, guard in _GUARDS:
            reason = guard(payload, self._strict, self._tolerance)
            if reason is not None:
                LOGGER.debug(
                    "Guard %s rejected %r / %r: %s", name, pair.left.original, pair.right.original, reason
                )
                return GuardDecision(passed=False, guard=name, reason=reason)
        return GuardDecision(passed=True)
