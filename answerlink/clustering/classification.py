"""Question classification feeding Phase 1 grouping."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Protocol, Tuple, runtime_checkable

from answerlink.config import ClassificationConfig
from answerlink.contracts import Question

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class LocationClassifier(Protocol):
    """Binary classifier tagging questions that ask for a place."""

    def is_location(self, question: Question) -> bool:
        """Return ``True`` when the question is location-seeking."""


class KeywordLocationClassifier:
    """Rule-based location classifier driven by per-language keyword lists."""

    def __init__(self, config: ClassificationConfig) -> None:
        self._config = config
        self._keywords: Dict[str, Tuple[str, ...]] = {
            language.lower(): tuple(keyword.lower() for keyword in keywords if keyword.strip())
            for language, keywords in config.location_keywords.items()
        }

    def is_location(self, question: Question) -> bool:
        language = question.locale.language.split("-")[0]
        keywords = self._keywords.get(language)
        if keywords is None:
            keywords = self._keywords.get(self._config.default_language, ())
        lowered = question.text.lower()
        return any(keyword in lowered for keyword in keywords)


def classify_questions(
    classifier: LocationClassifier, questions: Iterable[Question]
) -> Mapping[str, bool]:
    """Return a question id to location flag mapping."""

    flags: Dict[str, bool] = {}
    for question in questions:
        flags[question.question_id] = bool(classifier.is_location(question))
    located = sum(1 for flag in flags.values() if flag)
    LOGGER.info("Classified %d of %d questions as location-seeking", located, len(flags))
    return flags
