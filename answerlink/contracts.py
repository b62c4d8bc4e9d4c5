"""Immutable data contracts for answerlink clustering and expansion."""
from __future__ import annotations

from enum import Enum, IntEnum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class _FrozenBaseModel(BaseModel):
    """Base model enforcing immutability after creation."""

    model_config = ConfigDict(frozen=True)


class SelectionMode(str, Enum):
    """How many options a respondent may pick for a question."""

    SINGLE = "single"
    MULTI = "multi"


class QuestionCategory(str, Enum):
    """Provenance class of a question."""

    ORDINARY = "ordinary"
    STANDARD_DEMOGRAPHIC = "standard_demographic"
    PLATFORM_STANDARD = "platform_standard"

    @property
    def is_standard(self) -> bool:
        """Return whether the category anchors clusters (never blacklisted)."""

        return self is not QuestionCategory.ORDINARY


class SkipSentinel(IntEnum):
    """Reserved negative answer codes recorded when a user did not answer."""

    DOES_NOT_APPLY = -1
    DECLINED = -2
    TRANSLATION_ERROR = -3
    DONT_KNOW = -4

    @property
    def propagates(self) -> bool:
        """Only "does not apply" is a meta-signal that spreads across clusters."""

        return self is SkipSentinel.DOES_NOT_APPLY


class OrphanReason(str, Enum):
    """Why an answer could not be placed into a cluster."""

    NO_CANDIDATES = "no-candidates"
    LLM_REJECTION = "llm-rejection"


class Locale(_FrozenBaseModel):
    """Country and language pair partitioning every clustering artifact."""

    country: str = Field(..., min_length=2, max_length=3)
    language: str = Field(..., min_length=2, max_length=8)

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("language")
    @classmethod
    def _lower_language(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def key(self) -> str:
        """Return the compact ``COUNTRY_language`` identifier used in storage keys."""

        return f"{self.country}_{self.language}"

    @classmethod
    def parse(cls, key: str) -> "Locale":
        """Parse a ``COUNTRY_language`` key back into a locale.

        Raises:
            ValueError: If the key does not contain exactly one separator.
        """

        parts = key.split("_")
        if len(parts) != 2:
            raise ValueError(f"Invalid locale key: {key!r}")
        return cls(country=parts[0], language=parts[1])


class Question(_FrozenBaseModel):
    """Survey question as exported by a provider for one locale."""

    question_id: str = Field(..., min_length=1)
    locale: Locale
    text: str = Field(..., min_length=1)
    selection_mode: SelectionMode = SelectionMode.SINGLE
    category: QuestionCategory = QuestionCategory.ORDINARY


class Answer(_FrozenBaseModel):
    """Answer option owned by a question; inherits the question's locale."""

    answer_id: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    skip: Optional[SkipSentinel] = None


class SurveyExport(_FrozenBaseModel):
    """Locale-partitioned export consumed by one clustering run."""

    locale: Locale
    questions: List[Question] = Field(default_factory=list)
    answers: List[Answer] = Field(default_factory=list)


class ClusterMember(_FrozenBaseModel):
    """Answer membership inside a cluster plus its question's coverage metadata."""

    answer_id: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)
    selection_mode: SelectionMode
    full_coverage: bool = False


class Cluster(_FrozenBaseModel):
    """Locale-scoped set of equivalent answers."""

    cluster_id: str = Field(..., min_length=1)
    locale: Locale
    representative_answer_id: str = Field(..., min_length=1)
    members: List[ClusterMember] = Field(..., min_length=2)
    group_id: Optional[str] = None

    @model_validator(mode="after")
    def _validate_invariants(self) -> "Cluster":
        """Reject clusters mixing answers of one question or spanning one question."""

        question_ids = [member.question_id for member in self.members]
        if len(set(question_ids)) != len(question_ids):
            raise ValueError("cluster contains two answers owned by the same question")
        if len(set(question_ids)) < 2:
            raise ValueError("cluster must span at least two questions")
        if self.representative_answer_id not in {member.answer_id for member in self.members}:
            raise ValueError("representative answer must be a cluster member")
        return self

    @property
    def answer_ids(self) -> FrozenSet[str]:
        """Return the member answer identifiers."""

        return frozenset(member.answer_id for member in self.members)

    @property
    def question_ids(self) -> FrozenSet[str]:
        """Return the identifiers of questions owning a member answer."""

        return frozenset(member.question_id for member in self.members)


class ExclusionEntry(_FrozenBaseModel):
    """Pin forbidding a question from re-attaching to a cluster or question group."""

    locale: Locale
    question_id: str = Field(..., min_length=1)
    cluster_id: str = Field(..., min_length=1)
    reason: str = Field("audit", min_length=1)


class OrphanRecord(_FrozenBaseModel):
    """Answer that could not be placed after all retries."""

    locale: Locale
    question_id: str = Field(..., min_length=1)
    answer_id: str = Field(..., min_length=1)
    reason: OrphanReason


class OverlapRecord(_FrozenBaseModel):
    """Directed single-hop implication between two clusters of one locale."""

    locale: Locale
    source_cluster_id: str = Field(..., min_length=1)
    implied_cluster_id: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate_distinct(self) -> "OverlapRecord":
        if self.source_cluster_id == self.implied_cluster_id:
            raise ValueError("an overlap must connect two different clusters")
        return self


class UserAnswer(_FrozenBaseModel):
    """Answer given directly by a user: either an answer id or a skip sentinel."""

    question_id: str = Field(..., min_length=1)
    answer_id: Optional[str] = None
    skip: Optional[SkipSentinel] = None

    @model_validator(mode="after")
    def _validate_choice(self) -> "UserAnswer":
        if (self.answer_id is None) == (self.skip is None):
            raise ValueError("exactly one of answer_id or skip must be provided")
        return self


__all__ = [
    "Answer",
    "Cluster",
    "ClusterMember",
    "ExclusionEntry",
    "Locale",
    "OrphanReason",
    "OrphanRecord",
    "OverlapRecord",
    "Question",
    "QuestionCategory",
    "SelectionMode",
    "SkipSentinel",
    "SurveyExport",
    "UserAnswer",
]
