"""Phase 1: locale-scoped question grouping with standard-facet anchoring."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from answerlink.config import CandidatesConfig
from answerlink.contracts import Locale, Question
from answerlink.normalization import TextNormalizer

from .embeddings import EmbeddingBackend, normalize_rows

LOGGER = logging.getLogger(__name__)


class QuestionState(str, Enum):
    """Lifecycle of a question through one clustering pass."""

    UNCLASSIFIED = "unclassified"
    CLASSIFIED = "classified"
    ANCHORED = "anchored"
    LINKED = "linked"
    CLUSTERED = "clustered"
    SPLIT = "split"
    FINALIZED = "finalized"


@dataclass(slots=True)
class QuestionGroup:
    """Set of questions whose answers are compared against each other."""

    group_id: str
    locale: Locale
    anchor_question_id: str
    question_ids: List[str]
    flagship_question_id: Optional[str] = None
    string_search: bool = False
    parent_group_id: Optional[str] = None

    @property
    def audit_group_id(self) -> str:
        """Return the pre-split grouping id kept for audit."""

        return self.parent_group_id or self.group_id


@dataclass(slots=True)
class GroupingResult:
    """Phase 1 output: groups plus the state reached by each question."""

    groups: List[QuestionGroup]
    states: Dict[str, QuestionState] = field(default_factory=dict)

    def group_of(self) -> Dict[str, str]:
        """Return a question id to group id mapping."""

        return {qid: group.group_id for group in self.groups for qid in group.question_ids}


def group_id_for(locale: Locale, anchor_question_id: str) -> str:
    return f"qg:{locale.key}:{anchor_question_id}"


class QuestionClusterer:
    """Group questions by text similarity against each group's anchor question.

    Standard questions always open their own group and never join another one.
    Ordinary questions join the most similar group whose anchor clears the
    threshold and that does not exclude them, otherwise they open a new group.
    """

    def __init__(
        self,
        config: CandidatesConfig,
        embedding_backend: EmbeddingBackend,
        normalizer: TextNormalizer,
    ) -> None:
        self._config = config
        self._embedding_backend = embedding_backend
        self._normalizer = normalizer

    def group(
        self,
        locale: Locale,
        questions: Sequence[Question],
        locations: Mapping[str, bool],
        exclusions: AbstractSet[Tuple[str, str]] = frozenset(),
    ) -> GroupingResult:
        """Group questions for one locale.

        Args:
            locale: Locale every question belongs to.
            questions: Questions to group.
            locations: Location flags from the classifier, keyed by question id.
            exclusions: ``(question_id, group_id)`` pins that forbid a link.

        Returns:
            GroupingResult: Groups after location splitting, plus per-question state.
        """

        ordered = sorted(
            questions,
            key=lambda question: (not question.category.is_standard, question.question_id),
        )
        states: Dict[str, QuestionState] = {
            question.question_id: QuestionState.CLASSIFIED for question in ordered
        }
        if not ordered:
            return GroupingResult(groups=[], states=states)
        texts = [self._normalizer.normalize(question.text, locale) for question in ordered]
        vectors = normalize_rows(self._embedding_backend.embed_many(texts))
        groups: List[QuestionGroup] = []
        anchors: List[np.ndarray] = []
        closed: Set[int] = set()
        for position, question in enumerate(ordered):
            vector = vectors[position]
            target: Optional[int] = None
            if not question.category.is_standard and anchors:
                scores = np.stack(anchors) @ vector
                for index in np.argsort(-scores, kind="stable").tolist():
                    if scores[index] < self._config.question_similarity_threshold:
                        break
                    if index in closed:
                        continue
                    if (question.question_id, groups[index].group_id) in exclusions:
                        LOGGER.debug(
                            "Question %s is excluded from %s", question.question_id, groups[index].group_id
                        )
                        continue
                    target = index
                    break
            if target is None:
                own_group_id = group_id_for(locale, question.question_id)
                if (question.question_id, own_group_id) in exclusions:
                    LOGGER.debug(
                        "Question %s is excluded from the group it anchors; isolating it", question.question_id
                    )
                    closed.add(len(groups))
                groups.append(
                    QuestionGroup(
                        group_id=own_group_id,
                        locale=locale,
                        anchor_question_id=question.question_id,
                        question_ids=[question.question_id],
                        flagship_question_id=(
                            question.question_id if question.category.is_standard else None
                        ),
                    )
                )
                anchors.append(vector)
                states[question.question_id] = QuestionState.ANCHORED
            else:
                groups[target].question_ids.append(question.question_id)
                states[question.question_id] = QuestionState.LINKED
        split_groups: List[QuestionGroup] = []
        for group in groups:
            split_groups.extend(self._split_mixed(group, locations, states))
        LOGGER.info(
            "Grouped %d questions into %d groups for %s", len(ordered), len(split_groups), locale.key
        )
        return GroupingResult(groups=split_groups, states=states)

    def _split_mixed(
        self,
        group: QuestionGroup,
        locations: Mapping[str, bool],
        states: Dict[str, QuestionState],
    ) -> List[QuestionGroup]:
        located = [qid for qid in group.question_ids if locations.get(qid, False)]
        semantic = [qid for qid in group.question_ids if not locations.get(qid, False)]
        if not located:
            return [group]
        if not semantic:
            group.string_search = True
            return [group]
        LOGGER.info(
            "Splitting %s into %d location and %d non-location questions",
            group.group_id,
            len(located),
            len(semantic),
        )
        for qid in group.question_ids:
            states[qid] = QuestionState.SPLIT
        parts: List[QuestionGroup] = []
        for suffix, members, string_search in (("loc", located, True), ("sem", semantic, False)):
            flagship = group.flagship_question_id if group.flagship_question_id in members else None
            parts.append(
                QuestionGroup(
                    group_id=f"{group.group_id}:{suffix}",
                    locale=group.locale,
                    anchor_question_id=flagship or members[0],
                    question_ids=list(members),
                    flagship_question_id=flagship,
                    string_search=string_search,
                    parent_group_id=group.group_id,
                )
            )
        return parts
