"""Phase 2: candidate pair generation by embedding or string-distance search."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from rapidfuzz import fuzz, process

from answerlink.config import CandidatesConfig
from answerlink.contracts import Answer, Locale
from answerlink.guards import GuardChain, GuardDecision
from answerlink.normalization import TextNormalizer

from .embeddings import EmbeddingBackend, iter_similar_pairs, normalize_rows, star_similarities
from .questions import QuestionGroup

LOGGER = logging.getLogger(__name__)


class CandidateMethod(str, Enum):
    """How a candidate pair was discovered."""

    EXACT = "exact"
    EMBEDDING = "embedding"
    STRING = "string"


@dataclass(frozen=True, slots=True)
class PreparedAnswer:
    """Answer with its comparison form attached."""

    answer_id: str
    question_id: str
    text: str
    form: str


@dataclass(frozen=True, slots=True)
class CandidatePair:
    """Unvalidated pair of answers from two different questions."""

    group_id: str
    left_answer_id: str
    left_question_id: str
    left_text: str
    right_answer_id: str
    right_question_id: str
    right_text: str
    score: float
    method: CandidateMethod

    @property
    def key(self) -> Tuple[str, str]:
        """Order-independent identity of the pair."""

        return tuple(sorted((self.left_answer_id, self.right_answer_id)))  # type: ignore[return-value]

    def to_dict(self) -> Dict[str, object]:
        return {
            "group_id": self.group_id,
            "left_answer_id": self.left_answer_id,
            "left_question_id": self.left_question_id,
            "left_text": self.left_text,
            "right_answer_id": self.right_answer_id,
            "right_question_id": self.right_question_id,
            "right_text": self.right_text,
            "score": round(self.score, 4),
            "method": self.method.value,
        }


@dataclass(slots=True)
class CandidateBatch:
    """Candidates for one question group after the guard chain."""

    group_id: str
    method: CandidateMethod
    pairs: List[CandidatePair] = field(default_factory=list)
    rejected: List[Tuple[CandidatePair, GuardDecision]] = field(default_factory=list)
    distinct_texts: int = 0


class CandidateGenerator:
    """Emit guarded candidate pairs for a question group."""

    def __init__(
        self,
        config: CandidatesConfig,
        embedding_backend: EmbeddingBackend,
        normalizer: TextNormalizer,
        guards: GuardChain,
    ) -> None:
        self._config = config
        self._embedding_backend = embedding_backend
        self._normalizer = normalizer
        self._guards = guards

    def embedding_threshold(self, locale: Locale) -> float:
        """Return the cosine threshold, raised for logographic or complex scripts."""

        if self._normalizer.is_complex_locale(locale):
            return self._config.complex_script_embedding_threshold
        return self._config.embedding_threshold

    def prepare(self, answers: Iterable[Answer], locale: Locale) -> List[PreparedAnswer]:
        """Attach comparison forms, dropping skip sentinels and empty forms."""

        prepared: List[PreparedAnswer] = []
        for answer in answers:
            if answer.skip is not None:
                continue
            form = self._normalizer.normalize(answer.text, locale)
            if not form:
                continue
            prepared.append(
                PreparedAnswer(
                    answer_id=answer.answer_id,
                    question_id=answer.question_id,
                    text=answer.text,
                    form=form,
                )
            )
        return prepared

    def generate(
        self,
        group: QuestionGroup,
        answers_by_question: Mapping[str, Sequence[Answer]],
    ) -> CandidateBatch:
        """Generate and guard candidate pairs for one group.

        Args:
            group: Question group from Phase 1.
            answers_by_question: Answers of the locale keyed by question id.

        Returns:
            CandidateBatch: Guard-passing pairs and the pairs the guards rejected.
        """

        locale = group.locale
        answers = [
            answer
            for question_id in group.question_ids
            for answer in answers_by_question.get(question_id, ())
        ]
        prepared = self.prepare(answers, locale)
        by_form: Dict[str, List[PreparedAnswer]] = defaultdict(list)
        for item in prepared:
            by_form[item.form].append(item)
        forms = sorted(by_form)
        use_strings = group.string_search or len(forms) > self._config.string_search_max_texts
        method = CandidateMethod.STRING if use_strings else CandidateMethod.EMBEDDING
        batch = CandidateBatch(group_id=group.group_id, method=method, distinct_texts=len(forms))
        if len(group.question_ids) < 2 or not forms:
            return batch

        collected: Dict[Tuple[str, str], CandidatePair] = {}
        for form in forms:
            for left, right in self._cross_question_pairs(by_form[form], by_form[form], group, same=True):
                self._add(collected, group, left, right, 1.0, CandidateMethod.EXACT)
        if use_strings:
            scored = self._string_pairs(forms)
        else:
            scored = self._embedding_pairs(forms, by_form, group, locale)
        star = not use_strings and group.flagship_question_id is not None
        for left_form, right_form, score in scored:
            for left, right in self._cross_question_pairs(
                by_form[left_form], by_form[right_form], group, star=star
            ):
                self._add(collected, group, left, right, score, method)

        for pair in sorted(collected.values(), key=lambda item: (-item.score, item.key)):
            decision = self._guards.evaluate(pair.left_text, pair.right_text, locale)
            if decision.passed:
                batch.pairs.append(pair)
            else:
                batch.rejected.append((pair, decision))
        LOGGER.info(
            "Group %s (%s, %d texts): %d candidates, %d guard rejections",
            group.group_id,
            method.value,
            len(forms),
            len(batch.pairs),
            len(batch.rejected),
        )
        return batch

    def _cross_question_pairs(
        self,
        lefts: Sequence[PreparedAnswer],
        rights: Sequence[PreparedAnswer],
        group: QuestionGroup,
        *,
        same: bool = False,
        star: bool = False,
    ) -> Iterator[Tuple[PreparedAnswer, PreparedAnswer]]:
        flagship = group.flagship_question_id
        for i, left in enumerate(lefts):
            start = i + 1 if same else 0
            for right in rights[start:]:
                if left.question_id == right.question_id:
                    continue
                if star and flagship not in (left.question_id, right.question_id):
                    continue
                if right.question_id == flagship:
                    yield right, left
                else:
                    yield left, right

    @staticmethod
    def _add(
        collected: Dict[Tuple[str, str], CandidatePair],
        group: QuestionGroup,
        left: PreparedAnswer,
        right: PreparedAnswer,
        score: float,
        method: CandidateMethod,
    ) -> None:
        key = tuple(sorted((left.answer_id, right.answer_id)))
        existing = collected.get(key)  # type: ignore[arg-type]
        if existing is not None and existing.score >= score:
            return
        collected[key] = CandidatePair(  # type: ignore[index]
            group_id=group.group_id,
            left_answer_id=left.answer_id,
            left_question_id=left.question_id,
            left_text=left.text,
            right_answer_id=right.answer_id,
            right_question_id=right.question_id,
            right_text=right.text,
            score=score,
            method=method,
        )

    def _string_pairs(self, forms: Sequence[str]) -> List[Tuple[str, str, float]]:
        """Token-sort edit-distance search, chunked by rows."""

        threshold = self._config.string_similarity_threshold
        step = self._config.chunk_size
        results: List[Tuple[str, str, float]] = []
        for start in range(0, len(forms), step):
            block = process.cdist(
                forms[start : start + step],
                forms,
                scorer=fuzz.token_sort_ratio,
                score_cutoff=threshold,
                dtype=np.float32,
                workers=-1,
            )
            rows, cols = np.nonzero(block >= threshold)
            for row, col in zip(rows.tolist(), cols.tolist()):
                i = start + row
                if col <= i:
                    continue
                results.append((forms[i], forms[col], float(block[row, col]) / 100.0))
        return results

    def _embedding_pairs(
        self,
        forms: Sequence[str],
        by_form: Mapping[str, Sequence[PreparedAnswer]],
        group: QuestionGroup,
        locale: Locale,
    ) -> List[Tuple[str, str, float]]:
        """Cosine search; star topology against the flagship when one exists."""

        threshold = self.embedding_threshold(locale)
        flagship = group.flagship_question_id
        if flagship is not None:
            anchor_forms = [form for form in forms if any(a.question_id == flagship for a in by_form[form])]
            other_forms = [form for form in forms if any(a.question_id != flagship for a in by_form[form])]
            if not anchor_forms or not other_forms:
                return []
            anchors = normalize_rows(self._embedding_backend.embed_many(anchor_forms))
            others = normalize_rows(self._embedding_backend.embed_many(other_forms))
            return [
                (anchor_forms[a], other_forms[o], score)
                for a, o, score in star_similarities(anchors, others, threshold)
                if anchor_forms[a] != other_forms[o]
            ]
        vectors = normalize_rows(self._embedding_backend.embed_many(list(forms)))
        chunk: Optional[int] = None
        if len(forms) > self._config.chunk_threshold:
            chunk = self._config.chunk_size
        return [(forms[i], forms[j], score) for i, j, score in iter_similar_pairs(vectors, threshold, chunk_size=chunk)]
