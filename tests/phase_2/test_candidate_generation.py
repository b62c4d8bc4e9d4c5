"""Tests for Phase 2 candidate pair generation."""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest

from answerlink.clustering import CandidateGenerator, CandidateMethod, QuestionGroup
from answerlink.config import load_config
from answerlink.contracts import Answer, Locale, SkipSentinel
from answerlink.guards import GuardChain
from answerlink.normalization import TextNormalizer

US = Locale(country="US", language="en")
CN = Locale(country="CN", language="zh")


@pytest.fixture(name="generator")
def fixture_generator(keyword_backend) -> CandidateGenerator:
    config = load_config()
    normalizer = TextNormalizer(config.normalization)
    backend = keyword_backend([("coffee",), ("18",)])
    return CandidateGenerator(config.candidates, backend, normalizer, GuardChain(config.guards, normalizer))


def _group(
    question_ids: Sequence[str], *, flagship: Optional[str] = None, string_search: bool = False
) -> QuestionGroup:
    return QuestionGroup(
        group_id="g1",
        locale=US,
        anchor_question_id=flagship or question_ids[0],
        question_ids=list(question_ids),
        flagship_question_id=flagship,
        string_search=string_search,
    )


def _answers(*rows: tuple) -> Dict[str, List[Answer]]:
    grouped: Dict[str, List[Answer]] = {}
    for row in rows:
        answer_id, question_id, text = row[:3]
        skip = row[3] if len(row) > 3 else None
        grouped.setdefault(question_id, []).append(
            Answer(answer_id=answer_id, question_id=question_id, text=text, skip=skip)
        )
    return grouped


def test_identical_forms_pair_exactly_across_questions(generator: CandidateGenerator) -> None:
    answers = _answers(("a1", "q1", "1. Yes"), ("a2", "q2", "Yes"), ("a3", "q1", "yes!"))
    batch = generator.generate(_group(["q1", "q2"]), answers)
    keys = {pair.key: pair for pair in batch.pairs}
    assert set(keys) == {("a1", "a2"), ("a2", "a3")}
    assert all(pair.method is CandidateMethod.EXACT and pair.score == 1.0 for pair in batch.pairs)
    assert all(pair.left_question_id != pair.right_question_id for pair in batch.pairs)


def test_embedding_search_finds_similar_forms(generator: CandidateGenerator) -> None:
    answers = _answers(("a1", "q1", "Coffee"), ("a2", "q2", "Black coffee"), ("a3", "q2", "Tea"))
    batch = generator.generate(_group(["q1", "q2"]), answers)
    assert batch.method is CandidateMethod.EMBEDDING
    assert [pair.key for pair in batch.pairs] == [("a1", "a2")]
    assert batch.pairs[0].method is CandidateMethod.EMBEDDING
    assert batch.distinct_texts == 3


def test_star_topology_compares_only_against_the_flagship(generator: CandidateGenerator) -> None:
    answers = _answers(
        ("a1", "std", "Coffee"),
        ("a2", "q2", "Coffee drinker"),
        ("a3", "q3", "Coffee lover"),
    )
    batch = generator.generate(_group(["std", "q2", "q3"], flagship="std"), answers)
    keys = {pair.key for pair in batch.pairs}
    assert keys == {("a1", "a2"), ("a1", "a3")}
    assert all(pair.left_question_id == "std" for pair in batch.pairs)


def test_guard_rejections_are_recorded(generator: CandidateGenerator) -> None:
    answers = _answers(("a1", "q1", "18-24"), ("a2", "q2", "18-25"))
    batch = generator.generate(_group(["q1", "q2"]), answers)
    assert batch.pairs == []
    assert len(batch.rejected) == 1
    pair, decision = batch.rejected[0]
    assert pair.key == ("a1", "a2")
    assert decision.guard == "numeric"


def test_string_search_does_not_pair_different_places(generator: CandidateGenerator) -> None:
    answers = _answers(
        ("a1", "q1", "Paris, TX"),
        ("a2", "q2", "Paris, TN"),
        ("a3", "q1", "Austin, Texas"),
        ("a4", "q2", "Austin Texas"),
    )
    batch = generator.generate(_group(["q1", "q2"], string_search=True), answers)
    assert batch.method is CandidateMethod.STRING
    assert [pair.key for pair in batch.pairs] == [("a3", "a4")]


def test_string_search_scores_near_duplicates(generator: CandidateGenerator) -> None:
    answers = _answers(("a1", "q1", "Saint Louis, Missouri"), ("a2", "q2", "Missouri Saint Louis"))
    batch = generator.generate(_group(["q1", "q2"], string_search=True), answers)
    assert [pair.key for pair in batch.pairs] == [("a1", "a2")]
    assert batch.pairs[0].method is CandidateMethod.STRING


def test_skip_answers_are_never_candidates(generator: CandidateGenerator) -> None:
    answers = _answers(
        ("a1", "q1", "Does not apply", SkipSentinel.DOES_NOT_APPLY),
        ("a2", "q2", "Does not apply", SkipSentinel.DOES_NOT_APPLY),
    )
    batch = generator.generate(_group(["q1", "q2"]), answers)
    assert batch.pairs == []
    assert batch.distinct_texts == 0


def test_single_question_group_has_no_candidates(generator: CandidateGenerator) -> None:
    answers = _answers(("a1", "q1", "Coffee"), ("a2", "q1", "Coffee please"))
    assert generator.generate(_group(["q1"]), answers).pairs == []


def test_complex_script_locales_use_the_stricter_threshold(generator: CandidateGenerator) -> None:
    assert generator.embedding_threshold(US) == pytest.approx(0.70)
    assert generator.embedding_threshold(CN) == pytest.approx(0.80)
