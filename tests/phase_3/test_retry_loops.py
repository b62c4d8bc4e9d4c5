"""Tests for the bounded audit/orphan loops and their helpers."""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest
from pydantic import ValidationError

from answerlink.clustering import (
    AdjudicationMode,
    AdjudicationRequest,
    AdjudicationService,
    Adjudicator,
    CandidateBatch,
    CandidateMethod,
    CandidatePair,
    ClusterAuditor,
    IterationBudget,
    LoopController,
    QuestionGroup,
    TerminationRule,
    Verdict,
    VerdictOutcome,
    find_orphans,
    pair_request_id,
)
from answerlink.config import AppConfig, AuditConfig, RetryConfig
from answerlink.contracts import (
    Answer,
    Cluster,
    ClusterMember,
    Locale,
    OrphanReason,
    Question,
    QuestionCategory,
    SelectionMode,
)
from answerlink.guards import GuardDecision
from answerlink.normalization import TextNormalizer

US = Locale(country="US", language="en")


def _controller(
    absolute: int = 10,
    *,
    phase_cap: int = 5,
    global_cap: int = 15,
    budget: Optional[IterationBudget] = None,
) -> LoopController:
    config = RetryConfig(phase_retry_cap=phase_cap, global_iteration_cap=global_cap)
    return LoopController("audit", absolute, config, budget or IterationBudget(cap=global_cap))


def test_loop_stops_when_nothing_is_left() -> None:
    decision = _controller().observe(0)
    assert decision.stop
    assert decision.rule is TerminationRule.RESOLVED


def test_loop_stops_below_the_absolute_threshold() -> None:
    decision = _controller(absolute=10).observe(9)
    assert decision.rule is TerminationRule.BELOW_ABSOLUTE


def test_absolute_threshold_is_checked_before_improvement() -> None:
    controller = _controller(absolute=12)
    assert not controller.observe(100).stop
    assert controller.observe(11).rule is TerminationRule.BELOW_ABSOLUTE


def test_loop_stops_when_improvement_stalls() -> None:
    controller = _controller()
    assert not controller.observe(100).stop
    assert not controller.observe(80).stop
    decision = controller.observe(75)
    assert decision.rule is TerminationRule.STALLED
    assert [item.count for item in controller.history] == [100, 80, 75]


def test_loop_stops_at_the_phase_cap() -> None:
    controller = _controller(phase_cap=2)
    assert not controller.observe(100).stop
    assert not controller.observe(60).stop
    decision = controller.observe(30)
    assert decision.rule is TerminationRule.PHASE_CAP
    assert controller.retries == 2


def test_global_budget_is_shared_between_loops() -> None:
    budget = IterationBudget(cap=2)
    audit = _controller(global_cap=2, phase_cap=2, budget=budget)
    assert not audit.observe(100).stop
    assert not audit.observe(50).stop
    assert budget.exhausted
    orphan = LoopController("orphan", 10, RetryConfig(phase_retry_cap=2, global_iteration_cap=2), budget)
    decision = orphan.observe(100)
    assert decision.rule is TerminationRule.GLOBAL_CAP
    assert decision.to_dict() == {
        "phase": "orphan",
        "iteration": 1,
        "count": 100,
        "stop": True,
        "rule": "global_iteration_cap",
    }


def test_phase_cap_may_not_exceed_global_cap() -> None:
    with pytest.raises(ValidationError):
        RetryConfig(phase_retry_cap=6, global_iteration_cap=5)


def _pair(left: str, left_q: str, right: str, right_q: str) -> CandidatePair:
    return CandidatePair(
        group_id="g1:sem",
        left_answer_id=left,
        left_question_id=left_q,
        left_text=left,
        right_answer_id=right,
        right_question_id=right_q,
        right_text=right,
        score=0.9,
        method=CandidateMethod.EMBEDDING,
    )


def test_find_orphans_classifies_unplaced_questions() -> None:
    question_ids = ["std", "q_placed", "q_rejected", "q_empty", "q_pending", "q_guarded", "std2"]
    questions = {
        qid: Question(
            question_id=qid,
            locale=US,
            text=qid,
            category=QuestionCategory.STANDARD_DEMOGRAPHIC if qid.startswith("std") else QuestionCategory.ORDINARY,
        )
        for qid in question_ids
    }
    group = QuestionGroup(
        group_id="g1:sem",
        locale=US,
        anchor_question_id="std",
        question_ids=question_ids,
        flagship_question_id="std",
        parent_group_id="g1",
    )
    placed = _pair("s1", "std", "p1", "q_placed")
    rejected = _pair("s2", "std", "r1", "q_rejected")
    pending = _pair("s3", "std", "n1", "q_pending")
    guarded = _pair("s4", "std", "x1", "q_guarded")
    batch = CandidateBatch(
        group_id="g1:sem",
        method=CandidateMethod.EMBEDDING,
        pairs=[placed, rejected, pending],
        rejected=[(guarded, GuardDecision(passed=False, guard="numeric", reason="numbers differ"))],
    )
    verdicts = {
        pair_request_id("s1", "p1"): Verdict(outcome=VerdictOutcome.ACCEPT),
        pair_request_id("s2", "r1"): Verdict(outcome=VerdictOutcome.REJECT),
        pair_request_id("s3", "n1"): Verdict(outcome=VerdictOutcome.UNRESOLVED),
    }
    cluster = Cluster(
        cluster_id="c1",
        locale=US,
        representative_answer_id="s1",
        members=[
            ClusterMember(answer_id="s1", question_id="std", selection_mode=SelectionMode.SINGLE),
            ClusterMember(answer_id="p1", question_id="q_placed", selection_mode=SelectionMode.SINGLE),
        ],
    )
    orphans = find_orphans([group], {"g1:sem": batch}, verdicts, [cluster], questions)
    by_question = {orphan.question_id: orphan for orphan in orphans}
    assert set(by_question) == {"q_rejected", "q_empty", "q_guarded"}
    assert by_question["q_rejected"].reason is OrphanReason.LLM_REJECTION
    assert by_question["q_guarded"].reason is OrphanReason.LLM_REJECTION
    assert by_question["q_empty"].reason is OrphanReason.NO_CANDIDATES
    assert all(orphan.group_id == "g1" for orphan in orphans)


def test_single_question_groups_have_no_orphans() -> None:
    questions = {"q1": Question(question_id="q1", locale=US, text="Alone")}
    group = QuestionGroup(group_id="g", locale=US, anchor_question_id="q1", question_ids=["q1"])
    assert find_orphans([group], {}, {}, [], questions) == []


def test_pair_request_ids_are_order_independent() -> None:
    assert pair_request_id("b", "a") == pair_request_id("a", "b") == "a|b"


class _RejectingAdjudicator(Adjudicator):
    """Reject members mentioning ``tea`` and leave ``unsure`` answers unresolved."""

    def __init__(self) -> None:
        self.requests: List[str] = []

    def judge(
        self,
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> Dict[str, Verdict]:
        verdicts: Dict[str, Verdict] = {}
        for request in requests:
            self.requests.append(request.request_id)
            if "unsure" in request.right.lower():
                continue
            outcome = VerdictOutcome.REJECT if "tea" in request.right.lower() else VerdictOutcome.ACCEPT
            verdicts[request.request_id] = Verdict(outcome=outcome)
        return verdicts


def _cluster(cluster_id: str, rows: Sequence[tuple]) -> Cluster:
    return Cluster(
        cluster_id=cluster_id,
        locale=US,
        representative_answer_id=rows[0][0],
        members=[
            ClusterMember(answer_id=answer_id, question_id=qid, selection_mode=SelectionMode.SINGLE)
            for answer_id, qid, _ in rows
        ],
    )


def test_auditor_evicts_rejected_member_questions(app_config: AppConfig) -> None:
    adjudicator = _RejectingAdjudicator()
    service = AdjudicationService(
        adjudicator,
        app_config.adjudication,
        app_config.capacity,
        TextNormalizer(app_config.normalization),
    )
    auditor = ClusterAuditor(AuditConfig(size_threshold=2), service)
    large_rows = [
        ("a1", "q1", "Coffee"),
        ("a2", "q2", "Coffee, black"),
        ("a3", "q3", "Green tea"),
        ("a4", "q4", "Unsure"),
    ]
    small_rows = [("b1", "q1", "Yes"), ("b2", "q2", "Yeah")]
    answers = {
        answer_id: Answer(answer_id=answer_id, question_id=qid, text=text)
        for answer_id, qid, text in large_rows + small_rows
    }
    result = auditor.audit(US, [_cluster("big", large_rows), _cluster("small", small_rows)], answers)
    assert result.audited_clusters == 1
    assert result.unresolved == 1
    assert [(entry.question_id, entry.cluster_id, entry.reason) for entry in result.evictions] == [
        ("q3", "big", "audit")
    ]
    assert sorted(adjudicator.requests) == ["big:a2", "big:a3", "big:a4"]


def test_auditor_skips_when_no_cluster_is_large(app_config: AppConfig) -> None:
    adjudicator = _RejectingAdjudicator()
    service = AdjudicationService(
        adjudicator, app_config.adjudication, app_config.capacity, TextNormalizer(app_config.normalization)
    )
    rows = [("b1", "q1", "Yes"), ("b2", "q2", "Tea")]
    answers = {answer_id: Answer(answer_id=answer_id, question_id=qid, text=text) for answer_id, qid, text in rows}
    result = ClusterAuditor(AuditConfig(size_threshold=10), service).audit(US, [_cluster("c", rows)], answers)
    assert result.evictions == []
    assert result.audited_clusters == 0
    assert adjudicator.requests == []
