"""Audit and orphan retry loops with a bounded termination policy."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from answerlink.config import AuditConfig, RetryConfig
from answerlink.contracts import Answer, Cluster, ExclusionEntry, Locale, OrphanReason, Question

from .adjudication import AdjudicationMode, AdjudicationRequest, AdjudicationService, Verdict, VerdictOutcome
from .candidates import CandidateBatch
from .questions import QuestionGroup

LOGGER = logging.getLogger(__name__)


class TerminationRule(str, Enum):
    """Rule that ended a retry loop, in evaluation order."""

    RESOLVED = "resolved"
    BELOW_ABSOLUTE = "below_absolute_threshold"
    STALLED = "insufficient_improvement"
    PHASE_CAP = "phase_retry_cap"
    GLOBAL_CAP = "global_iteration_cap"


@dataclass(slots=True)
class IterationBudget:
    """Global iteration counter shared by every loop of one run."""

    cap: int
    used: int = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.cap


@dataclass(frozen=True, slots=True)
class LoopDecision:
    """Outcome of checking the termination table for one iteration."""

    phase: str
    iteration: int
    count: int
    stop: bool
    rule: Optional[TerminationRule] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase,
            "iteration": self.iteration,
            "count": self.count,
            "stop": self.stop,
            "rule": self.rule.value if self.rule else None,
        }


class LoopController:
    """Bounded retry state machine for one loop phase.

    Carries the iteration number, the previous iteration's count and the
    per-phase retry count. :meth:`observe` applies the termination table in
    order: nothing left, below the absolute threshold, improvement below the
    relative threshold, phase cap, global cap.
    """

    def __init__(self, phase: str, absolute_threshold: int, config: RetryConfig, budget: IterationBudget) -> None:
        self.phase = phase
        self._absolute_threshold = absolute_threshold
        self._relative_threshold = config.relative_improvement_threshold
        self._phase_cap = config.phase_retry_cap
        self._budget = budget
        self.iteration = 0
        self.previous_count: Optional[int] = None
        self.retries = 0
        self.history: List[LoopDecision] = []

    def observe(self, count: int) -> LoopDecision:
        """Record ``count`` for this iteration and decide whether to retry."""

        self.iteration += 1
        rule = self._termination_rule(count)
        decision = LoopDecision(
            phase=self.phase,
            iteration=self.iteration,
            count=count,
            stop=rule is not None,
            rule=rule,
        )
        self.history.append(decision)
        if rule is None:
            self.retries += 1
            self._budget.used += 1
            LOGGER.info("%s loop iteration %d: %d outstanding, retrying", self.phase, self.iteration, count)
        else:
            LOGGER.info(
                "%s loop stopped at iteration %d with %d outstanding (%s)",
                self.phase,
                self.iteration,
                count,
                rule.value,
            )
        self.previous_count = count
        return decision

    def _termination_rule(self, count: int) -> Optional[TerminationRule]:
        if count == 0:
            return TerminationRule.RESOLVED
        if count < self._absolute_threshold:
            return TerminationRule.BELOW_ABSOLUTE
        if self.previous_count:
            improvement = (self.previous_count - count) / self.previous_count
            if improvement < self._relative_threshold:
                return TerminationRule.STALLED
        if self.retries >= self._phase_cap:
            return TerminationRule.PHASE_CAP
        if self._budget.exhausted:
            return TerminationRule.GLOBAL_CAP
        return None


@dataclass(frozen=True, slots=True)
class OrphanQuestion:
    """Question linked into a group without a single accepted pair."""

    question_id: str
    group_id: str
    reason: OrphanReason


@dataclass(slots=True)
class AuditResult:
    """Evictions found by auditing large clusters."""

    evictions: List[ExclusionEntry] = field(default_factory=list)
    audited_clusters: int = 0
    unresolved: int = 0


def find_orphans(
    groups: Sequence[QuestionGroup],
    batches: Mapping[str, CandidateBatch],
    verdicts: Mapping[str, Verdict],
    clusters: Sequence[Cluster],
    questions: Mapping[str, Question],
) -> List[OrphanQuestion]:
    """Return linked questions that ended the pass without any accepted pair.

    Standard questions are never reported. A question whose pairs are still
    unresolved is left for the next pass instead of being blacklisted.
    """

    placed = {member.question_id for cluster in clusters for member in cluster.members}
    orphans: List[OrphanQuestion] = []
    for group in groups:
        if len(group.question_ids) < 2:
            continue
        batch = batches.get(group.group_id)
        seen: Dict[str, List[Verdict]] = defaultdict(list)
        guarded: Set[str] = set()
        if batch is not None:
            for pair in batch.pairs:
                verdict = verdicts.get(pair_request_id(pair.left_answer_id, pair.right_answer_id))
                if verdict is None:
                    continue
                seen[pair.left_question_id].append(verdict)
                seen[pair.right_question_id].append(verdict)
            for pair, _ in batch.rejected:
                guarded.update((pair.left_question_id, pair.right_question_id))
        for question_id in group.question_ids:
            if question_id in placed or questions[question_id].category.is_standard:
                continue
            question_verdicts = seen.get(question_id, [])
            if any(verdict.outcome is VerdictOutcome.UNRESOLVED for verdict in question_verdicts):
                continue
            if any(verdict.accepted for verdict in question_verdicts):
                # accepted but refused at assembly
                continue
            if question_verdicts or question_id in guarded:
                reason = OrphanReason.LLM_REJECTION
            else:
                reason = OrphanReason.NO_CANDIDATES
            orphans.append(OrphanQuestion(question_id=question_id, group_id=group.audit_group_id, reason=reason))
    return orphans


def pair_request_id(left_answer_id: str, right_answer_id: str) -> str:
    """Return the adjudication request id of an equivalence pair."""

    first, second = sorted((left_answer_id, right_answer_id))
    return f"{first}|{second}"


class ClusterAuditor:
    """Re-validate every member of a large cluster against its representative."""

    def __init__(
        self,
        config: AuditConfig,
        service: AdjudicationService,
    ) -> None:
        self._config = config
        self._service = service

    def audit(
        self,
        locale: Locale,
        clusters: Sequence[Cluster],
        answers: Mapping[str, Answer],
    ) -> AuditResult:
        """Adjudicate large clusters member by member.

        Returns:
            AuditResult: One exclusion per rejected member question.
        """

        result = AuditResult()
        requests: List[AdjudicationRequest] = []
        owners: Dict[str, Tuple[Cluster, str]] = {}
        for cluster in clusters:
            if len(cluster.members) <= self._config.size_threshold:
                continue
            result.audited_clusters += 1
            member_answers = [answers[member.answer_id] for member in cluster.members]
            representative_id = cluster.representative_answer_id
            representative = answers[representative_id]
            for answer in member_answers:
                if answer.answer_id == representative_id:
                    continue
                request_id = f"{cluster.cluster_id}:{answer.answer_id}"
                owners[request_id] = (cluster, answer.question_id)
                requests.append(
                    AdjudicationRequest(request_id=request_id, left=representative.text, right=answer.text)
                )
        if not requests:
            return result
        verdicts = self._service.adjudicate(AdjudicationMode.EQUIVALENCE, requests, locale)
        for request in requests:
            verdict = verdicts[request.request_id]
            if verdict.outcome is VerdictOutcome.UNRESOLVED:
                result.unresolved += 1
                continue
            if verdict.outcome is VerdictOutcome.REJECT:
                cluster, question_id = owners[request.request_id]
                LOGGER.info(
                    "Audit evicts question %s from %s (%s)",
                    question_id,
                    cluster.cluster_id,
                    verdict.category.value if verdict.category else "rejected",
                )
                result.evictions.append(
                    ExclusionEntry(
                        locale=locale, question_id=question_id, cluster_id=cluster.cluster_id, reason="audit"
                    )
                )
        LOGGER.info(
            "Audited %d clusters for %s: %d evictions, %d unresolved",
            result.audited_clusters,
            locale.key,
            len(result.evictions),
            result.unresolved,
        )
        return result


__all__ = [
    "AuditResult",
    "ClusterAuditor",
    "IterationBudget",
    "LoopController",
    "LoopDecision",
    "OrphanQuestion",
    "TerminationRule",
    "find_orphans",
    "pair_request_id",
]
