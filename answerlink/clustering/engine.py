"""Clustering engine driving Phases 1 to 4 for one locale."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from answerlink.config import AppConfig
from answerlink.contracts import (
    Answer,
    Cluster,
    ExclusionEntry,
    Locale,
    OrphanReason,
    OrphanRecord,
    OverlapRecord,
    Question,
    SurveyExport,
)
from answerlink.guards import GuardChain
from answerlink.normalization import TextNormalizer

from .adjudication import AdjudicationMode, AdjudicationRequest, AdjudicationService, Verdict
from .assembler import AssemblyResult, ClusterAssembler, RepresentativeElector
from .audit import ClusterAuditor, IterationBudget, LoopController, find_orphans, pair_request_id
from .candidates import CandidateBatch, CandidateGenerator, CandidatePair
from .classification import KeywordLocationClassifier, LocationClassifier, classify_questions
from .embeddings import EmbeddingBackend
from .entailment import EntailmentEngine
from .questions import GroupingResult, QuestionClusterer, QuestionGroup, QuestionState
from .report import ClusteringReport

LOGGER = logging.getLogger(__name__)


class RunMode(str, Enum):
    """Clustering run flavour."""

    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(slots=True)
class _PassState:
    grouping: GroupingResult
    batches: Dict[str, CandidateBatch]
    verdicts: Dict[str, Verdict]
    accepted: List[CandidatePair]
    assembly: AssemblyResult


@dataclass(frozen=True)
class ClusteringOutcome:
    """Output of one clustering run for one locale."""

    locale: Locale
    mode: RunMode
    clusters: List[Cluster]
    exclusions: List[ExclusionEntry]
    orphans: List[OrphanRecord]
    overlaps: List[OverlapRecord]
    report: ClusteringReport
    dry_run: bool = False
    new_exclusions: List[ExclusionEntry] = field(default_factory=list)
    groups: List[QuestionGroup] = field(default_factory=list)

    @property
    def cluster_map(self) -> Dict[str, str]:
        """Return the answer id to cluster id mapping."""

        return {member.answer_id: cluster.cluster_id for cluster in self.clusters for member in cluster.members}


class ClusteringEngine:
    """Run question grouping, candidate search, adjudication, audit and entailment.

    Every run re-reads the full locale export. Retry loops re-run Phases 1 to
    3 with the exclusions gathered so far; cached decisions keep repeated
    passes free of provider calls.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        embedding_backend: EmbeddingBackend,
        adjudication: AdjudicationService,
        classifier: Optional[LocationClassifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._adjudication = adjudication
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._normalizer = TextNormalizer(config.normalization)
        self._classifier = classifier or KeywordLocationClassifier(config.classification)
        guards = GuardChain(config.guards, self._normalizer)
        self._questions = QuestionClusterer(config.candidates, embedding_backend, self._normalizer)
        self._candidates = CandidateGenerator(config.candidates, embedding_backend, self._normalizer, guards)
        elector = RepresentativeElector(embedding_backend, self._normalizer)
        self._assembler = ClusterAssembler(elector)
        self._auditor = ClusterAuditor(config.audit, adjudication)
        self._entailment = EntailmentEngine(config.entailment, adjudication, embedding_backend, self._normalizer)

    @property
    def normalizer(self) -> TextNormalizer:
        return self._normalizer

    def run(
        self,
        export: SurveyExport,
        *,
        mode: RunMode = RunMode.FULL,
        prior_map: Optional[Mapping[str, str]] = None,
        exclusions: Sequence[ExclusionEntry] = (),
        orphans: Sequence[OrphanRecord] = (),
        dry_run: bool = False,
    ) -> ClusteringOutcome:
        """Cluster one locale export.

        Args:
            export: Questions and answers of a single locale.
            mode: ``full`` ignores the prior map; ``incremental`` reuses its ids.
            prior_map: Answer id to cluster id mapping from the last committed run.
            exclusions: Persisted exclusion pins.
            orphans: Orphan records from the previous cycle.
            dry_run: Marks the report; the engine itself never commits.

        Returns:
            ClusteringOutcome: Clusters, updated exclusions and orphans, overlaps
            and the run report.

        Raises:
            CapacityExceededError: If adjudication would exceed the run budget.
        """

        locale = export.locale
        started_at = self._clock()
        questions, answers = _locale_records(export)
        question_map = {question.question_id: question for question in questions}
        answer_map = {answer.answer_id: answer for answer in answers}
        answers_by_question: Dict[str, List[Answer]] = {question.question_id: [] for question in questions}
        for answer in answers:
            answers_by_question[answer.question_id].append(answer)
        seed = dict(prior_map or {}) if mode is RunMode.INCREMENTAL else {}
        exclusion_entries: Dict[Tuple[str, str], ExclusionEntry] = {}
        for entry in exclusions:
            if entry.locale != locale:
                LOGGER.warning(
                    "Dropping exclusion for %s from %s run: locale %s", entry.question_id, locale.key, entry.locale.key
                )
                continue
            exclusion_entries[(entry.question_id, entry.cluster_id)] = entry
        report = ClusteringReport(locale=locale, mode=mode.value, dry_run=dry_run, started_at=started_at)
        self._adjudication.reset_budget()

        LOGGER.info(
            "Clustering %s (%s): %d questions, %d answers, %d exclusions",
            locale.key,
            mode.value,
            len(questions),
            len(answers),
            len(exclusion_entries),
        )
        locations = classify_questions(self._classifier, questions)
        budget = IterationBudget(cap=self._config.retry.global_iteration_cap)
        added: List[ExclusionEntry] = []
        orphan_reasons: Dict[str, OrphanReason] = {}

        def run_pass() -> _PassState:
            return self._pass(
                locale,
                questions,
                question_map,
                answer_map,
                answers_by_question,
                locations,
                set(exclusion_entries),
                seed,
            )

        orphan_loop = LoopController("orphan", self._config.retry.orphan_absolute_threshold, self._config.retry, budget)
        state = run_pass()
        while True:
            found = find_orphans(
                state.grouping.groups, state.batches, state.verdicts, state.assembly.clusters, question_map
            )
            for orphan in found:
                orphan_reasons[orphan.question_id] = orphan.reason
                entry = ExclusionEntry(
                    locale=locale, question_id=orphan.question_id, cluster_id=orphan.group_id, reason="orphan"
                )
                if (entry.question_id, entry.cluster_id) not in exclusion_entries:
                    exclusion_entries[(entry.question_id, entry.cluster_id)] = entry
                    added.append(entry)
            if orphan_loop.observe(len(found)).stop:
                break
            state = run_pass()

        audit_loop = LoopController("audit", self._config.retry.audit_absolute_threshold, self._config.retry, budget)
        while True:
            audit = self._auditor.audit(locale, state.assembly.clusters, answer_map)
            fresh = [
                entry
                for entry in audit.evictions
                if (entry.question_id, entry.cluster_id) not in exclusion_entries
            ]
            for entry in fresh:
                exclusion_entries[(entry.question_id, entry.cluster_id)] = entry
                added.append(entry)
            decision = audit_loop.observe(len(fresh))
            if fresh:
                state = run_pass()
            if decision.stop:
                break

        clusters = state.assembly.clusters
        for cluster in clusters:
            for member in cluster.members:
                state.grouping.states[member.question_id] = QuestionState.FINALIZED
        orphan_records = self._orphan_records(
            locale, state.assembly, orphan_reasons, answer_map, answers_by_question, orphans
        )
        overlaps = self._entailment.detect(locale, clusters, answer_map)

        report.record_pass(
            state.grouping,
            locations,
            {question.question_id: question.category.value for question in questions},
            list(state.batches.values()),
            state.verdicts,
        )
        report.record_outcome(
            clusters,
            list(exclusion_entries.values()),
            orphan_records,
            overlaps,
            orphan_loop.history + audit_loop.history,
        )
        report.adjudications_dispatched = self._adjudication.spent
        report.write(self._config.reports.path)
        LOGGER.info(
            "Clustered %s: %d clusters, %d new exclusions, %d orphans, %d overlaps",
            locale.key,
            len(clusters),
            len(added),
            len(orphan_records),
            len(overlaps),
        )
        return ClusteringOutcome(
            locale=locale,
            mode=mode,
            clusters=clusters,
            exclusions=list(exclusion_entries.values()),
            orphans=orphan_records,
            overlaps=overlaps,
            report=report,
            dry_run=dry_run,
            new_exclusions=added,
            groups=list(state.grouping.groups),
        )

    def _pass(
        self,
        locale: Locale,
        questions: Sequence[Question],
        question_map: Mapping[str, Question],
        answer_map: Mapping[str, Answer],
        answers_by_question: Mapping[str, Sequence[Answer]],
        locations: Mapping[str, bool],
        exclusions: Set[Tuple[str, str]],
        prior_map: Mapping[str, str],
    ) -> _PassState:
        grouping = self._questions.group(locale, questions, locations, exclusions)
        batches: Dict[str, CandidateBatch] = {}
        requests: Dict[str, AdjudicationRequest] = {}
        for group in grouping.groups:
            batch = self._candidates.generate(group, answers_by_question)
            batches[group.group_id] = batch
            for pair in batch.pairs:
                request_id = pair_request_id(pair.left_answer_id, pair.right_answer_id)
                requests[request_id] = AdjudicationRequest(
                    request_id=request_id, left=pair.left_text, right=pair.right_text
                )
        verdicts = self._adjudication.adjudicate(AdjudicationMode.EQUIVALENCE, list(requests.values()), locale)
        accepted = [
            pair
            for batch in batches.values()
            for pair in batch.pairs
            if verdicts[pair_request_id(pair.left_answer_id, pair.right_answer_id)].accepted
        ]
        assembly = self._assembler.assemble(
            locale, grouping.groups, accepted, answer_map, question_map, exclusions, prior_map
        )
        for cluster in assembly.clusters:
            for member in cluster.members:
                if grouping.states.get(member.question_id) is not QuestionState.SPLIT:
                    grouping.states[member.question_id] = QuestionState.CLUSTERED
        return _PassState(grouping=grouping, batches=batches, verdicts=verdicts, accepted=accepted, assembly=assembly)

    @staticmethod
    def _orphan_records(
        locale: Locale,
        assembly: AssemblyResult,
        reasons: Mapping[str, OrphanReason],
        answer_map: Mapping[str, Answer],
        answers_by_question: Mapping[str, Sequence[Answer]],
        previous: Sequence[OrphanRecord],
    ) -> List[OrphanRecord]:
        placed = set(assembly.cluster_map())
        records: Dict[str, OrphanRecord] = {}
        for question_id, reason in sorted(reasons.items()):
            for answer in answers_by_question.get(question_id, ()):
                if answer.skip is None and answer.answer_id not in placed:
                    records[answer.answer_id] = OrphanRecord(
                        locale=locale, question_id=question_id, answer_id=answer.answer_id, reason=reason
                    )
        for answer_id in sorted(assembly.unplaced):
            if answer_id in placed or answer_id in records:
                continue
            records[answer_id] = OrphanRecord(
                locale=locale,
                question_id=answer_map[answer_id].question_id,
                answer_id=answer_id,
                reason=OrphanReason.LLM_REJECTION,
            )
        for record in previous:
            if record.locale != locale or record.answer_id in placed or record.answer_id in records:
                continue
            if record.answer_id in answer_map:
                records[record.answer_id] = record
        return list(records.values())


def _locale_records(export: SurveyExport) -> Tuple[List[Question], List[Answer]]:
    """Return the export's questions and answers, dropping records that cross locales."""

    locale = export.locale
    questions: List[Question] = []
    seen_questions: Set[str] = set()
    for question in export.questions:
        if question.locale != locale:
            LOGGER.warning(
                "Dropping question %s from %s export: it belongs to %s",
                question.question_id,
                locale.key,
                question.locale.key,
            )
            continue
        if question.question_id in seen_questions:
            LOGGER.warning("Dropping duplicate question %s in %s export", question.question_id, locale.key)
            continue
        seen_questions.add(question.question_id)
        questions.append(question)
    answers: List[Answer] = []
    seen_answers: Set[str] = set()
    for answer in export.answers:
        if answer.question_id not in seen_questions:
            LOGGER.warning(
                "Dropping answer %s from %s export: question %s is not in this locale",
                answer.answer_id,
                locale.key,
                answer.question_id,
            )
            continue
        if answer.answer_id in seen_answers:
            LOGGER.warning("Dropping duplicate answer %s in %s export", answer.answer_id, locale.key)
            continue
        seen_answers.add(answer.answer_id)
        answers.append(answer)
    return questions, answers


__all__ = ["ClusteringEngine", "ClusteringOutcome", "RunMode"]
