"""Offline clustering engine: grouping, candidates, adjudication, audit and entailment."""

from answerlink.clustering.adjudication import (
    AdjudicationMode,
    AdjudicationRequest,
    AdjudicationService,
    Adjudicator,
    OpenAIAdjudicator,
    RejectionCategory,
    Verdict,
    VerdictOutcome,
)
from answerlink.clustering.assembler import AssemblyResult, ClusterAssembler, RepresentativeElector, cluster_id_for
from answerlink.clustering.audit import (
    AuditResult,
    ClusterAuditor,
    IterationBudget,
    LoopController,
    LoopDecision,
    OrphanQuestion,
    TerminationRule,
    find_orphans,
    pair_request_id,
)
from answerlink.clustering.cache import DecisionCache
from answerlink.clustering.candidates import (
    CandidateBatch,
    CandidateGenerator,
    CandidateMethod,
    CandidatePair,
    PreparedAnswer,
)
from answerlink.clustering.classification import (
    KeywordLocationClassifier,
    LocationClassifier,
    classify_questions,
)
from answerlink.clustering.embeddings import (
    EmbeddingBackend,
    HashingEmbeddingBackend,
    SentenceTransformerBackend,
)
from answerlink.clustering.engine import ClusteringEngine, ClusteringOutcome, RunMode
from answerlink.clustering.entailment import EntailmentEngine
from answerlink.clustering.questions import (
    GroupingResult,
    QuestionClusterer,
    QuestionGroup,
    QuestionState,
    group_id_for,
)
from answerlink.clustering.report import ClusteringReport

__all__ = [
    "AdjudicationMode",
    "AdjudicationRequest",
    "AdjudicationService",
    "Adjudicator",
    "AssemblyResult",
    "AuditResult",
    "CandidateBatch",
    "CandidateGenerator",
    "CandidateMethod",
    "CandidatePair",
    "ClusterAssembler",
    "ClusterAuditor",
    "ClusteringEngine",
    "ClusteringOutcome",
    "ClusteringReport",
    "DecisionCache",
    "EmbeddingBackend",
    "EntailmentEngine",
    "GroupingResult",
    "HashingEmbeddingBackend",
    "IterationBudget",
    "KeywordLocationClassifier",
    "LocationClassifier",
    "LoopController",
    "LoopDecision",
    "OpenAIAdjudicator",
    "OrphanQuestion",
    "PreparedAnswer",
    "QuestionClusterer",
    "QuestionGroup",
    "QuestionState",
    "RejectionCategory",
    "RepresentativeElector",
    "RunMode",
    "SentenceTransformerBackend",
    "TerminationRule",
    "Verdict",
    "VerdictOutcome",
    "classify_questions",
    "cluster_id_for",
    "find_orphans",
    "group_id_for",
    "pair_request_id",
]
