"""Phase 3 assembly: union of accepted pairs into invariant-respecting clusters."""
from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from answerlink.contracts import Answer, Cluster, ClusterMember, Locale, Question
from answerlink.normalization import TextNormalizer

from .candidates import CandidatePair
from .embeddings import EmbeddingBackend, medoid_index, normalize_rows
from .questions import QuestionGroup

LOGGER = logging.getLogger(__name__)

CLUSTER_NAMESPACE = uuid.UUID("6f1c2d0e-4b7a-5c3e-9a41-2d8f6b0e7c15")


def cluster_id_for(locale: Locale, anchor_answer_id: str) -> str:
    """Return the deterministic cluster id seeded by its anchor answer."""

    return str(uuid.uuid5(CLUSTER_NAMESPACE, f"{locale.key}|{anchor_answer_id}"))


class RepresentativeElector:
    """Elect a cluster representative: a standard-question member, else the medoid."""

    def __init__(self, embedding_backend: EmbeddingBackend, normalizer: TextNormalizer) -> None:
        self._embedding_backend = embedding_backend
        self._normalizer = normalizer

    def elect(
        self,
        locale: Locale,
        answers: Sequence[Answer],
        questions: Mapping[str, Question],
    ) -> str:
        """Return the answer id of the representative of ``answers``."""

        if not answers:
            raise ValueError("cannot elect a representative from no answers")
        ordered = sorted(answers, key=lambda answer: answer.answer_id)
        standard = [
            answer
            for answer in ordered
            if answer.question_id in questions and questions[answer.question_id].category.is_standard
        ]
        if standard:
            return standard[0].answer_id
        if len(ordered) <= 2:
            return ordered[0].answer_id
        forms = [self._normalizer.normalize(answer.text, locale) or answer.text for answer in ordered]
        vectors = normalize_rows(self._embedding_backend.embed_many(forms))
        return ordered[medoid_index(vectors)].answer_id


class _UnionFind:
    """Disjoint sets of answers that refuse merges joining two answers of one question."""

    def __init__(self, question_of: Mapping[str, str]) -> None:
        self._question_of = question_of
        self._parent: Dict[str, str] = {}
        self._questions: Dict[str, Set[str]] = {}

    def find(self, item: str) -> str:
        if item not in self._parent:
            self._parent[item] = item
            self._questions[item] = {self._question_of[item]}
            return item
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, left: str, right: str) -> bool:
        """Merge the two sets; return ``False`` when the merge would break co-occurrence."""

        left_root, right_root = self.find(left), self.find(right)
        if left_root == right_root:
            return True
        if self._questions[left_root] & self._questions[right_root]:
            return False
        if right_root < left_root:
            left_root, right_root = right_root, left_root
        self._parent[right_root] = left_root
        self._questions[left_root] |= self._questions.pop(right_root)
        return True

    def components(self) -> List[List[str]]:
        grouped: Dict[str, List[str]] = defaultdict(list)
        for item in list(self._parent):
            grouped[self.find(item)].append(item)
        return [sorted(members) for _, members in sorted(grouped.items())]


@dataclass(slots=True)
class AssemblyResult:
    """Clusters built from one pass plus the bookkeeping audit artifacts need."""

    clusters: List[Cluster] = field(default_factory=list)
    rejected_merges: int = 0
    rehomed: Dict[str, str] = field(default_factory=dict)
    unplaced: Dict[str, str] = field(default_factory=dict)

    def cluster_map(self) -> Dict[str, str]:
        """Return the answer id to cluster id mapping."""

        return {member.answer_id: cluster.cluster_id for cluster in self.clusters for member in cluster.members}


class ClusterAssembler:
    """Union accepted pairs per question group into locale-scoped clusters.

    Pairs are merged in descending score order; a merge that would place two
    answers of one question in the same set is refused. A cluster's id is
    derived from its raw component before excluded members are dropped, so
    exclusions keep pointing at the same cluster across retry iterations.
    Answers dropped by an exclusion move to the best-scoring other cluster
    they have an accepted pair with, if one admits them.
    """

    def __init__(self, elector: RepresentativeElector) -> None:
        self._elector = elector

    def assemble(
        self,
        locale: Locale,
        groups: Sequence[QuestionGroup],
        accepted: Sequence[CandidatePair],
        answers: Mapping[str, Answer],
        questions: Mapping[str, Question],
        exclusions: AbstractSet[Tuple[str, str]] = frozenset(),
        prior_map: Optional[Mapping[str, str]] = None,
    ) -> AssemblyResult:
        """Build clusters for one locale.

        Args:
            locale: Locale being clustered.
            groups: Phase 1 question groups.
            accepted: Pairs the adjudicator accepted.
            answers: Locale answers keyed by answer id.
            questions: Locale questions keyed by question id.
            exclusions: ``(question_id, cluster_id)`` pins.
            prior_map: Previous answer to cluster mapping used to keep ids stable.

        Returns:
            AssemblyResult: Clusters satisfying both co-occurrence and
            multi-question invariants.
        """

        result = AssemblyResult()
        pairs_by_group: Dict[str, List[CandidatePair]] = defaultdict(list)
        for pair in accepted:
            pairs_by_group[pair.group_id].append(pair)
        used_ids: Set[str] = set()
        for group in groups:
            group_pairs = sorted(pairs_by_group.get(group.group_id, ()), key=lambda item: (-item.score, item.key))
            if not group_pairs:
                continue
            result.clusters.extend(
                self._assemble_group(
                    locale, group, group_pairs, answers, questions, exclusions, prior_map or {}, used_ids, result
                )
            )
        self._apply_coverage(result, answers)
        LOGGER.info(
            "Assembled %d clusters for %s (%d merges refused, %d members moved, %d unplaced)",
            len(result.clusters),
            locale.key,
            result.rejected_merges,
            len(result.rehomed),
            len(result.unplaced),
        )
        return result

    def _assemble_group(
        self,
        locale: Locale,
        group: QuestionGroup,
        pairs: Sequence[CandidatePair],
        answers: Mapping[str, Answer],
        questions: Mapping[str, Question],
        exclusions: AbstractSet[Tuple[str, str]],
        prior_map: Mapping[str, str],
        used_ids: Set[str],
        result: AssemblyResult,
    ) -> List[Cluster]:
        question_of = {answer_id: answer.question_id for answer_id, answer in answers.items()}
        sets = _UnionFind(question_of)
        for pair in pairs:
            if not sets.union(pair.left_answer_id, pair.right_answer_id):
                result.rejected_merges += 1
                LOGGER.debug(
                    "Refused merge %s-%s: both sides already hold answers of one question",
                    pair.left_answer_id,
                    pair.right_answer_id,
                )
        components = [component for component in sets.components() if len(component) >= 2]
        kept: Dict[str, List[str]] = {}
        dropped: List[Tuple[str, str]] = []
        for component in components:
            cluster_id = self._cluster_id(locale, group, component, answers, prior_map, used_ids)
            used_ids.add(cluster_id)
            kept[cluster_id] = []
            for answer_id in component:
                if (question_of[answer_id], cluster_id) in exclusions:
                    dropped.append((answer_id, cluster_id))
                else:
                    kept[cluster_id].append(answer_id)

        for answer_id, origin in dropped:
            home = self._next_best_home(answer_id, origin, pairs, kept, question_of, exclusions)
            if home is None:
                result.unplaced[answer_id] = origin
                continue
            kept[home].append(answer_id)
            result.rehomed[answer_id] = home

        clusters: List[Cluster] = []
        for cluster_id, member_ids in kept.items():
            if len({question_of[answer_id] for answer_id in member_ids}) < 2:
                LOGGER.debug("Dropping %s: fewer than two questions remain", cluster_id)
                continue
            member_answers = [answers[answer_id] for answer_id in sorted(member_ids)]
            representative = self._elector.elect(locale, member_answers, questions)
            clusters.append(
                Cluster(
                    cluster_id=cluster_id,
                    locale=locale,
                    representative_answer_id=representative,
                    group_id=group.group_id,
                    members=[
                        ClusterMember(
                            answer_id=answer.answer_id,
                            question_id=answer.question_id,
                            selection_mode=questions[answer.question_id].selection_mode,
                        )
                        for answer in member_answers
                    ],
                )
            )
        return clusters

    @staticmethod
    def _cluster_id(
        locale: Locale,
        group: QuestionGroup,
        component: Sequence[str],
        answers: Mapping[str, Answer],
        prior_map: Mapping[str, str],
        used_ids: AbstractSet[str],
    ) -> str:
        prior = Counter(prior_map[answer_id] for answer_id in component if answer_id in prior_map)
        for cluster_id, _ in sorted(prior.items(), key=lambda item: (-item[1], item[0])):
            if cluster_id not in used_ids:
                return cluster_id
        flagship = group.flagship_question_id
        anchors = [answer_id for answer_id in component if answers[answer_id].question_id == flagship]
        return cluster_id_for(locale, anchors[0] if anchors else component[0])

    @staticmethod
    def _next_best_home(
        answer_id: str,
        origin: str,
        pairs: Sequence[CandidatePair],
        kept: Mapping[str, List[str]],
        question_of: Mapping[str, str],
        exclusions: AbstractSet[Tuple[str, str]],
    ) -> Optional[str]:
        location = {member: cluster_id for cluster_id, members in kept.items() for member in members}
        question_id = question_of[answer_id]
        for pair in pairs:
            if answer_id not in pair.key:
                continue
            other = pair.right_answer_id if pair.left_answer_id == answer_id else pair.left_answer_id
            target = location.get(other)
            if target is None or target == origin or (question_id, target) in exclusions:
                continue
            if any(question_of[member] == question_id for member in kept[target]):
                continue
            return target
        return None

    @staticmethod
    def _apply_coverage(result: AssemblyResult, answers: Mapping[str, Answer]) -> None:
        """Flag members whose question has every non-skip answer clustered."""

        clustered = {member.answer_id for cluster in result.clusters for member in cluster.members}
        options: Dict[str, Set[str]] = defaultdict(set)
        for answer in answers.values():
            if answer.skip is None:
                options[answer.question_id].add(answer.answer_id)
        covered = {question_id for question_id, ids in options.items() if ids <= clustered}
        result.clusters = [
            cluster.model_copy(
                update={
                    "members": [
                        member.model_copy(update={"full_coverage": member.question_id in covered})
                        for member in cluster.members
                    ]
                }
            )
            for cluster in result.clusters
        ]


__all__ = [
    "AssemblyResult",
    "ClusterAssembler",
    "RepresentativeElector",
    "cluster_id_for",
]
