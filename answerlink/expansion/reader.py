"""Read-time expansion of a user's answers through their clusters."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Collection, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

import redis

from answerlink.config import CacheConfig
from answerlink.contracts import Locale, SelectionMode, SkipSentinel, UserAnswer
from answerlink.errors import CacheUnavailableError, RestrictedScopeError

from .index import IndexKeys, decode

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpansionResult:
    """Source answers plus the answers inferred from their clusters."""

    sources: Tuple[UserAnswer, ...]
    inferred: Tuple[UserAnswer, ...] = ()
    targets: Optional[FrozenSet[str]] = None
    strict: bool = False
    degraded: bool = False
    cluster_ids: FrozenSet[str] = frozenset()
    implied_cluster_ids: FrozenSet[str] = frozenset()

    @property
    def source_answers(self) -> Tuple[UserAnswer, ...]:
        return self.sources

    @property
    def inferred_answers(self) -> Tuple[UserAnswer, ...]:
        return self.inferred

    @property
    def answers(self) -> Tuple[UserAnswer, ...]:
        """Return the expanded set: every source answer followed by the inferred ones."""

        return self.sources + self.inferred

    @property
    def answer_ids(self) -> FrozenSet[str]:
        return frozenset(answer.answer_id for answer in self.answers if answer.answer_id is not None)

    def for_question(self, question_id: str) -> List[UserAnswer]:
        """Return the answers that apply to ``question_id``.

        Direct answers win over inferred ones.

        Raises:
            RestrictedScopeError: If the result is strict, restricted and
                ``question_id`` is outside the declared targets.
        """

        if self.targets is not None and question_id not in self.targets:
            if self.strict:
                raise RestrictedScopeError(f"question {question_id} is outside the restricted expansion scope")
            return []
        direct = [answer for answer in self.sources if answer.question_id == question_id]
        if direct:
            return direct
        return [answer for answer in self.inferred if answer.question_id == question_id]


@dataclass(slots=True)
class _Membership:
    generation: str
    direct: Dict[str, List[str]] = field(default_factory=dict)
    implied: Dict[str, List[str]] = field(default_factory=dict)
    question_clusters: Dict[str, FrozenSet[str]] = field(default_factory=dict)


class ExpansionReader:
    """Serve expansions from the index in two round trips.

    Stage one reads the generation pointer together with the answer and
    question cluster sets in one transaction. Stage two fetches the bodies of
    every touched cluster in one pipeline. Any redis failure or timeout
    narrows the result to the source answers.
    """

    def __init__(self, client: "redis.Redis[str]", config: CacheConfig) -> None:
        self._client = client
        self._config = config

    def expand(
        self,
        locale: Locale,
        sources: Sequence[UserAnswer],
        *,
        targets: Optional[Collection[str]] = None,
        strict: bool = False,
    ) -> ExpansionResult:
        """Expand ``sources`` through their clusters.

        Args:
            locale: Locale every source belongs to.
            sources: Answers and skips given directly by the user.
            targets: Optional restriction to these question ids.
            strict: Raise from :meth:`ExpansionResult.for_question` for
                untargeted questions instead of returning nothing.

        Returns:
            ExpansionResult: A superset of ``sources``; never raises for cache problems.
        """

        source_tuple = tuple(sources)
        target_set = frozenset(targets) if targets is not None else None
        try:
            membership = self._resolve_membership(locale, source_tuple)
            inferred = self._infer(locale, source_tuple, membership, target_set)
        except CacheUnavailableError as exc:
            LOGGER.warning("Expansion for %s degraded to source answers: %s", locale.key, exc)
            return ExpansionResult(sources=source_tuple, targets=target_set, strict=strict, degraded=True)
        return ExpansionResult(
            sources=source_tuple,
            inferred=inferred,
            targets=target_set,
            strict=strict,
            cluster_ids=frozenset(cid for cids in membership.direct.values() for cid in cids),
            implied_cluster_ids=frozenset(cid for cids in membership.implied.values() for cid in cids),
        )

    def matches(
        self,
        locale: Locale,
        sources: Sequence[UserAnswer],
        target_cluster_ids: AbstractSet[str],
    ) -> bool:
        """Return whether any source answer belongs to, or directly implies, a target cluster.

        Implied clusters are the stored one-hop overlaps only; they are never chained.
        """

        try:
            membership = self._resolve_membership(locale, tuple(sources))
        except CacheUnavailableError as exc:
            LOGGER.warning("Cluster matching for %s degraded to no membership: %s", locale.key, exc)
            return False
        reached: Set[str] = set()
        for answer_id, cluster_ids in membership.direct.items():
            reached.update(cluster_ids)
            reached.update(membership.implied.get(answer_id, ()))
        return bool(reached & set(target_cluster_ids))

    def _keys(self, locale: Locale) -> IndexKeys:
        return IndexKeys(prefix=self._config.key_prefix, locale=locale)

    def _resolve_membership(self, locale: Locale, sources: Sequence[UserAnswer]) -> _Membership:
        """Stage one: generation, answer clusters and question clusters in one transaction."""

        keys = self._keys(locale)
        answer_ids = sorted({source.answer_id for source in sources if source.answer_id is not None})
        question_ids = sorted({source.question_id for source in sources})
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.get(keys.generation)
            if answer_ids:
                pipe.hmget(keys.family("a2c"), answer_ids)
            if question_ids:
                pipe.hmget(keys.family("q2c"), question_ids)
            results = pipe.execute()
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"stage one lookup failed: {exc}") from exc
        generation = results[0]
        if generation is None:
            raise CacheUnavailableError(f"no expansion index generation for {locale.key}")
        membership = _Membership(generation=generation)
        position = 1
        if answer_ids:
            for answer_id, raw in zip(answer_ids, results[position]):
                payload = decode(raw, {"direct": [], "implied": []})
                membership.direct[answer_id] = list(payload.get("direct", []))
                membership.implied[answer_id] = list(payload.get("implied", []))
            position += 1
        if question_ids:
            for question_id, raw in zip(question_ids, results[position]):
                membership.question_clusters[question_id] = frozenset(decode(raw, []))
        return membership

    def _fetch_bodies(
        self,
        locale: Locale,
        generation: str,
        cluster_ids: Sequence[str],
        fields: Optional[Sequence[str]],
    ) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Stage two: one pipeline reading every touched cluster body."""

        if not cluster_ids:
            return {}
        keys = self._keys(locale)
        try:
            pipe = self._client.pipeline(transaction=False)
            for cluster_id in cluster_ids:
                key = keys.cluster_body(generation, cluster_id)
                if fields is None:
                    pipe.hgetall(key)
                else:
                    pipe.hmget(key, list(fields))
            results = pipe.execute()
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"stage two lookup failed: {exc}") from exc
        bodies: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for cluster_id, raw in zip(cluster_ids, results):
            if fields is None:
                items = dict(raw or {})
            else:
                items = {name: value for name, value in zip(fields, raw) if value is not None}
            bodies[cluster_id] = {question_id: decode(value, {}) for question_id, value in items.items()}
        return bodies

    def _infer(
        self,
        locale: Locale,
        sources: Sequence[UserAnswer],
        membership: _Membership,
        targets: Optional[FrozenSet[str]],
    ) -> Tuple[UserAnswer, ...]:
        answered = {source.question_id for source in sources}
        sources_by_cluster: Dict[str, Set[str]] = defaultdict(set)
        for source in sources:
            if source.answer_id is None:
                continue
            for cluster_id in membership.direct.get(source.answer_id, ()):
                sources_by_cluster[cluster_id].add(source.question_id)
        propagating = sorted(
            {source.question_id for source in sources if source.skip is not None and source.skip.propagates}
        )
        skip_clusters: Dict[str, Set[str]] = defaultdict(set)
        for question_id in propagating:
            for cluster_id in membership.question_clusters.get(question_id, ()):
                skip_clusters[cluster_id].add(question_id)

        cluster_ids = sorted(set(sources_by_cluster) | set(skip_clusters))
        fields: Optional[List[str]] = None
        if targets is not None:
            fields = sorted(set(targets) | answered)
        bodies = self._fetch_bodies(locale, membership.generation, cluster_ids, fields)

        inferred: Dict[Tuple[str, Optional[str], Optional[int]], UserAnswer] = {}
        for cluster_id in cluster_ids:
            body = bodies.get(cluster_id, {})
            value_sources = sources_by_cluster.get(cluster_id, set())
            if value_sources:
                only_single = all(
                    body.get(question_id, {}).get("selection_mode", SelectionMode.SINGLE.value)
                    == SelectionMode.SINGLE.value
                    for question_id in value_sources
                )
                for question_id, payload in sorted(body.items()):
                    if not self._in_scope(question_id, answered, targets):
                        continue
                    if only_single and payload.get("selection_mode") == SelectionMode.MULTI.value:
                        LOGGER.debug("Suppressed %s in %s: single-select sources only", question_id, cluster_id)
                        continue
                    if not self._schema_covered(payload, value_sources, membership):
                        LOGGER.debug("Suppressed %s in %s: schema not covered by sources", question_id, cluster_id)
                        continue
                    for answer_id in payload.get("answer_ids", []):
                        key = (question_id, answer_id, None)
                        inferred[key] = UserAnswer(question_id=question_id, answer_id=answer_id)
            for source_question in sorted(skip_clusters.get(cluster_id, ())):
                for question_id, payload in sorted(body.items()):
                    if not self._in_scope(question_id, answered, targets):
                        continue
                    if not self._schema_covered(payload, {source_question}, membership):
                        continue
                    key = (question_id, None, int(SkipSentinel.DOES_NOT_APPLY))
                    inferred[key] = UserAnswer(question_id=question_id, skip=SkipSentinel.DOES_NOT_APPLY)
        # A concrete answer outranks a propagated skip for the same target.
        concrete = {question_id for question_id, answer_id, _ in inferred if answer_id is not None}
        for question_id in sorted(concrete):
            if inferred.pop((question_id, None, int(SkipSentinel.DOES_NOT_APPLY)), None) is not None:
                LOGGER.debug("Dropped inferred skip for %s: a concrete answer was inferred", question_id)
        return tuple(inferred.values())

    @staticmethod
    def _in_scope(question_id: str, answered: AbstractSet[str], targets: Optional[FrozenSet[str]]) -> bool:
        if question_id in answered:
            return False
        return targets is None or question_id in targets

    @staticmethod
    def _schema_covered(
        payload: Mapping[str, Any],
        source_questions: AbstractSet[str],
        membership: _Membership,
    ) -> bool:
        """True when some source question touches every cluster the target touches."""

        target_clusters = set(payload.get("question_clusters", []))
        return any(
            target_clusters <= membership.question_clusters.get(question_id, frozenset())
            for question_id in source_questions
        )


__all__ = ["ExpansionReader", "ExpansionResult"]
