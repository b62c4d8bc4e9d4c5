"""Cache builder projecting clusters and overlaps into the expansion index."""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import redis

from answerlink.config import CacheConfig
from answerlink.contracts import Cluster, Locale, OverlapRecord
from answerlink.errors import CacheUnavailableError, DataIntegrityError

from .index import FAMILIES, IndexKeys, encode

LOGGER = logging.getLogger(__name__)


class CacheBuilder:
    """Write a new index generation for a locale and swap it in atomically.

    Staged hashes are renamed onto the live family names together with the
    generation pointer inside one ``MULTI/EXEC``. Until that transaction runs,
    readers keep seeing the previous generation. Generations older than the
    one just replaced are swept afterwards.
    """

    def __init__(self, client: "redis.Redis[str]", config: CacheConfig) -> None:
        self._client = client
        self._config = config

    def keys(self, locale: Locale) -> IndexKeys:
        return IndexKeys(prefix=self._config.key_prefix, locale=locale)

    def build(
        self,
        locale: Locale,
        clusters: Sequence[Cluster],
        overlaps: Sequence[OverlapRecord] = (),
        *,
        generation: Optional[str] = None,
    ) -> str:
        """Project ``clusters`` and one-hop ``overlaps`` into a fresh generation.

        Returns:
            str: The generation now served to readers.

        Raises:
            DataIntegrityError: If a record belongs to another locale.
            CacheUnavailableError: If redis fails; the previous generation stays live.
        """

        keys = self.keys(locale)
        generation = generation or self._new_generation()
        families, bodies = self._project(locale, clusters, overlaps)
        writes: List[Tuple[str, Mapping[str, str]]] = [
            (keys.staging(name, generation), families[name]) for name in FAMILIES if families[name]
        ]
        writes.extend((keys.cluster_body(generation, cluster_id), body) for cluster_id, body in bodies.items())
        staged = [key for key, _ in writes]
        try:
            self._stage(writes)
            previous = self._client.get(keys.generation)
            swap = self._client.pipeline(transaction=True)
            for name in FAMILIES:
                if families[name]:
                    swap.rename(keys.staging(name, generation), keys.family(name))
                else:
                    swap.delete(keys.family(name))
            swap.set(keys.generation, generation)
            swap.execute()
        except redis.RedisError as exc:
            LOGGER.error("Expansion index rebuild for %s failed; keeping previous generation: %s", locale.key, exc)
            self._discard(staged)
            raise CacheUnavailableError(f"expansion index rebuild failed for {locale.key}") from exc
        LOGGER.info(
            "Expansion index for %s now at generation %s (%d clusters, %d answers)",
            locale.key,
            generation,
            len(bodies),
            len(families["a2c"]),
        )
        self._sweep(keys, keep={generation, previous} - {None})
        return generation

    def clear(self, locale: Locale) -> int:
        """Delete every index key of ``locale`` and return how many were removed."""

        keys = self.keys(locale)
        try:
            doomed = list(self._client.scan_iter(match=keys.all_pattern()))
            removed = self._delete(doomed)
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"could not clear expansion index for {locale.key}") from exc
        LOGGER.info("Cleared %d expansion index keys for %s", removed, locale.key)
        return removed

    def current_generation(self, locale: Locale) -> Optional[str]:
        try:
            return self._client.get(self.keys(locale).generation)
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"expansion index unavailable for {locale.key}") from exc

    @staticmethod
    def _new_generation() -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        return f"{stamp}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def _project(
        locale: Locale,
        clusters: Sequence[Cluster],
        overlaps: Sequence[OverlapRecord],
    ) -> Tuple[Dict[str, Dict[str, str]], Dict[str, Dict[str, str]]]:
        direct: Dict[str, Set[str]] = defaultdict(set)
        by_question: Dict[str, Set[str]] = defaultdict(set)
        known: Set[str] = set()
        for cluster in clusters:
            if cluster.locale != locale:
                raise DataIntegrityError(
                    f"cluster {cluster.cluster_id} belongs to {cluster.locale.key}, not {locale.key}"
                )
            known.add(cluster.cluster_id)
            for member in cluster.members:
                direct[member.answer_id].add(cluster.cluster_id)
                by_question[member.question_id].add(cluster.cluster_id)
        implied: Dict[str, Set[str]] = defaultdict(set)
        for overlap in overlaps:
            if overlap.locale != locale:
                raise DataIntegrityError(
                    f"overlap {overlap.source_cluster_id}->{overlap.implied_cluster_id} belongs to {overlap.locale.key}"
                )
            if overlap.source_cluster_id not in known or overlap.implied_cluster_id not in known:
                LOGGER.warning(
                    "Skipping overlap %s->%s: unknown cluster", overlap.source_cluster_id, overlap.implied_cluster_id
                )
                continue
            implied[overlap.source_cluster_id].add(overlap.implied_cluster_id)

        a2c: Dict[str, str] = {}
        for answer_id, cluster_ids in direct.items():
            reached = set()
            for cluster_id in cluster_ids:
                reached |= implied.get(cluster_id, set())
            a2c[answer_id] = encode({"direct": sorted(cluster_ids), "implied": sorted(reached - cluster_ids)})
        q2c = {question_id: encode(sorted(cluster_ids)) for question_id, cluster_ids in by_question.items()}
        c2q = {cluster.cluster_id: encode(sorted(cluster.question_ids)) for cluster in clusters}
        bodies: Dict[str, Dict[str, str]] = {}
        for cluster in clusters:
            answers_by_question: Dict[str, List[str]] = defaultdict(list)
            meta: Dict[str, Any] = {}
            for member in cluster.members:
                answers_by_question[member.question_id].append(member.answer_id)
                meta[member.question_id] = member
            bodies[cluster.cluster_id] = {
                question_id: encode(
                    {
                        "answer_ids": sorted(answer_ids),
                        "selection_mode": meta[question_id].selection_mode.value,
                        "full_coverage": meta[question_id].full_coverage,
                        "question_clusters": sorted(by_question[question_id]),
                    }
                )
                for question_id, answer_ids in answers_by_question.items()
            }
        return {"a2c": a2c, "q2c": q2c, "c2q": c2q}, bodies

    def _stage(self, writes: Sequence[Tuple[str, Mapping[str, str]]]) -> None:
        """Pipeline HSETs, flushing every ``write_batch_size`` fields."""

        step = self._config.write_batch_size
        pipe = self._client.pipeline(transaction=False)
        pending = 0
        for key, mapping in writes:
            items = list(mapping.items())
            for start in range(0, len(items), step):
                chunk = dict(items[start : start + step])
                pipe.hset(key, mapping=chunk)
                pending += len(chunk)
                if pending >= step:
                    pipe.execute()
                    pending = 0
        if pending:
            pipe.execute()

    def _sweep(self, keys: IndexKeys, keep: Set[str]) -> None:
        try:
            stale = [
                key
                for pattern in (keys.cluster_body_pattern(), keys.staging_pattern())
                for key in self._client.scan_iter(match=pattern)
                if keys.generation_of(key) not in keep
            ]
            removed = self._delete(stale)
        except redis.RedisError as exc:
            LOGGER.warning("Sweeping stale expansion generations for %s failed: %s", keys.locale.key, exc)
            return
        if removed:
            LOGGER.info("Swept %d stale expansion keys for %s", removed, keys.locale.key)

    def _discard(self, staged: Sequence[str]) -> None:
        try:
            self._delete(staged)
        except redis.RedisError:
            LOGGER.warning("Could not discard %d staged expansion keys", len(staged))

    def _delete(self, keys: Sequence[str]) -> int:
        removed = 0
        step = self._config.write_batch_size
        for start in range(0, len(keys), step):
            chunk = keys[start : start + step]
            if chunk:
                removed += int(self._client.delete(*chunk))
        return removed


__all__ = ["CacheBuilder"]
