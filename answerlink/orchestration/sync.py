"""Per-locale sync runs: cluster, commit in batches, then rebuild the expansion index."""
from __future__ import annotations

import logging
import os
import socket
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from answerlink.clustering import (
    AdjudicationService,
    ClusteringEngine,
    ClusteringOutcome,
    DecisionCache,
    EmbeddingBackend,
    OpenAIAdjudicator,
    RunMode,
    SentenceTransformerBackend,
)
from answerlink.config import AppConfig
from answerlink.contracts import Locale, SurveyExport
from answerlink.errors import CacheUnavailableError, ColdStartError
from answerlink.expansion import CacheBuilder, create_redis_client
from answerlink.normalization import TextNormalizer
from answerlink.storage import ClusterRepository

LOGGER = logging.getLogger(__name__)


class ResetTarget(str, Enum):
    """State that a targeted reset can clear independently."""

    QUESTION_GROUPS = "question_groups"
    DECISION_CACHE = "decision_cache"
    BLACKLIST = "blacklist"
    CLUSTER_ASSIGNMENTS = "cluster_assignments"
    EXPANSION_CACHE = "expansion_cache"


@dataclass(frozen=True)
class SyncResult:
    """Summary of one locale sync."""

    locale: Locale
    mode: RunMode
    dry_run: bool
    outcome: Optional[ClusteringOutcome] = None
    committed: bool = False
    generation: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BatchSyncResult:
    """Summary payload for a multi-locale sync."""

    locales: Mapping[str, SyncResult]
    errors: List[str] = field(default_factory=list)


class SyncService:
    """Drive clustering runs and keep the expansion index in step with storage.

    Each locale runs under its own row lock, so two runs never write the same
    locale at once while different locales proceed in parallel. Capacity and
    configuration errors abort before anything is committed. A failed index
    rebuild leaves the committed clusters in place and the previous index
    generation live; :meth:`rebuild_cache` restores it without adjudication.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        engine_factory: Callable[[], ClusteringEngine],
        repository: ClusterRepository,
        builder: CacheBuilder,
        decision_cache: Optional[DecisionCache] = None,
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            msg = "max_workers must be positive"
            raise ValueError(msg)
        self._config = config
        self._engine_factory = engine_factory
        self._repository = repository
        self._builder = builder
        self._decision_cache = decision_cache
        self._max_workers = max_workers

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        embedding_backend: Optional[EmbeddingBackend] = None,
        max_workers: int = 4,
    ) -> "SyncService":
        """Wire the production stack: E5 embeddings, OpenAI adjudication, SQL storage and redis."""

        backend = embedding_backend or SentenceTransformerBackend.from_config(config.embeddings)
        adjudicator = OpenAIAdjudicator.from_config(config.adjudication)
        decision_cache = DecisionCache(config.adjudication.decision_cache_path)
        normalizer = TextNormalizer(config.normalization)

        def engine_factory() -> ClusteringEngine:
            service = AdjudicationService(
                adjudicator, config.adjudication, config.capacity, normalizer, cache=decision_cache
            )
            return ClusteringEngine(config, embedding_backend=backend, adjudication=service)

        repository = ClusterRepository.from_config(config.storage)
        repository.create_schema()
        builder = CacheBuilder(create_redis_client(config.cache), config.cache)
        return cls(
            config,
            engine_factory=engine_factory,
            repository=repository,
            builder=builder,
            decision_cache=decision_cache,
            max_workers=max_workers,
        )

    def sync(self, export: SurveyExport, *, mode: RunMode = RunMode.FULL, dry_run: bool = False) -> SyncResult:
        """Cluster one locale and publish the result.

        Raises:
            ColdStartError: If ``mode`` is incremental and the locale never completed a full resync.
            LocaleLockedError: If another run holds the locale.
            CapacityExceededError: If adjudication would exceed the run budget.
        """

        locale = export.locale
        owner = _lock_owner()
        with self._repository.locale_lock(locale, owner):
            if mode is RunMode.INCREMENTAL and not self._repository.has_full_sync(locale):
                raise ColdStartError(f"Locale {locale.key} needs a completed full resync before incremental runs")
            prior_map = self._repository.load_cluster_map(locale) if mode is RunMode.INCREMENTAL else {}
            engine = self._engine_factory()
            outcome = engine.run(
                export,
                mode=mode,
                prior_map=prior_map,
                exclusions=self._repository.load_exclusions(locale),
                orphans=self._repository.load_orphans(locale),
                dry_run=dry_run,
            )
            if dry_run:
                LOGGER.info("Dry run for %s finished; nothing committed", locale.key)
                return SyncResult(locale=locale, mode=mode, dry_run=True, outcome=outcome)
            self._repository.save_outcome(outcome, pipeline_version=self._config.pipeline.version)
            errors: List[str] = []
            generation: Optional[str] = None
            try:
                generation = self._builder.build(locale, outcome.clusters, outcome.overlaps)
            except CacheUnavailableError as exc:
                message = f"Expansion index rebuild for {locale.key} failed: {exc}"
                LOGGER.warning(message)
                errors.append(message)
        return SyncResult(
            locale=locale,
            mode=mode,
            dry_run=False,
            outcome=outcome,
            committed=True,
            generation=generation,
            errors=errors,
        )

    def sync_many(
        self,
        exports: Sequence[SurveyExport],
        *,
        mode: RunMode = RunMode.FULL,
        dry_run: bool = False,
    ) -> BatchSyncResult:
        """Sync several locales in parallel, collecting failures per locale."""

        if not exports:
            msg = "exports must not be empty"
            raise ValueError(msg)
        keys = [export.locale.key for export in exports]
        if len(set(keys)) != len(keys):
            msg = "each locale may appear only once per batch"
            raise ValueError(msg)

        results: Dict[str, SyncResult] = {}
        batch_errors: List[str] = []
        workers = min(self._max_workers, len(exports))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.sync, export, mode=mode, dry_run=dry_run) for export in exports]
            for export, future in zip(exports, futures):
                locale = export.locale
                try:
                    results[locale.key] = future.result()
                except Exception as exc:  # noqa: BLE001 - surfaced to result payload
                    message = f"Sync failed for {locale.key}: {exc}"
                    LOGGER.exception(message)
                    batch_errors.append(message)
                    results[locale.key] = SyncResult(locale=locale, mode=mode, dry_run=dry_run, errors=[message])
        for result in results.values():
            batch_errors.extend(error for error in result.errors if error not in batch_errors)
        return BatchSyncResult(locales=results, errors=batch_errors)

    def targeted_reset(self, locale: Locale, targets: Iterable[Union[ResetTarget, str]]) -> Dict[str, int]:
        """Clear any combination of persisted state for ``locale``.

        The decision cache is keyed by normalized text, not locale, so resetting
        it clears every locale's cached verdicts.

        Returns:
            Dict[str, int]: Number of removed entries per target.

        Raises:
            ValueError: If a target name is unknown.
        """

        selected = sorted({ResetTarget(target) for target in targets}, key=lambda item: item.value)
        removed: Dict[str, int] = {}
        with self._repository.locale_lock(locale, _lock_owner()):
            for target in selected:
                if target is ResetTarget.QUESTION_GROUPS:
                    removed[target.value] = self._repository.clear_question_groups(locale)
                elif target is ResetTarget.BLACKLIST:
                    removed[target.value] = self._repository.clear_exclusions(locale)
                elif target is ResetTarget.CLUSTER_ASSIGNMENTS:
                    removed[target.value] = self._repository.clear_cluster_assignments(locale)
                elif target is ResetTarget.EXPANSION_CACHE:
                    removed[target.value] = self._builder.clear(locale)
                elif self._decision_cache is not None:
                    removed[target.value] = self._decision_cache.clear()
                else:
                    LOGGER.warning("No decision cache configured; nothing to reset for %s", locale.key)
                    removed[target.value] = 0
        LOGGER.info("Targeted reset for %s: %s", locale.key, removed)
        return removed

    def rebuild_cache(self, locale: Locale) -> str:
        """Rebuild the expansion index from committed clusters and overlaps only.

        Raises:
            ColdStartError: If the locale has no completed full resync to rebuild from.
            CacheUnavailableError: If redis fails; the previous generation stays live.
        """

        if not self._repository.has_full_sync(locale):
            raise ColdStartError(f"Locale {locale.key} has no committed full resync to rebuild from")
        clusters = self._repository.load_clusters(locale)
        overlaps = self._repository.load_overlaps(locale)
        LOGGER.info("Rebuilding expansion index for %s from %d persisted clusters", locale.key, len(clusters))
        return self._builder.build(locale, clusters, overlaps)


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


__all__ = ["BatchSyncResult", "ResetTarget", "SyncResult", "SyncService"]
