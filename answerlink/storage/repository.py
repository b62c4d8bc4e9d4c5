"""Repository persisting clustering output in bounded transactional batches."""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from answerlink.clustering import ClusteringOutcome, RunMode
from answerlink.config import StorageConfig
from answerlink.contracts import (
    Cluster,
    ClusterMember,
    ExclusionEntry,
    Locale,
    OrphanReason,
    OrphanRecord,
    OverlapRecord,
    SelectionMode,
)
from answerlink.errors import DataIntegrityError, LocaleLockedError
from answerlink.storage.migrations.versions import initial
from answerlink.storage.models import (
    ClusterMemberRow,
    ClusteringLockRow,
    ExclusionRow,
    OrphanRow,
    OverlapRow,
    QuestionGroupRow,
    SyncStateRow,
)

LOGGER = logging.getLogger(__name__)

_COMPLETE = "complete"
_RUN_SCOPED = (ClusterMemberRow, QuestionGroupRow, OrphanRow, OverlapRow)


def build_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ClusterRepository:
    """Provide database access helpers for clustering state.

    Cluster members, question groups, orphans and overlaps are written under a
    fresh run id and only become visible when the sync state points at that
    run. Exclusion pins are append-only here; only a targeted reset removes
    them.
    """

    def __init__(self, engine: Engine, *, batch_size: int = 1000, lock_ttl_seconds: float = 3600.0) -> None:
        if batch_size <= 0:
            msg = "batch_size must be positive"
            raise ValueError(msg)
        if lock_ttl_seconds <= 0:
            msg = "lock_ttl_seconds must be positive"
            raise ValueError(msg)
        self._engine = engine
        self._session_factory: sessionmaker[Session] = sessionmaker(engine, expire_on_commit=False)
        self._batch_size = batch_size
        self._lock_ttl_seconds = lock_ttl_seconds

    @classmethod
    def from_config(cls, config: StorageConfig) -> "ClusterRepository":
        return cls(
            build_engine(config.database_url),
            batch_size=config.commit_batch_size,
            lock_ttl_seconds=config.lock_ttl_seconds,
        )

    def create_schema(self) -> None:
        """Apply the initial migration."""

        with self._engine.begin() as connection:
            initial.upgrade(connection)

    # locking -----------------------------------------------------------

    def acquire_lock(self, locale: Locale, owner: str) -> None:
        """Insert the lock row for ``locale``, taking over a lock older than the TTL.

        Raises:
            LocaleLockedError: If another run holds a lock that has not expired.
        """

        now = datetime.now(timezone.utc)
        try:
            with self._session_factory() as session, session.begin():
                session.add(ClusteringLockRow(locale=locale.key, owner=owner, acquired_at=now))
        except IntegrityError as exc:
            if not self._take_over_stale_lock(locale, owner, now):
                holder = self.lock_owner(locale)
                raise LocaleLockedError(f"Locale {locale.key} is locked by {holder or 'another run'}") from exc
        LOGGER.info("Locale %s locked by %s", locale.key, owner)

    def _take_over_stale_lock(self, locale: Locale, owner: str, now: datetime) -> bool:
        with self._session_factory() as session, session.begin():
            row = session.get(ClusteringLockRow, locale.key)
            if row is None:
                return False
            age = (now - _as_utc(row.acquired_at)).total_seconds()
            if age < self._lock_ttl_seconds:
                return False
            previous = row.owner
            result = session.execute(
                update(ClusteringLockRow)
                .where(ClusteringLockRow.locale == locale.key, ClusteringLockRow.owner == previous)
                .values(owner=owner, acquired_at=now)
            )
        if not result.rowcount:
            return False
        LOGGER.warning(
            "Took over lock on %s from %s after %.0f seconds without release", locale.key, previous, age
        )
        return True

    def release_lock(self, locale: Locale, owner: str) -> None:
        with self._session_factory() as session, session.begin():
            session.execute(
                delete(ClusteringLockRow).where(
                    ClusteringLockRow.locale == locale.key, ClusteringLockRow.owner == owner
                )
            )
        LOGGER.info("Locale %s released by %s", locale.key, owner)

    def lock_owner(self, locale: Locale) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(ClusteringLockRow, locale.key)
            return row.owner if row is not None else None

    @contextmanager
    def locale_lock(self, locale: Locale, owner: str) -> Iterator[None]:
        self.acquire_lock(locale, owner)
        try:
            yield
        finally:
            self.release_lock(locale, owner)

    # sync state --------------------------------------------------------

    def has_full_sync(self, locale: Locale) -> bool:
        """Return whether a full resync of ``locale`` completed and was fully written."""

        with self._session_factory() as session:
            row = session.get(SyncStateRow, locale.key)
            return row is not None and row.status == _COMPLETE and row.last_full_sync_at is not None

    def sync_state(self, locale: Locale) -> Optional[Dict[str, Any]]:
        with self._session_factory() as session:
            row = session.get(SyncStateRow, locale.key)
            if row is None:
                return None
            return {
                "status": row.status,
                "last_mode": row.last_mode,
                "pipeline_version": row.pipeline_version,
                "live_run_id": row.live_run_id,
                "last_full_sync_at": row.last_full_sync_at,
                "last_sync_at": row.last_sync_at,
            }

    @staticmethod
    def _live_run(session: Session, locale: Locale) -> Optional[str]:
        row = session.get(SyncStateRow, locale.key)
        return row.live_run_id if row is not None else None

    # loaders -----------------------------------------------------------

    def load_cluster_map(self, locale: Locale) -> Dict[str, str]:
        with self._session_factory() as session:
            run_id = self._live_run(session, locale)
            rows = session.execute(
                select(ClusterMemberRow.answer_id, ClusterMemberRow.cluster_id).where(
                    ClusterMemberRow.locale == locale.key, ClusterMemberRow.run_id == run_id
                )
            )
            return {answer_id: cluster_id for answer_id, cluster_id in rows}

    def load_clusters(self, locale: Locale) -> List[Cluster]:
        """Rebuild persisted clusters for ``locale``."""

        with self._session_factory() as session:
            run_id = self._live_run(session, locale)
            rows = session.scalars(
                select(ClusterMemberRow)
                .where(ClusterMemberRow.locale == locale.key, ClusterMemberRow.run_id == run_id)
                .order_by(ClusterMemberRow.cluster_id, ClusterMemberRow.answer_id)
            ).all()
        grouped: Dict[str, List[ClusterMemberRow]] = defaultdict(list)
        for row in rows:
            grouped[row.cluster_id].append(row)
        clusters: List[Cluster] = []
        for cluster_id, members in grouped.items():
            representative = next((row.answer_id for row in members if row.is_representative), members[0].answer_id)
            try:
                clusters.append(
                    Cluster(
                        cluster_id=cluster_id,
                        locale=locale,
                        representative_answer_id=representative,
                        group_id=members[0].group_id,
                        members=[
                            ClusterMember(
                                answer_id=row.answer_id,
                                question_id=row.question_id,
                                selection_mode=SelectionMode(row.selection_mode),
                                full_coverage=row.full_coverage,
                            )
                            for row in members
                        ],
                    )
                )
            except ValueError:
                LOGGER.error("Skipping persisted cluster %s in %s: invariants violated", cluster_id, locale.key)
        return clusters

    def load_exclusions(self, locale: Locale) -> List[ExclusionEntry]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ExclusionRow).where(ExclusionRow.locale == locale.key).order_by(ExclusionRow.id)
            ).all()
        return [
            ExclusionEntry(locale=locale, question_id=row.question_id, cluster_id=row.cluster_id, reason=row.reason)
            for row in rows
        ]

    def load_orphans(self, locale: Locale) -> List[OrphanRecord]:
        with self._session_factory() as session:
            run_id = self._live_run(session, locale)
            rows = session.scalars(
                select(OrphanRow)
                .where(OrphanRow.locale == locale.key, OrphanRow.run_id == run_id)
                .order_by(OrphanRow.answer_id)
            ).all()
        return [
            OrphanRecord(
                locale=locale, question_id=row.question_id, answer_id=row.answer_id, reason=OrphanReason(row.reason)
            )
            for row in rows
        ]

    def load_overlaps(self, locale: Locale) -> List[OverlapRecord]:
        with self._session_factory() as session:
            run_id = self._live_run(session, locale)
            rows = session.scalars(
                select(OverlapRow).where(OverlapRow.locale == locale.key, OverlapRow.run_id == run_id)
            ).all()
        return [
            OverlapRecord(
                locale=locale, source_cluster_id=row.source_cluster_id, implied_cluster_id=row.implied_cluster_id
            )
            for row in rows
        ]

    def load_question_groups(self, locale: Locale) -> Dict[str, str]:
        with self._session_factory() as session:
            run_id = self._live_run(session, locale)
            rows = session.execute(
                select(QuestionGroupRow.question_id, QuestionGroupRow.group_id).where(
                    QuestionGroupRow.locale == locale.key, QuestionGroupRow.run_id == run_id
                )
            )
            return {question_id: group_id for question_id, group_id in rows}

    # writers -----------------------------------------------------------

    def save_outcome(self, outcome: ClusteringOutcome, *, pipeline_version: str) -> None:
        """Replace the locale's clustering state with ``outcome``.

        New rows are inserted under a fresh run id in transactions of at most
        ``batch_size`` records while the previous run stays live. The last
        transaction points the sync state at the new run and deletes the rows
        of every other run, so an interrupted write leaves the previous state
        readable. Exclusion pins are only ever added.
        """

        locale = outcome.locale
        key = locale.key
        self._validate_locale(outcome)
        started = datetime.now(timezone.utc)
        run_id = uuid.uuid4().hex

        member_rows = [
            ClusterMemberRow(
                locale=key,
                run_id=run_id,
                answer_id=member.answer_id,
                cluster_id=cluster.cluster_id,
                question_id=member.question_id,
                selection_mode=member.selection_mode.value,
                full_coverage=member.full_coverage,
                is_representative=member.answer_id == cluster.representative_answer_id,
                group_id=cluster.group_id,
                updated_at=started,
            )
            for cluster in outcome.clusters
            for member in cluster.members
        ]
        group_rows = [
            QuestionGroupRow(
                locale=key,
                run_id=run_id,
                question_id=question_id,
                group_id=group.group_id,
                audit_group_id=group.audit_group_id,
                string_search=group.string_search,
            )
            for group in outcome.groups
            for question_id in group.question_ids
        ]
        exclusion_rows = [
            ExclusionRow(locale=key, question_id=entry.question_id, cluster_id=entry.cluster_id, reason=entry.reason)
            for entry in self._new_pins(locale, outcome.exclusions)
        ]
        orphan_rows = [
            OrphanRow(
                locale=key,
                run_id=run_id,
                answer_id=record.answer_id,
                question_id=record.question_id,
                reason=record.reason.value,
            )
            for record in outcome.orphans
        ]
        overlap_rows = [
            OverlapRow(
                locale=key,
                run_id=run_id,
                source_cluster_id=record.source_cluster_id,
                implied_cluster_id=record.implied_cluster_id,
            )
            for record in outcome.overlaps
        ]
        written = 0
        for rows in (member_rows, group_rows, exclusion_rows, orphan_rows, overlap_rows):
            written += self._write_batches(rows)

        with self._session_factory() as session, session.begin():
            state = session.get(SyncStateRow, key)
            if state is None:
                state = SyncStateRow(locale=key)
                session.add(state)
            previous_run = state.live_run_id
            state.live_run_id = run_id
            state.status = _COMPLETE
            state.last_mode = outcome.mode.value
            state.pipeline_version = pipeline_version
            state.last_sync_at = started
            if outcome.mode is RunMode.FULL:
                state.last_full_sync_at = started
            for model in _RUN_SCOPED:
                session.execute(delete(model).where(model.locale == key, model.run_id != run_id))
        LOGGER.info(
            "Persisted %d rows for %s (%s); run %s replaces %s",
            written,
            key,
            outcome.mode.value,
            run_id,
            previous_run or "nothing",
        )

    def _new_pins(self, locale: Locale, entries: Sequence[ExclusionEntry]) -> List[ExclusionEntry]:
        with self._session_factory() as session:
            rows = session.execute(
                select(ExclusionRow.question_id, ExclusionRow.cluster_id).where(ExclusionRow.locale == locale.key)
            )
            stored: Set[Tuple[str, str]] = {(question_id, cluster_id) for question_id, cluster_id in rows}
        fresh: List[ExclusionEntry] = []
        for entry in entries:
            pin = (entry.question_id, entry.cluster_id)
            if pin in stored:
                continue
            stored.add(pin)
            fresh.append(entry)
        return fresh

    def _write_batches(self, rows: Sequence[Any]) -> int:
        for start in range(0, len(rows), self._batch_size):
            chunk = rows[start : start + self._batch_size]
            with self._session_factory() as session, session.begin():
                session.add_all(chunk)
            LOGGER.debug("Committed batch of %d %s rows", len(chunk), type(chunk[0]).__name__)
        return len(rows)

    @staticmethod
    def _validate_locale(outcome: ClusteringOutcome) -> None:
        locale = outcome.locale
        records: List[Any] = [*outcome.clusters, *outcome.exclusions, *outcome.orphans, *outcome.overlaps]
        for record in records:
            if record.locale != locale:
                raise DataIntegrityError(
                    f"{type(record).__name__} for {record.locale.key} cannot be stored with {locale.key}"
                )

    # targeted resets ---------------------------------------------------

    def clear_question_groups(self, locale: Locale) -> int:
        return self._clear(locale, QuestionGroupRow)

    def clear_exclusions(self, locale: Locale) -> int:
        return self._clear(locale, ExclusionRow)

    def clear_cluster_assignments(self, locale: Locale) -> int:
        """Remove clusters, overlaps, orphans and the sync state of ``locale``.

        Without a sync state the next incremental run is refused until a full
        resync completes.
        """

        removed = 0
        for model in (ClusterMemberRow, OverlapRow, OrphanRow, SyncStateRow):
            removed += self._clear(locale, model)
        return removed

    def _clear(self, locale: Locale, model: Any) -> int:
        with self._session_factory() as session, session.begin():
            result = session.execute(delete(model).where(model.locale == locale.key))
        count = result.rowcount or 0
        LOGGER.info("Cleared %d %s rows for %s", count, model.__tablename__, locale.key)
        return count


__all__ = ["ClusterRepository", "build_engine"]
