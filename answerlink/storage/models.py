"""SQLAlchemy ORM models for clustering state, keyed by opaque string ids."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageBase(DeclarativeBase):
    """Base declarative class for clustering tables."""


class QuestionGroupRow(StorageBase):
    """Phase 1 question-group assignment of one question."""

    __tablename__ = "question_groups"

    locale: Mapped[str] = mapped_column(String(16), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(320), index=True)
    audit_group_id: Mapped[str] = mapped_column(String(320))
    string_search: Mapped[bool] = mapped_column(Boolean, default=False)


class ClusterMemberRow(StorageBase):
    """Answer to cluster assignment together with its question metadata."""

    __tablename__ = "cluster_members"

    locale: Mapped[str] = mapped_column(String(16), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    answer_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    cluster_id: Mapped[str] = mapped_column(String(64), index=True)
    question_id: Mapped[str] = mapped_column(String(255), index=True)
    selection_mode: Mapped[str] = mapped_column(String(16))
    full_coverage: Mapped[bool] = mapped_column(Boolean, default=False)
    is_representative: Mapped[bool] = mapped_column(Boolean, default=False)
    group_id: Mapped[Optional[str]] = mapped_column(String(320))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ExclusionRow(StorageBase):
    """Pin forbidding a question from re-attaching to a cluster or group."""

    __tablename__ = "exclusions"
    __table_args__ = (UniqueConstraint("locale", "question_id", "cluster_id", name="uq_exclusion_pin"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    locale: Mapped[str] = mapped_column(String(16), index=True)
    question_id: Mapped[str] = mapped_column(String(255))
    cluster_id: Mapped[str] = mapped_column(String(320))
    reason: Mapped[str] = mapped_column(String(32), default="audit")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class OrphanRow(StorageBase):
    """Answer that could not be placed, kept for re-processing next cycle."""

    __tablename__ = "orphans"

    locale: Mapped[str] = mapped_column(String(16), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    answer_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(255))
    reason: Mapped[str] = mapped_column(String(32))
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class OverlapRow(StorageBase):
    """Directed single-hop implication between two clusters."""

    __tablename__ = "overlaps"

    locale: Mapped[str] = mapped_column(String(16), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    source_cluster_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    implied_cluster_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class SyncStateRow(StorageBase):
    """Per-locale record of the last completed sync and the run whose rows are live."""

    __tablename__ = "sync_states"

    locale: Mapped[str] = mapped_column(String(16), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default="complete")
    live_run_id: Mapped[Optional[str]] = mapped_column(String(32))
    last_mode: Mapped[Optional[str]] = mapped_column(String(16))
    pipeline_version: Mapped[Optional[str]] = mapped_column(String(32))
    last_full_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class ClusteringLockRow(StorageBase):
    """Row held while a clustering run owns a locale."""

    __tablename__ = "clustering_locks"

    locale: Mapped[str] = mapped_column(String(16), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255))
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


__all__ = [
    "ClusterMemberRow",
    "ClusteringLockRow",
    "ExclusionRow",
    "OrphanRow",
    "OverlapRow",
    "QuestionGroupRow",
    "StorageBase",
    "SyncStateRow",
]
