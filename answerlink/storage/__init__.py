"""Relational persistence for clusters, exclusions, orphans and overlaps."""

from answerlink.storage.models import (
    ClusterMemberRow,
    ClusteringLockRow,
    ExclusionRow,
    OrphanRow,
    OverlapRow,
    QuestionGroupRow,
    StorageBase,
    SyncStateRow,
)
from answerlink.storage.repository import ClusterRepository, build_engine

__all__ = [
    "ClusterMemberRow",
    "ClusterRepository",
    "ClusteringLockRow",
    "ExclusionRow",
    "OrphanRow",
    "OverlapRow",
    "QuestionGroupRow",
    "StorageBase",
    "SyncStateRow",
    "build_engine",
]
