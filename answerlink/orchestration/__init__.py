"""Sync orchestration tying clustering, storage and the expansion index together."""

from answerlink.orchestration.sync import BatchSyncResult, ResetTarget, SyncResult, SyncService

__all__ = ["BatchSyncResult", "ResetTarget", "SyncResult", "SyncService"]
