"""Initial migration creating clustering tables."""
from __future__ import annotations

from sqlalchemy.engine import Connection

from answerlink.storage.models import StorageBase


def upgrade(connection: Connection) -> None:
    """Create clustering tables."""

    StorageBase.metadata.create_all(connection)


def downgrade(connection: Connection) -> None:
    """Drop clustering tables."""

    StorageBase.metadata.drop_all(connection)


__all__ = ["upgrade", "downgrade"]
