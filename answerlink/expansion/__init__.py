"""Redis-backed expansion index: cache builder and read-time expansion."""

from answerlink.expansion.builder import CacheBuilder
from answerlink.expansion.index import FAMILIES, IndexKeys, create_redis_client
from answerlink.expansion.reader import ExpansionReader, ExpansionResult

__all__ = [
    "CacheBuilder",
    "ExpansionReader",
    "ExpansionResult",
    "FAMILIES",
    "IndexKeys",
    "create_redis_client",
]
