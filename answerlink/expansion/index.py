"""Key layout and client factory for the redis-backed expansion index."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis

from answerlink.config import CacheConfig
from answerlink.contracts import Locale
from answerlink.errors import CacheUnavailableError

LOGGER = logging.getLogger(__name__)

FAMILIES = ("a2c", "q2c", "c2q")


@dataclass(frozen=True, slots=True)
class IndexKeys:
    """Redis key names for one locale.

    ``a2c``, ``q2c`` and ``c2q`` are fixed names swapped in by ``RENAME``;
    cluster bodies live under generation-scoped ``cq`` hashes.
    """

    prefix: str
    locale: Locale

    @property
    def root(self) -> str:
        return f"{self.prefix}:{self.locale.key}"

    @property
    def generation(self) -> str:
        return f"{self.root}:generation"

    def family(self, name: str) -> str:
        return f"{self.root}:{name}"

    def staging(self, name: str, generation: str) -> str:
        return f"{self.root}:staging:{generation}:{name}"

    def cluster_body(self, generation: str, cluster_id: str) -> str:
        return f"{self.root}:cq:{generation}:{cluster_id}"

    def cluster_body_pattern(self) -> str:
        return f"{self.root}:cq:*"

    def staging_pattern(self) -> str:
        return f"{self.root}:staging:*"

    def all_pattern(self) -> str:
        return f"{self.root}:*"

    def generation_of(self, key: str) -> Optional[str]:
        """Return the generation embedded in a ``cq`` or staging key."""

        for marker in (f"{self.root}:cq:", f"{self.root}:staging:"):
            if key.startswith(marker):
                return key[len(marker) :].split(":", 1)[0]
        return None


def create_redis_client(config: CacheConfig) -> "redis.Redis[str]":
    """Create a client whose operations time out instead of blocking."""

    return redis.Redis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_timeout=config.socket_timeout_seconds,
        socket_connect_timeout=config.socket_timeout_seconds,
    )


def encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def decode(raw: Optional[str], default: Any) -> Any:
    """Decode a stored JSON value.

    Raises:
        CacheUnavailableError: If the stored payload is not valid JSON.
    """

    if raw is None:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CacheUnavailableError("expansion index holds a malformed entry") from exc


__all__ = ["FAMILIES", "IndexKeys", "create_redis_client", "decode", "encode"]
