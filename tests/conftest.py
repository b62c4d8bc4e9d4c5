"""Shared fixtures: an in-memory redis double and a test configuration."""
from __future__ import annotations

from fnmatch import fnmatchcase
from hashlib import sha256
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import pytest
import redis

from answerlink.clustering import EmbeddingBackend
from answerlink.config import AppConfig, ReportsConfig, load_config


class FakeRedis:
    """Dictionary-backed stand-in for the subset of redis-py the index uses.

    ``round_trips`` counts every network exchange: each direct command and
    each pipeline ``execute``. Commands named in ``fail_commands`` raise
    ``redis.ConnectionError`` before anything in the exchange is applied.
    """

    def __init__(self) -> None:
        self.strings: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.round_trips = 0
        self.executed: List[List[str]] = []
        self.fail_commands: Set[str] = set()

    # direct commands ----------------------------------------------------

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self, transaction)

    def get(self, key: str) -> Optional[str]:
        return self._direct("get", key)

    def set(self, key: str, value: str) -> bool:
        return self._direct("set", key, value)

    def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        return self._direct("hset", key, mapping=mapping)

    def hmget(self, key: str, fields: Sequence[str]) -> List[Optional[str]]:
        return self._direct("hmget", key, fields)

    def hgetall(self, key: str) -> Dict[str, str]:
        return self._direct("hgetall", key)

    def delete(self, *keys: str) -> int:
        return self._direct("delete", *keys)

    def scan_iter(self, match: str = "*") -> Iterator[str]:
        self._check(["scan_iter"])
        self.round_trips += 1
        return iter(sorted(key for key in self.keys() if fnmatchcase(key, match)))

    def keys(self) -> List[str]:
        return sorted(set(self.strings) | set(self.hashes))

    # execution ----------------------------------------------------------

    def _direct(self, name: str, *args: Any, **kwargs: Any) -> Any:
        self._check([name])
        self.round_trips += 1
        return self._apply(name, args, kwargs)

    def _check(self, names: Sequence[str]) -> None:
        failing = self.fail_commands.intersection(names)
        if failing:
            raise redis.ConnectionError(f"injected failure on {sorted(failing)}")

    def _apply(self, name: str, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        handler: Callable[..., Any] = getattr(self, f"_do_{name}")
        return handler(*args, **kwargs)

    def _do_get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    def _do_set(self, key: str, value: str) -> bool:
        self.strings[key] = str(value)
        return True

    def _do_hset(self, key: str, mapping: Mapping[str, str]) -> int:
        target = self.hashes.setdefault(key, {})
        added = sum(1 for field in mapping if field not in target)
        target.update({field: str(value) for field, value in mapping.items()})
        return added

    def _do_hmget(self, key: str, fields: Sequence[str]) -> List[Optional[str]]:
        target = self.hashes.get(key, {})
        return [target.get(field) for field in fields]

    def _do_hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.hashes.get(key, {}))

    def _do_rename(self, source: str, destination: str) -> bool:
        if source in self.hashes:
            self.hashes[destination] = self.hashes.pop(source)
            self.strings.pop(destination, None)
        elif source in self.strings:
            self.strings[destination] = self.strings.pop(source)
            self.hashes.pop(destination, None)
        else:
            raise redis.ResponseError("ERR no such key")
        return True

    def _do_delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.hashes.pop(key, None) is not None:
                removed += 1
            elif self.strings.pop(key, None) is not None:
                removed += 1
        return removed


class FakePipeline:
    """Buffered command list flushed by :meth:`execute` as one round trip."""

    def __init__(self, client: FakeRedis, transaction: bool) -> None:
        self._client = client
        self.transaction = transaction
        self._commands: List[Tuple[str, Tuple[Any, ...], Dict[str, Any]]] = []

    def __getattr__(self, name: str) -> Callable[..., "FakePipeline"]:
        if not hasattr(self._client, f"_do_{name}"):
            raise AttributeError(name)

        def queue(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._commands.append((name, args, kwargs))
            return self

        return queue

    def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        self._client._check([name for name, _, _ in commands])
        self._client.round_trips += 1
        self._client.executed.append([name for name, _, _ in commands])
        return [self._client._apply(name, args, kwargs) for name, args, kwargs in commands]


class KeywordEmbeddingBackend(EmbeddingBackend):
    """Deterministic embeddings placing texts that share a topic word on one axis.

    Texts mentioning none of the topics get a pseudo-random direction seeded
    by their own text, so unrelated texts are nearly orthogonal.
    """

    def __init__(self, topics: Sequence[Sequence[str]], dimensions: int = 256) -> None:
        self._topics = [tuple(word.lower() for word in words) for words in topics]
        self._dimensions = dimensions

    def embed(self, text: str) -> np.ndarray:
        lowered = text.lower()
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for index, words in enumerate(self._topics):
            if any(word in lowered for word in words):
                vector[index] = 1.0
                return vector
        seed = int.from_bytes(sha256(lowered.encode("utf-8")).digest()[:8], "big")
        noise = np.random.default_rng(seed).standard_normal(self._dimensions).astype(np.float32)
        noise[: len(self._topics)] = 0.0
        return noise / np.linalg.norm(noise)


@pytest.fixture(name="fake_redis")
def fixture_fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(name="app_config")
def fixture_app_config(tmp_path: Path) -> AppConfig:
    """Repository configuration with artifacts redirected into ``tmp_path``."""

    base = load_config()
    adjudication = base.adjudication.model_copy(
        update={
            "cache_dir": str(tmp_path / "cache"),
            "openai_backoff_initial_seconds": 0.001,
            "openai_backoff_max_seconds": 0.001,
        }
    )
    storage = base.storage.model_copy(update={"database_url": "sqlite:///:memory:", "commit_batch_size": 2})
    return base.model_copy(
        update={
            "adjudication": adjudication,
            "storage": storage,
            "reports": ReportsConfig(dir=str(tmp_path / "reports")),
        }
    )


@pytest.fixture(name="keyword_backend")
def fixture_keyword_backend() -> Callable[..., KeywordEmbeddingBackend]:
    """Return a factory for topic-keyword embedding backends."""

    return KeywordEmbeddingBackend
