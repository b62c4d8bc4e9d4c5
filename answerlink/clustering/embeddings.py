"""Embedding backends and cosine-similarity helpers for candidate search."""
from __future__ import annotations

import logging
import math
import unicodedata
from hashlib import sha256
from threading import Lock
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from sentence_transformers import SentenceTransformer

from answerlink.config import EmbeddingsConfig

LOGGER = logging.getLogger(__name__)

_DIGEST_SIZE = sha256().digest_size


class EmbeddingBackend:
    """Protocol for embedding text into dense vectors."""

    def embed(self, text: str) -> np.ndarray:  # pragma: no cover - interface method
        raise NotImplementedError

    def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        """Embed a batch of texts into a ``(len(texts), dim)`` matrix."""

        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        return np.stack([self.embed(text) for text in texts]).astype(np.float32)


class HashingEmbeddingBackend(EmbeddingBackend):
    """Deterministic embedding backend using hashing for reproducibility.

    Components are hash bytes centred on zero, so unrelated texts are close
    to orthogonal.
    """

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions <= 0:
            msg = "Embedding dimensions must be positive"
            raise ValueError(msg)
        self._dimensions = dimensions

    def embed(self, text: str) -> np.ndarray:
        """Embed text into a deterministic vector.

        Args:
            text: Input string to embed.

        Returns:
            np.ndarray: Unit-normalized embedding vector.
        """

        normalized = unicodedata.normalize("NFKC", text).encode("utf-8")
        blocks = math.ceil(self._dimensions / _DIGEST_SIZE)
        digest = b"".join(sha256(block.to_bytes(4, "big") + normalized).digest() for block in range(blocks))
        hashed = np.frombuffer(digest, dtype=np.uint8)[: self._dimensions].astype(np.float32)
        vector = (hashed - 127.5) / 127.5
        norm = np.linalg.norm(vector)
        if norm == 0:
            return np.zeros(self._dimensions, dtype=np.float32)
        return vector / norm


class SentenceTransformerBackend(EmbeddingBackend):
    """Embedding backend powered by a multilingual E5 sentence encoder."""

    _GLOBAL_MODELS: Dict[Tuple[str, Optional[str]], SentenceTransformer] = {}
    _GLOBAL_LOCK: Lock = Lock()

    def __init__(
        self,
        model_name: str = "intfloat/multilingual-e5-base",
        *,
        device: Optional[str] = None,
        batch_size: int = 32,
    ) -> None:
        self._model_name = model_name
        self._device = device
        self._batch_size = max(batch_size, 1)
        self._model: Optional[SentenceTransformer] = None
        self._lock = Lock()
        self._cache: Dict[str, np.ndarray] = {}
        self._fallback: Optional[HashingEmbeddingBackend] = None

    @classmethod
    def from_config(cls, config: EmbeddingsConfig) -> "SentenceTransformerBackend":
        return cls(config.model, device=config.device, batch_size=config.batch_size)

    def embed(self, text: str) -> np.ndarray:
        """Embed text into a normalized vector using the E5 encoder."""

        return self.embed_many([text])[0].copy()

    def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        """Embed texts, encoding only those missing from the in-memory cache.

        Args:
            texts: Texts to embed.

        Returns:
            np.ndarray: Unit-normalized row vectors in input order.
        """

        cleaned = [text.strip() for text in texts]
        missing = sorted({text for text in cleaned if text not in self._cache})
        if missing:
            try:
                model = self._get_model()
            except RuntimeError:
                if self._fallback is None:
                    LOGGER.warning(
                        "Falling back to hashing embeddings because %s could not be loaded",
                        self._model_name,
                    )
                    self._fallback = HashingEmbeddingBackend()
                return self._fallback.embed_many(cleaned)
            queries = [f"query: {text}" if text else "query:" for text in missing]
            encoded = model.encode(
                queries,
                batch_size=self._batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
            for text, row in zip(missing, encoded):
                vector = np.asarray(row, dtype=np.float32)
                norm = np.linalg.norm(vector)
                if norm > 0:
                    vector = vector / norm
                self._cache[text] = vector
        if not cleaned:
            return np.zeros((0, 0), dtype=np.float32)
        return np.stack([self._cache[text] for text in cleaned])

    def _get_model(self) -> SentenceTransformer:
        if self._model is not None:
            return self._model
        cache_key = (self._model_name, self._device)
        with self._lock:
            if self._model is not None:
                return self._model
            with self._GLOBAL_LOCK:
                cached = self._GLOBAL_MODELS.get(cache_key)
            if cached is not None:
                self._model = cached
                return cached
            try:
                model = SentenceTransformer(self._model_name, device=self._device)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Failed to load SentenceTransformer model '%s'", self._model_name)
                raise RuntimeError("sentence-transformer model unavailable") from exc
            with self._GLOBAL_LOCK:
                self._GLOBAL_MODELS[cache_key] = model
            self._model = model
            return model


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Return ``matrix`` with every non-zero row scaled to unit length."""

    if matrix.size == 0:
        return matrix.astype(np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype(np.float32)


def iter_similar_pairs(
    vectors: np.ndarray,
    threshold: float,
    *,
    chunk_size: Optional[int] = None,
) -> Iterator[Tuple[int, int, float]]:
    """Yield ``(i, j, score)`` with ``i < j`` for every row pair above ``threshold``.

    Rows are compared in blocks of ``chunk_size`` so memory stays bounded by
    ``chunk_size * len(vectors)`` scores instead of the full square matrix.
    """

    count = vectors.shape[0]
    if count < 2:
        return
    step = chunk_size or count
    for start in range(0, count, step):
        block = vectors[start : start + step] @ vectors.T
        rows, cols = np.nonzero(block >= threshold)
        for row, col in zip(rows.tolist(), cols.tolist()):
            i = start + row
            if col <= i:
                continue
            yield i, col, float(block[row, col])


def star_similarities(anchors: np.ndarray, others: np.ndarray, threshold: float) -> List[Tuple[int, int, float]]:
    """Compare every row of ``others`` against ``anchors`` only.

    Returns:
        List[Tuple[int, int, float]]: ``(anchor_index, other_index, score)``
        triples above ``threshold``.
    """

    if anchors.size == 0 or others.size == 0:
        return []
    scores = others @ anchors.T
    rows, cols = np.nonzero(scores >= threshold)
    return [(int(col), int(row), float(scores[row, col])) for row, col in zip(rows, cols)]


def medoid_index(vectors: np.ndarray) -> int:
    """Return the row with the highest summed cosine similarity to all others.

    ``sum_j v_i . v_j`` equals ``v_i . sum_j v_j``, so the medoid is found in
    linear time without materializing the square similarity matrix.
    """

    if vectors.shape[0] == 0:
        raise ValueError("cannot elect a medoid from an empty matrix")
    totals = vectors @ vectors.sum(axis=0)
    return int(np.argmax(totals))
