"""Tests for the hashing embedding backend and the model-load fallback."""
from __future__ import annotations

import numpy as np
import pytest

from answerlink.clustering import HashingEmbeddingBackend, SentenceTransformerBackend, embeddings
from answerlink.config import load_config

UNRELATED = [
    "Do you own a dog?",
    "Which newspaper do you read?",
    "Tobacco user",
    "Weekly",
    "How many children live with you?",
    "Annual household income",
    "Yes",
    "No",
    "Public transport",
    "Vegetarian",
    "Prefer not to say",
    "Graduate degree",
]


def _max_off_diagonal(vectors: np.ndarray) -> float:
    scores = vectors @ vectors.T
    np.fill_diagonal(scores, -1.0)
    return float(scores.max())


def test_hashing_vectors_are_deterministic_unit_vectors() -> None:
    backend = HashingEmbeddingBackend()
    first = backend.embed("Tobacco user")
    assert first.shape == (256,)
    assert np.allclose(first, backend.embed("Tobacco user"))
    assert np.isclose(np.linalg.norm(first), 1.0)
    assert (first < 0).any()


def test_unrelated_texts_stay_below_the_embedding_threshold() -> None:
    threshold = load_config().candidates.embedding_threshold
    vectors = HashingEmbeddingBackend().embed_many(UNRELATED)
    assert _max_off_diagonal(vectors) < threshold
    scores = vectors @ vectors.T
    off_diagonal = scores[~np.eye(len(UNRELATED), dtype=bool)]
    assert float(np.abs(off_diagonal).mean()) < 0.2


def test_dimensions_must_be_positive() -> None:
    with pytest.raises(ValueError):
        HashingEmbeddingBackend(dimensions=0)


def test_model_load_failure_falls_back_to_separable_vectors(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    def unavailable(*args, **kwargs):
        raise OSError("model files missing")

    monkeypatch.setattr(embeddings, "SentenceTransformer", unavailable)
    backend = SentenceTransformerBackend("example/unavailable-model")
    with caplog.at_level("WARNING", logger="answerlink.clustering.embeddings"):
        vectors = backend.embed_many(UNRELATED)
    assert vectors.shape == (len(UNRELATED), 256)
    assert _max_off_diagonal(vectors) < load_config().candidates.embedding_threshold
    assert any("Falling back to hashing embeddings" in record.getMessage() for record in caplog.records)
