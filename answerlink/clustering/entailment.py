"""Phase 4: directed single-hop overlap detection between cluster representatives."""
from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence, Tuple

from answerlink.config import EntailmentConfig
from answerlink.contracts import Answer, Cluster, Locale, OverlapRecord
from answerlink.normalization import TextNormalizer

from .adjudication import AdjudicationMode, AdjudicationRequest, AdjudicationService
from .embeddings import EmbeddingBackend, iter_similar_pairs, normalize_rows

LOGGER = logging.getLogger(__name__)


class EntailmentEngine:
    """Find clusters whose membership implies eligibility for another cluster.

    Overlaps are asked in both directions and recorded one direction at a
    time. Records are never composed: ``A -> B`` and ``B -> C`` do not yield
    ``A -> C``.
    """

    def __init__(
        self,
        config: EntailmentConfig,
        service: AdjudicationService,
        embedding_backend: EmbeddingBackend,
        normalizer: TextNormalizer,
    ) -> None:
        self._config = config
        self._service = service
        self._embedding_backend = embedding_backend
        self._normalizer = normalizer

    def detect(
        self,
        locale: Locale,
        clusters: Sequence[Cluster],
        answers: Mapping[str, Answer],
    ) -> List[OverlapRecord]:
        if not self._config.enabled or len(clusters) < 2:
            return []
        ordered = sorted(clusters, key=lambda cluster: cluster.cluster_id)
        texts = [answers[cluster.representative_answer_id].text for cluster in ordered]
        forms = [self._normalizer.normalize(text, locale) or text for text in texts]
        vectors = normalize_rows(self._embedding_backend.embed_many(forms))
        requests: List[AdjudicationRequest] = []
        directions: Dict[str, Tuple[str, str]] = {}
        for i, j, score in iter_similar_pairs(vectors, self._config.similarity_threshold):
            for source, implied in ((i, j), (j, i)):
                request_id = f"{ordered[source].cluster_id}>{ordered[implied].cluster_id}"
                directions[request_id] = (ordered[source].cluster_id, ordered[implied].cluster_id)
                requests.append(AdjudicationRequest(request_id=request_id, left=texts[source], right=texts[implied]))
            LOGGER.debug(
                "Entailment candidate %s <-> %s (%.3f)", ordered[i].cluster_id, ordered[j].cluster_id, score
            )
        if not requests:
            return []
        verdicts = self._service.adjudicate(AdjudicationMode.ENTAILMENT, requests, locale)
        overlaps = [
            OverlapRecord(locale=locale, source_cluster_id=source, implied_cluster_id=implied)
            for request_id, (source, implied) in sorted(directions.items())
            if verdicts[request_id].accepted
        ]
        LOGGER.info(
            "Recorded %d overlaps from %d directed candidates for %s", len(overlaps), len(requests), locale.key
        )
        return overlaps


__all__ = ["EntailmentEngine"]
