"""Tests for the OpenAI adjudicator and the budgeted adjudication service."""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import httpx
import pytest

from answerlink.clustering import (
    AdjudicationMode,
    AdjudicationRequest,
    AdjudicationService,
    Adjudicator,
    DecisionCache,
    OpenAIAdjudicator,
    RejectionCategory,
    Verdict,
    VerdictOutcome,
)
from answerlink.config import AppConfig, CapacityConfig, ConfigError
from answerlink.contracts import Locale
from answerlink.errors import AdjudicationError, CapacityExceededError, TransientProviderError
from answerlink.normalization import TextNormalizer

US = Locale(country="US", language="en")


def _completion(verdicts: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": json.dumps({"verdicts": verdicts})}}]}


def _adjudicator(app_config: AppConfig, handler: Callable[[httpx.Request], httpx.Response]) -> OpenAIAdjudicator:
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://llm.test/v1")
    return OpenAIAdjudicator(app_config.adjudication.openai, api_key="test-key", client=client)


def _requests() -> List[AdjudicationRequest]:
    return [
        AdjudicationRequest(request_id="r0", left="Car", right="Automobile"),
        AdjudicationRequest(request_id="r1", left="Car", right="Electric car"),
        AdjudicationRequest(request_id="r2", left="Tea", right="Coffee"),
    ]


def test_adjudicator_maps_indexed_verdicts(app_config: AppConfig) -> None:
    seen: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json=_completion(
                [
                    {"index": 0, "answer": "yes", "category": None},
                    {"index": 1, "answer": "no", "category": "specificity_mismatch"},
                    {"index": 7, "answer": "yes", "category": None},
                ]
            ),
        )

    verdicts = _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests(), US)
    assert verdicts["r0"].outcome is VerdictOutcome.ACCEPT
    assert verdicts["r1"].outcome is VerdictOutcome.REJECT
    assert verdicts["r1"].category is RejectionCategory.SPECIFICITY_MISMATCH
    assert "r2" not in verdicts
    payload = seen[0]
    assert payload["response_format"]["type"] == "json_schema"
    assert "0. A: 'Car' | B: 'Automobile'" in payload["messages"][1]["content"]
    assert "Locale: US_en" in payload["messages"][1]["content"]


def test_entailment_prompt_labels_direction(app_config: AppConfig) -> None:
    seen: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=_completion([{"index": 0, "answer": "no", "category": None}]))

    requests = [AdjudicationRequest(request_id="c1>c2", left="Owns a dog", right="Owns a pet")]
    verdicts = _adjudicator(app_config, handler).judge(AdjudicationMode.ENTAILMENT, requests, US)
    assert verdicts["c1>c2"].category is RejectionCategory.DIFFERENT_MEANING
    assert "SOURCE: 'Owns a dog' | IMPLIED: 'Owns a pet'" in seen[0]["messages"][1]["content"]


def test_adjudicator_retries_retryable_statuses(app_config: AppConfig) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(429, json={"error": {"message": "slow down"}})
        return httpx.Response(200, json=_completion([{"index": 0, "answer": "yes", "category": None}]))

    verdicts = _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests()[:1], US)
    assert verdicts["r0"].accepted
    assert calls["count"] == 3


def test_adjudicator_gives_up_after_max_retries(app_config: AppConfig) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, text="unavailable")

    with pytest.raises(TransientProviderError):
        _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests(), US)
    assert calls["count"] == app_config.adjudication.openai_max_retries + 1


def test_adjudicator_retries_transport_errors(app_config: AppConfig) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientProviderError):
        _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests(), US)


def test_adjudicator_rejected_credentials_are_configuration_errors(app_config: AppConfig) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    with pytest.raises(ConfigError):
        _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests(), US)


def test_adjudicator_non_retryable_status_is_an_adjudication_error(app_config: AppConfig) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "bad schema"}})

    with pytest.raises(AdjudicationError):
        _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests(), US)


def test_adjudicator_rejects_malformed_content(app_config: AppConfig) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]})

    with pytest.raises(AdjudicationError):
        _adjudicator(app_config, handler).judge(AdjudicationMode.EQUIVALENCE, _requests(), US)


def test_missing_api_key_fails_at_construction(app_config: AppConfig, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigError):
        OpenAIAdjudicator.from_config(app_config.adjudication)


class _ScriptedAdjudicator(Adjudicator):
    """Accept pairs whose sides share their first word; fail batches containing ``boom``."""

    def __init__(self) -> None:
        self.batches: List[List[str]] = []
        self._lock = threading.Lock()

    def judge(
        self,
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> Dict[str, Verdict]:
        with self._lock:
            self.batches.append([request.request_id for request in requests])
        if any("boom" in request.left for request in requests):
            raise TransientProviderError("provider down")
        verdicts: Dict[str, Verdict] = {}
        for request in requests:
            if request.left.split()[0].lower() == request.right.split()[0].lower():
                verdicts[request.request_id] = Verdict(outcome=VerdictOutcome.ACCEPT)
            else:
                verdicts[request.request_id] = Verdict(
                    outcome=VerdictOutcome.REJECT, category=RejectionCategory.DIFFERENT_MEANING
                )
        return verdicts


def _service(app_config: AppConfig, tmp_path: Path, *, budget: int = 100, batch_size: int = 2):
    adjudicator = _ScriptedAdjudicator()
    config = app_config.adjudication.model_copy(update={"batch_size": batch_size, "max_concurrency": 2})
    cache = DecisionCache(tmp_path / "decisions.json")
    service = AdjudicationService(
        adjudicator,
        config,
        CapacityConfig(max_adjudications_per_run=budget),
        TextNormalizer(app_config.normalization),
        cache=cache,
    )
    return service, adjudicator, cache


def test_service_accepts_exact_matches_without_a_call(app_config: AppConfig, tmp_path: Path) -> None:
    service, adjudicator, _ = _service(app_config, tmp_path)
    requests = [AdjudicationRequest(request_id="r0", left="1. Yes", right="yes")]
    verdicts = service.adjudicate(AdjudicationMode.EQUIVALENCE, requests, US)
    assert verdicts["r0"].accepted
    assert verdicts["r0"].source == "exact"
    assert adjudicator.batches == []
    assert service.spent == 0


def test_service_reuses_cached_decisions_across_runs(app_config: AppConfig, tmp_path: Path) -> None:
    service, adjudicator, cache = _service(app_config, tmp_path)
    requests = [
        AdjudicationRequest(request_id="r0", left="Red car", right="Red automobile"),
        AdjudicationRequest(request_id="r1", left="Tea", right="Coffee"),
    ]
    first = service.adjudicate(AdjudicationMode.EQUIVALENCE, requests, US)
    assert first["r0"].accepted and not first["r1"].accepted
    assert len(cache) == 2

    reloaded, second_adjudicator, _ = _service(app_config, tmp_path)
    swapped = [AdjudicationRequest(request_id="x", left="Coffee", right="Tea")]
    second = reloaded.adjudicate(AdjudicationMode.EQUIVALENCE, swapped, US)
    assert second["x"].source == "cache"
    assert second["x"].outcome is VerdictOutcome.REJECT
    assert second_adjudicator.batches == []


def test_entailment_cache_keys_respect_direction(app_config: AppConfig, tmp_path: Path) -> None:
    service, adjudicator, _ = _service(app_config, tmp_path)
    forward = [AdjudicationRequest(request_id="a>b", left="Dog owner", right="Pet owner")]
    backward = [AdjudicationRequest(request_id="b>a", left="Pet owner", right="Dog owner")]
    service.adjudicate(AdjudicationMode.ENTAILMENT, forward, US)
    service.adjudicate(AdjudicationMode.ENTAILMENT, backward, US)
    assert adjudicator.batches == [["a>b"], ["b>a"]]


def test_service_refuses_to_exceed_the_budget(app_config: AppConfig, tmp_path: Path) -> None:
    service, adjudicator, _ = _service(app_config, tmp_path, budget=2)
    requests = [AdjudicationRequest(request_id=f"r{i}", left=f"Option {i}", right=f"Choice {i}") for i in range(3)]
    with pytest.raises(CapacityExceededError) as excinfo:
        service.adjudicate(AdjudicationMode.EQUIVALENCE, requests, US)
    assert excinfo.value.requested == 3
    assert adjudicator.batches == []
    service.reset_budget()
    assert service.spent == 0


def test_failed_batch_is_unresolved_and_not_cached(app_config: AppConfig, tmp_path: Path) -> None:
    service, adjudicator, cache = _service(app_config, tmp_path, batch_size=1)
    requests = [
        AdjudicationRequest(request_id="ok", left="Blue car", right="Blue automobile"),
        AdjudicationRequest(request_id="bad", left="boom", right="Anything"),
    ]
    verdicts = service.adjudicate(AdjudicationMode.EQUIVALENCE, requests, US)
    assert verdicts["ok"].accepted
    assert verdicts["bad"].outcome is VerdictOutcome.UNRESOLVED
    assert len(cache) == 1
    assert sorted(batch[0] for batch in adjudicator.batches) == ["bad", "ok"]
    assert service.spent == 2


def test_requests_are_dispatched_in_configured_batches(app_config: AppConfig, tmp_path: Path) -> None:
    service, adjudicator, _ = _service(app_config, tmp_path, batch_size=2)
    requests = [AdjudicationRequest(request_id=f"r{i}", left=f"Word{i} a", right=f"Other{i} b") for i in range(5)]
    service.adjudicate(AdjudicationMode.EQUIVALENCE, requests, US)
    assert sorted(len(batch) for batch in adjudicator.batches) == [1, 2, 2]
