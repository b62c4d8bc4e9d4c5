"""Phase 3: LLM adjudication of guarded candidate pairs."""
from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from answerlink.config import AdjudicationConfig, CapacityConfig, ConfigError, OpenAIConfig
from answerlink.contracts import Locale
from answerlink.errors import AdjudicationError, CapacityExceededError, TransientProviderError
from answerlink.normalization import TextNormalizer

from .cache import DecisionCache

LOGGER = logging.getLogger(__name__)

API_KEY_ENV_VAR = "OPENAI_API_KEY"


class AdjudicationMode(str, Enum):
    """Question posed to the adjudicator."""

    EQUIVALENCE = "equivalence"
    ENTAILMENT = "entailment"


class VerdictOutcome(str, Enum):
    """Result of adjudicating one pair."""

    ACCEPT = "accept"
    REJECT = "reject"
    UNRESOLVED = "unresolved"


class RejectionCategory(str, Enum):
    """Why the adjudicator refused a pair."""

    SPECIFICITY_MISMATCH = "specificity_mismatch"
    COMPOSITE_MISMATCH = "composite_mismatch"
    DIFFERENT_MEANING = "different_meaning"


@dataclass(frozen=True, slots=True)
class AdjudicationRequest:
    """Pair of texts to adjudicate; ``left`` is the source side for entailment."""

    request_id: str
    left: str
    right: str


@dataclass(frozen=True, slots=True)
class Verdict:
    """Adjudication outcome for one request."""

    outcome: VerdictOutcome
    category: Optional[RejectionCategory] = None
    source: str = "llm"

    @property
    def accepted(self) -> bool:
        return self.outcome is VerdictOutcome.ACCEPT

    def to_cache(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "category": self.category.value if self.category else None,
        }

    @classmethod
    def from_cache(cls, payload: Mapping[str, Any]) -> "Verdict":
        category = payload.get("category")
        return cls(
            outcome=VerdictOutcome(payload["outcome"]),
            category=RejectionCategory(category) if category else None,
            source="cache",
        )


UNRESOLVED = Verdict(outcome=VerdictOutcome.UNRESOLVED, source="error")


class Adjudicator(ABC):
    """Interface for yes/no pair adjudication backends."""

    @abstractmethod
    def judge(
        self,
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> Dict[str, Verdict]:
        """Return a verdict per request id; missing ids count as unresolved.

        Raises:
            TransientProviderError: When retryable failures exhaust the budget.
            AdjudicationError: When the provider answers with an unusable payload.
        """


class OpenAIAdjudicator(Adjudicator):
    """Adjudicator backed by an OpenAI-compatible chat completions endpoint."""

    _ENDPOINT = "/chat/completions"

    def __init__(
        self,
        settings: OpenAIConfig,
        *,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        resolved_key = api_key or os.getenv(API_KEY_ENV_VAR, "").strip()
        if not resolved_key:
            raise ConfigError(f"{API_KEY_ENV_VAR} must be set to adjudicate candidate pairs")
        self._settings = settings
        self._api_key = resolved_key
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=settings.api_base.rstrip("/"),
            timeout=settings.timeout_seconds,
        )
        self._base_headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        self._retry_statuses = set(settings.retry_statuses)

    @classmethod
    def from_config(cls, config: AdjudicationConfig, **kwargs: Any) -> "OpenAIAdjudicator":
        return cls(config.openai, **kwargs)

    def close(self) -> None:
        """Close underlying HTTP resources if this instance owns them."""

        if self._owns_client:
            self._client.close()

    def judge(
        self,
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> Dict[str, Verdict]:
        if not requests:
            return {}
        payload = self._build_payload(mode, requests, locale)
        response_json = self._post_with_retries(payload)
        return self._parse_response(response_json, requests)

    def _build_payload(
        self,
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> Dict[str, Any]:
        return {
            "model": self._settings.model,
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_output_tokens,
            "messages": [
                {"role": "system", "content": self._system_prompt(mode)},
                {"role": "user", "content": self._render_user_prompt(mode, requests, locale)},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": f"answer_{mode.value}_verdicts",
                    "strict": True,
                    "schema": self._response_schema(),
                },
            },
        }

    @staticmethod
    def _system_prompt(mode: AdjudicationMode) -> str:
        if mode is AdjudicationMode.ENTAILMENT:
            return (
                "You compare survey answer options from one market. For each numbered pair, "
                "answer yes only if a respondent who chose the SOURCE option is necessarily "
                "eligible for the IMPLIED option. The relation is one-directional: do not "
                "answer yes because the reverse holds. Answer no whenever the implication "
                "depends on information the source option does not state."
            )
        return (
            "You compare survey answer options from one market. For each numbered pair, "
            "answer yes only if both options mean exactly the same thing to a respondent. "
            "Answer no with category 'specificity_mismatch' when one option is broader or "
            "narrower than the other (for example 'Car' vs 'Electric car'), with category "
            "'composite_mismatch' when one option bundles several choices the other names "
            "only partially (for example 'Tea or coffee' vs 'Coffee'), and with category "
            "'different_meaning' otherwise. Numbers, places and dates must match exactly."
        )

    @staticmethod
    def _render_user_prompt(
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> str:
        left_label, right_label = ("SOURCE", "IMPLIED") if mode is AdjudicationMode.ENTAILMENT else ("A", "B")
        lines = [f"Locale: {locale.key}", "Pairs:"]
        for index, request in enumerate(requests):
            lines.append(f"{index}. {left_label}: {request.left!r} | {right_label}: {request.right!r}")
        lines.append("Return one verdict per pair index as JSON matching the requested schema.")
        return "\n".join(lines)

    @staticmethod
    def _response_schema() -> Dict[str, Any]:
        return {
            "type": "object",
            "additionalProperties": False,
            "required": ["verdicts"],
            "properties": {
                "verdicts": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["index", "answer", "category"],
                        "properties": {
                            "index": {"type": "integer"},
                            "answer": {"type": "string", "enum": ["yes", "no"]},
                            "category": {
                                "type": ["string", "null"],
                                "enum": [category.value for category in RejectionCategory] + [None],
                            },
                        },
                    },
                }
            },
        }

    def _parse_response(
        self,
        payload: Dict[str, Any],
        requests: Sequence[AdjudicationRequest],
    ) -> Dict[str, Verdict]:
        """Map the model's indexed verdicts back onto request ids."""

        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            LOGGER.error("OpenAI response missing choices: %s", payload)
            raise AdjudicationError("OpenAI response missing choices")
        message = choices[0].get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            raise AdjudicationError("OpenAI response missing message content")
        try:
            content = json.loads(message["content"])
        except json.JSONDecodeError as exc:
            raise AdjudicationError("OpenAI verdicts were not valid JSON") from exc
        raw_verdicts = content.get("verdicts") if isinstance(content, dict) else None
        if not isinstance(raw_verdicts, list):
            raise AdjudicationError("OpenAI response did not include a verdict list")
        verdicts: Dict[str, Verdict] = {}
        for item in raw_verdicts:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            if not isinstance(index, int) or not 0 <= index < len(requests):
                LOGGER.warning("Ignoring verdict with out-of-range index %r", index)
                continue
            answer = str(item.get("answer", "")).strip().lower()
            if answer == "yes":
                verdicts[requests[index].request_id] = Verdict(outcome=VerdictOutcome.ACCEPT)
            elif answer == "no":
                category = item.get("category")
                try:
                    parsed = RejectionCategory(category) if category else RejectionCategory.DIFFERENT_MEANING
                except ValueError:
                    parsed = RejectionCategory.DIFFERENT_MEANING
                verdicts[requests[index].request_id] = Verdict(outcome=VerdictOutcome.REJECT, category=parsed)
        missing = len(requests) - len(verdicts)
        if missing:
            LOGGER.warning("OpenAI response omitted %d of %d verdicts", missing, len(requests))
        return verdicts

    def _post_with_retries(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send the payload with retry semantics for transient errors."""

        attempt = 0
        delay = self._settings.backoff_initial_seconds
        while True:
            start = time.perf_counter()
            try:
                response = self._client.post(self._ENDPOINT, headers=self._base_headers, json=payload)
            except httpx.HTTPError as exc:
                elapsed = time.perf_counter() - start
                if not isinstance(exc, httpx.TransportError):
                    raise AdjudicationError(f"OpenAI adjudication request failed: {exc}") from exc
                if attempt >= self._settings.max_retries:
                    LOGGER.error(
                        "OpenAI adjudication request failed after %.2fs and %s retries: %s",
                        elapsed,
                        attempt,
                        exc,
                    )
                    raise TransientProviderError(f"OpenAI adjudication request failed: {exc}") from exc
                attempt += 1
                LOGGER.warning(
                    "OpenAI adjudication request raised %s after %.2fs; retrying (attempt %s)",
                    exc.__class__.__name__,
                    elapsed,
                    attempt,
                )
                time.sleep(min(delay, self._settings.backoff_max_seconds))
                delay = min(delay * 2, self._settings.backoff_max_seconds)
                continue
            elapsed = time.perf_counter() - start
            if response.status_code < 400:
                try:
                    response_payload = response.json()
                except json.JSONDecodeError as exc:
                    LOGGER.error("OpenAI response was not valid JSON after %.2fs: %s", elapsed, exc)
                    raise AdjudicationError("OpenAI response was not valid JSON") from exc
                if attempt > 0:
                    LOGGER.info(
                        "OpenAI adjudication succeeded after %s retries (elapsed %.2fs, status %s)",
                        attempt,
                        elapsed,
                        response.status_code,
                    )
                return response_payload
            message = self._extract_error_message(response)
            if response.status_code in {401, 403}:
                LOGGER.error("OpenAI rejected the configured credentials: %s", message)
                raise ConfigError(f"OpenAI credentials rejected with status {response.status_code}")
            if response.status_code not in self._retry_statuses:
                LOGGER.error(
                    "OpenAI adjudication failed with status %s after %.2fs: %s",
                    response.status_code,
                    elapsed,
                    message,
                )
                raise AdjudicationError(
                    f"OpenAI adjudication failed with status {response.status_code}: {message}"
                )
            if attempt >= self._settings.max_retries:
                raise TransientProviderError(
                    f"OpenAI adjudication still failing with status {response.status_code} "
                    f"after {attempt} retries"
                )
            attempt += 1
            LOGGER.warning(
                "OpenAI adjudication received status %s after %.2fs; retrying (attempt %s)",
                response.status_code,
                elapsed,
                attempt,
            )
            time.sleep(min(delay, self._settings.backoff_max_seconds))
            delay = min(delay * 2, self._settings.backoff_max_seconds)

    @staticmethod
    def _extract_error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200]
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return str(payload)[:200]


class AdjudicationService:
    """Cache-first, budgeted, concurrent front for an :class:`Adjudicator`.

    Exact normalized matches are accepted without a call. Cached verdicts are
    reused across runs. Misses are dispatched in batches of
    ``config.batch_size`` on at most ``config.max_concurrency`` threads; a
    batch that fails with a provider error leaves its pairs unresolved
    without aborting sibling batches.
    """

    def __init__(
        self,
        adjudicator: Adjudicator,
        config: AdjudicationConfig,
        capacity: CapacityConfig,
        normalizer: TextNormalizer,
        cache: Optional[DecisionCache] = None,
    ) -> None:
        self._adjudicator = adjudicator
        self._config = config
        self._budget = capacity.max_adjudications_per_run
        self._normalizer = normalizer
        self._cache = cache
        self._spent = 0

    @property
    def spent(self) -> int:
        """Number of pairs sent to the provider since the last reset."""

        return self._spent

    def reset_budget(self) -> None:
        self._spent = 0

    def adjudicate(
        self,
        mode: AdjudicationMode,
        requests: Sequence[AdjudicationRequest],
        locale: Locale,
    ) -> Dict[str, Verdict]:
        """Return a verdict for every request id.

        Raises:
            CapacityExceededError: If the uncached requests would exceed the run budget.
        """

        ordered = mode is AdjudicationMode.ENTAILMENT
        prompt_version = self._config.openai_prompt_version
        verdicts: Dict[str, Verdict] = {}
        misses: List[AdjudicationRequest] = []
        keys: Dict[str, str] = {}
        for request in requests:
            pair = self._normalizer.normalize_pair(request.left, request.right, locale)
            if mode is AdjudicationMode.EQUIVALENCE and pair.exact:
                verdicts[request.request_id] = Verdict(outcome=VerdictOutcome.ACCEPT, source="exact")
                continue
            key = DecisionCache.make_key(prompt_version, mode.value, pair.left_form, pair.right_form, ordered=ordered)
            keys[request.request_id] = key
            cached = self._cache.get(key) if self._cache is not None else None
            if cached is not None:
                verdicts[request.request_id] = Verdict.from_cache(cached)
            else:
                misses.append(request)
        if not misses:
            return verdicts
        requested = self._spent + len(misses)
        if requested > self._budget:
            LOGGER.error(
                "Refusing to dispatch %d adjudications for %s; budget %d already has %d spent",
                len(misses),
                locale.key,
                self._budget,
                self._spent,
            )
            raise CapacityExceededError(requested, self._budget)
        self._spent = requested

        size = self._config.batch_size
        batches = [misses[start : start + size] for start in range(0, len(misses), size)]
        LOGGER.info(
            "Dispatching %d %s adjudications for %s in %d batches (%d cached or exact)",
            len(misses),
            mode.value,
            locale.key,
            len(batches),
            len(verdicts),
        )
        fresh: Dict[str, Dict[str, Any]] = {}
        workers = min(self._config.max_concurrency, len(batches))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._adjudicator.judge, mode, batch, locale) for batch in batches]
            for batch, future in zip(batches, futures):
                try:
                    result = future.result()
                except (TransientProviderError, AdjudicationError) as exc:
                    LOGGER.warning(
                        "Adjudication batch of %d pairs for %s left unresolved: %s",
                        len(batch),
                        locale.key,
                        exc,
                    )
                    result = {}
                for request in batch:
                    verdict = result.get(request.request_id, UNRESOLVED)
                    verdicts[request.request_id] = verdict
                    if verdict.outcome is not VerdictOutcome.UNRESOLVED:
                        fresh[keys[request.request_id]] = verdict.to_cache()
        if self._cache is not None:
            self._cache.set_many(fresh)
        return verdicts


__all__ = [
    "AdjudicationMode",
    "AdjudicationRequest",
    "AdjudicationService",
    "Adjudicator",
    "OpenAIAdjudicator",
    "RejectionCategory",
    "Verdict",
    "VerdictOutcome",
]
