"""Configuration loader for the answerlink clustering and expansion services."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from typing_extensions import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

DATABASE_URL_ENV_VAR = "ANSWERLINK_DATABASE_URL"
REDIS_URL_ENV_VAR = "ANSWERLINK_REDIS_URL"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


class PipelineConfig(_FrozenModel):
    """Pipeline-level configuration."""

    version: str = Field(..., min_length=1)


class NormalizationConfig(_FrozenModel):
    """Script-aware text normalization settings."""

    min_remainder_chars: int = Field(2, ge=1)
    logographic_min_remainder_chars: int = Field(1, ge=1)
    logographic_languages: List[str] = Field(default_factory=lambda: ["zh", "ja", "ko"])
    preserve_languages: List[str] = Field(default_factory=list)

    @field_validator("logographic_languages", "preserve_languages")
    @classmethod
    def _lowercase_languages(cls, values: List[str]) -> List[str]:
        return [value.strip().lower() for value in values if value and value.strip()]


class GuardsConfig(_FrozenModel):
    """Safety guard chain tuning."""

    mode: Literal["strict", "relaxed"] = "strict"
    subset_token_tolerance: int = Field(1, ge=0)
    relaxed_subset_token_tolerance: int = Field(2, ge=0)


class CandidatesConfig(_FrozenModel):
    """Candidate generation thresholds for Phase 2."""

    string_search_max_texts: int = Field(20000, ge=1)
    string_similarity_threshold: float = Field(90.0, ge=0.0, le=100.0)
    embedding_threshold: float = Field(0.70, ge=0.0, le=1.0)
    complex_script_embedding_threshold: float = Field(0.80, ge=0.0, le=1.0)
    chunk_threshold: int = Field(10000, ge=1)
    chunk_size: int = Field(2048, ge=1)
    question_similarity_threshold: float = Field(0.80, ge=0.0, le=1.0)


class EmbeddingsConfig(_FrozenModel):
    """Sentence embedding model settings."""

    model: str = Field(..., min_length=1)
    device: Optional[str] = None
    batch_size: int = Field(32, ge=1)


class OpenAIConfig(_FrozenModel):
    """Settings required for the OpenAI adjudication adapter."""

    model: str = Field(..., min_length=1)
    api_base: str = Field(..., min_length=1)
    timeout_seconds: float = Field(..., gt=0)
    max_retries: int = Field(..., ge=0)
    temperature: float = Field(0.0, ge=0.0, le=2.0)
    max_output_tokens: int = Field(..., ge=1)
    prompt_version: str = Field(..., min_length=1)
    backoff_initial_seconds: float = Field(..., gt=0)
    backoff_max_seconds: float = Field(..., gt=0)
    retry_statuses: List[int] = Field(default_factory=list)


class AdjudicationConfig(_FrozenModel):
    """LLM adjudication batching and caching configuration."""

    openai_model: str = Field(..., min_length=1)
    openai_base_url: str = Field(..., min_length=1)
    openai_timeout_seconds: float = Field(..., gt=0)
    openai_prompt_version: str = Field(..., min_length=1)
    openai_max_retries: int = Field(..., ge=0)
    openai_temperature: float = Field(0.0, ge=0.0, le=2.0)
    openai_max_output_tokens: int = Field(..., ge=1)
    openai_backoff_initial_seconds: float = Field(..., gt=0)
    openai_backoff_max_seconds: float = Field(..., gt=0)
    openai_retry_statuses: List[int] = Field(default_factory=list)
    batch_size: int = Field(20, ge=1)
    max_concurrency: int = Field(4, ge=1)
    cache_dir: str = Field(..., min_length=1)
    decision_cache_filename: str = Field(..., min_length=1)

    @property
    def openai(self) -> OpenAIConfig:
        """Return the OpenAI adapter configuration.

        Returns:
            OpenAIConfig: Immutable settings for the OpenAI adapter.
        """

        return OpenAIConfig(
            model=self.openai_model,
            api_base=self.openai_base_url,
            timeout_seconds=self.openai_timeout_seconds,
            max_retries=self.openai_max_retries,
            temperature=self.openai_temperature,
            max_output_tokens=self.openai_max_output_tokens,
            prompt_version=self.openai_prompt_version,
            backoff_initial_seconds=self.openai_backoff_initial_seconds,
            backoff_max_seconds=self.openai_backoff_max_seconds,
            retry_statuses=list(self.openai_retry_statuses),
        )

    @property
    def decision_cache_path(self) -> Path:
        """Return the absolute location of the adjudication decision cache."""

        base = Path(self.cache_dir)
        if not base.is_absolute():
            base = REPO_ROOT / base
        return base / self.decision_cache_filename


class AuditConfig(_FrozenModel):
    """Large-cluster audit settings."""

    size_threshold: int = Field(10, ge=2)


class RetryConfig(_FrozenModel):
    """Termination table shared by the audit and orphan retry loops."""

    audit_absolute_threshold: int = Field(500, ge=0)
    orphan_absolute_threshold: int = Field(200, ge=0)
    relative_improvement_threshold: float = Field(0.10, ge=0.0, le=1.0)
    phase_retry_cap: int = Field(5, ge=1)
    global_iteration_cap: int = Field(15, ge=1)

    @model_validator(mode="after")
    def _validate_caps(self) -> "RetryConfig":
        if self.phase_retry_cap > self.global_iteration_cap:
            msg = "retry.phase_retry_cap cannot exceed retry.global_iteration_cap"
            raise ValueError(msg)
        return self


class EntailmentConfig(_FrozenModel):
    """Phase 4 cross-cluster overlap detection."""

    enabled: bool = True
    similarity_threshold: float = Field(0.85, ge=0.0, le=1.0)


class ClassificationConfig(_FrozenModel):
    """Keyword rules for the location question classifier."""

    location_keywords: Dict[str, List[str]] = Field(default_factory=dict)
    default_language: str = Field("en", min_length=2)


class CapacityConfig(_FrozenModel):
    """Cost ceiling for a single clustering run."""

    max_adjudications_per_run: int = Field(..., ge=1)


class StorageConfig(_FrozenModel):
    """Relational storage for clusters, exclusions and orphans."""

    database_url: str = Field(..., min_length=1)
    commit_batch_size: int = Field(1000, ge=1)
    lock_ttl_seconds: float = Field(3600.0, gt=0)


class CacheConfig(_FrozenModel):
    """Expansion index (redis) settings."""

    redis_url: str = Field(..., min_length=1)
    key_prefix: str = Field("answerlink", min_length=1)
    socket_timeout_seconds: float = Field(0.5, gt=0)
    write_batch_size: int = Field(1000, ge=1)


class ReportsConfig(_FrozenModel):
    """Audit artifact output location."""

    dir: str = Field(..., min_length=1)

    @property
    def path(self) -> Path:
        """Return the absolute report directory."""

        base = Path(self.dir)
        if not base.is_absolute():
            base = REPO_ROOT / base
        return base


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    pipeline: PipelineConfig
    normalization: NormalizationConfig
    guards: GuardsConfig
    candidates: CandidatesConfig
    embeddings: EmbeddingsConfig
    adjudication: AdjudicationConfig
    audit: AuditConfig
    retry: RetryConfig
    entailment: EntailmentConfig
    classification: ClassificationConfig
    capacity: CapacityConfig
    storage: StorageConfig
    cache: CacheConfig
    reports: ReportsConfig

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"


def _determine_env_file_path() -> Optional[Path]:
    """Return the path to the environment file if one should be loaded."""

    override = os.getenv("ANSWERLINK_ENV_FILE")
    if override:
        candidate = Path(override).expanduser()
        if candidate.exists():
            return candidate
        LOGGER.warning("Configured environment file override does not exist: %s", candidate)
        return None
    if DEFAULT_ENV_FILE.exists():
        return DEFAULT_ENV_FILE
    return None


def _strip_inline_comment(value: str) -> str:
    """Remove inline comments from an environment value when unquoted."""

    comment_index = value.find("#")
    if comment_index == -1:
        return value
    return value[:comment_index].rstrip()


def _parse_env_line(raw_line: str) -> Optional[Tuple[str, str]]:
    line = raw_line.strip()
    if line.lower().startswith("export "):
        line = line[7:].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    key, raw_value = (part.strip() for part in line.split("=", 1))
    if not key:
        return None
    if len(raw_value) >= 2 and raw_value[0] in {'"', "'"} and raw_value[-1] == raw_value[0]:
        return key, raw_value[1:-1]
    return key, _strip_inline_comment(raw_value) if raw_value else ""


def _load_env_file(path: Path) -> None:
    """Load answerlink credentials and URL overrides from a ``.env`` file.

    Variables already set to a non-blank value in the process environment take
    precedence over the file.
    """

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)
        return
    for raw_line in lines:
        parsed = _parse_env_line(raw_line)
        if parsed is None:
            continue
        key, value = parsed
        if os.environ.get(key, "").strip():
            continue
        os.environ[key] = value


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment-based overrides into the raw configuration mapping.

    Args:
        raw_content: Parsed YAML configuration prior to Pydantic validation.

    Returns:
        Dict[str, Any]: Configuration mapping with environment overrides applied.
    """

    env_file_path = _determine_env_file_path()
    if env_file_path is not None:
        _load_env_file(env_file_path)

    database_url = os.getenv(DATABASE_URL_ENV_VAR, "").strip()
    if database_url:
        raw_content.setdefault("storage", {})["database_url"] = database_url
        LOGGER.info("Storage database URL overridden from %s", DATABASE_URL_ENV_VAR)
    redis_url = os.getenv(REDIS_URL_ENV_VAR, "").strip()
    if redis_url:
        raw_content.setdefault("cache", {})["redis_url"] = redis_url
        LOGGER.info("Expansion cache URL overridden from %s", REDIS_URL_ENV_VAR)
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Parse the answerlink settings file into a plain mapping.

    Raises:
        ConfigError: If the file cannot be read as a YAML mapping of sections.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigError(f"Invalid YAML syntax in {path}") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigError(f"Configuration root of {path} must be a mapping of sections")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    raw_content = _apply_environment_overrides(raw_content)
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigError("Configuration validation failed") from exc
