"""Error taxonomy shared by the clustering engine and the expansion reader."""
from __future__ import annotations

from answerlink.config import ConfigError


class TransientProviderError(RuntimeError):
    """Raised when a retryable LLM or network error outlives its retry budget."""


class AdjudicationError(RuntimeError):
    """Raised when the adjudication provider returns an unusable response."""


class DataIntegrityError(ValueError):
    """Raised when a record would violate a locale or cluster invariant."""


class CapacityExceededError(RuntimeError):
    """Raised when a run would exceed its adjudication budget."""

    def __init__(self, requested: int, budget: int) -> None:
        super().__init__(
            f"Adjudication budget exceeded: {requested} calls requested, budget is {budget}"
        )
        self.requested = requested
        self.budget = budget


class CacheUnavailableError(RuntimeError):
    """Raised by the expansion index when the backing store cannot be reached."""


class ColdStartError(RuntimeError):
    """Raised when an incremental run is requested before any full resync."""


class LocaleLockedError(RuntimeError):
    """Raised when another clustering run already holds the locale lock."""


class RestrictedScopeError(LookupError):
    """Raised when a strict expansion is queried outside its target questions."""


__all__ = [
    "AdjudicationError",
    "CacheUnavailableError",
    "CapacityExceededError",
    "ColdStartError",
    "ConfigError",
    "DataIntegrityError",
    "LocaleLockedError",
    "RestrictedScopeError",
    "TransientProviderError",
]
