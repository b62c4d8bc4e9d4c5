"""Pure safety guards applied to candidate pairs."""

from answerlink.guards.chain import (
    GuardChain,
    GuardDecision,
    date_guard,
    extract_calendar_tokens,
    extract_numbers,
    extract_unit_classes,
    numeric_guard,
    structure_guard,
    subset_guard,
)

__all__ = [
    "GuardChain",
    "GuardDecision",
    "date_guard",
    "extract_calendar_tokens",
    "extract_numbers",
    "extract_unit_classes",
    "numeric_guard",
    "structure_guard",
    "subset_guard",
]
