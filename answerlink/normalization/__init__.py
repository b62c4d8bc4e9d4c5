"""Text normalization shared by candidate generation and the safety guards."""

from answerlink.normalization.text import (
    NormalizedPair,
    ScriptClass,
    StrippedText,
    TextNormalizer,
    detect_script,
)

__all__ = [
    "NormalizedPair",
    "ScriptClass",
    "StrippedText",
    "TextNormalizer",
    "detect_script",
]
