# processing/decision_heuristics.py
"""Keyword based refinement decisions used when the model cannot decide."""

from __future__ import annotations

from models import RefinementDecision, RefinementPriority, RefinementStrategy

STRONG_CHAPTER_MARKER = "CHAPTER IS STRONG"

STRUCTURAL_KEYWORDS = ("moral simplicity", "flat", "archetypal")
LANGUAGE_KEYWORDS = ("metaphor", "adjective", "adverb")


def fallback_decision(critique: str | None) -> RefinementDecision:
    """Classify ``critique`` into a decision. Total: never raises."""
    text = critique if isinstance(critique, str) else ""
    if not text.strip() or STRONG_CHAPTER_MARKER in text:
        return RefinementDecision(
            strategy=RefinementStrategy.SKIP,
            reasoning="No issues identified or chapter marked as strong",
            priority=RefinementPriority.LOW,
            estimated_changes="0%",
            confidence=90,
        )

    lowered = text.lower()
    if any(keyword in lowered for keyword in STRUCTURAL_KEYWORDS):
        return RefinementDecision(
            strategy=RefinementStrategy.REGENERATE,
            reasoning="Serious structural issues detected",
            priority=RefinementPriority.HIGH,
            estimated_changes="40-60%",
            confidence=75,
        )
    if any(keyword in lowered for keyword in LANGUAGE_KEYWORDS):
        return RefinementDecision(
            strategy=RefinementStrategy.TARGETED_EDIT,
            reasoning="Language-level issues detected",
            priority=RefinementPriority.MEDIUM,
            estimated_changes="10-20%",
            confidence=70,
        )
    return RefinementDecision(
        strategy=RefinementStrategy.LIGHT_POLISH,
        reasoning="Minor improvements needed",
        priority=RefinementPriority.LOW,
        estimated_changes="5-10%",
        confidence=65,
    )


def length_ratio(original: str, revised: str) -> float:
    if not original:
        return float("inf") if revised else 1.0
    return len(revised) / len(original)


def length_ratio_ok(original: str, revised: str, band: tuple[float, float]) -> bool:
    """True when ``revised`` is non-empty and its length ratio lies within ``band``."""
    if not revised or not revised.strip():
        return False
    low, high = band
    return low <= length_ratio(original, revised) <= high
