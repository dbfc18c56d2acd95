import pytest
from processing.decision_heuristics import (
    fallback_decision,
    length_ratio,
    length_ratio_ok,
)

from models import RefinementDecision, RefinementStrategy


@pytest.mark.parametrize(
    "critique,strategy,confidence",
    [
        ("", RefinementStrategy.SKIP, 90),
        (None, RefinementStrategy.SKIP, 90),
        ("Overall: CHAPTER IS STRONG", RefinementStrategy.SKIP, 90),
        ("The villain is flat and archetypal", RefinementStrategy.REGENERATE, 75),
        ("Too many adverbs and a mixed metaphor", RefinementStrategy.TARGETED_EDIT, 70),
        ("Pacing drags a little", RefinementStrategy.LIGHT_POLISH, 65),
    ],
)
def test_fallback_decision(critique, strategy, confidence):
    decision = fallback_decision(critique)
    assert decision.strategy is strategy
    assert decision.confidence == confidence


def test_length_ratio_guard():
    assert length_ratio("abcd", "ab") == 0.5
    assert length_ratio_ok("a" * 10, "b" * 10, (0.8, 1.2))
    assert not length_ratio_ok("a" * 10, "b" * 13, (0.8, 1.2))
    assert not length_ratio_ok("a" * 10, "   ", (0.0, 5.0))


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Targeted_Edit", RefinementStrategy.TARGETED_EDIT),
        ("light polish", RefinementStrategy.LIGHT_POLISH),
        ("polish", RefinementStrategy.LIGHT_POLISH),
        ("REGENERATE", RefinementStrategy.REGENERATE),
    ],
)
def test_decision_strategy_normalization(raw, expected):
    decision = RefinementDecision.model_validate({"strategy": raw, "confidence": 50})
    assert decision.strategy is expected


def test_decision_confidence_out_of_range():
    with pytest.raises(ValueError):
        RefinementDecision.model_validate({"strategy": "skip", "confidence": 150})
