# tests/test_config_validators.py

import config
import pytest
from config import FolioSettings


def test_placeholder_api_key_warns(monkeypatch):
    warnings: list[str] = []

    def fake_warning(msg: str, **_kw: object) -> None:
        warnings.append(msg)

    monkeypatch.setattr(config.logger, "warning", fake_warning)
    FolioSettings(OPENAI_API_KEY="nope")
    assert any("OPENAI_API_KEY" in msg for msg in warnings)


def test_real_api_key_does_not_warn(monkeypatch):
    warnings: list[str] = []
    monkeypatch.setattr(config.logger, "warning", lambda msg, **_kw: warnings.append(msg))
    FolioSettings(OPENAI_API_KEY="sk-real")
    assert warnings == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"REFINEMENT_QUALITY_THRESHOLD": 120},
        {"REFINEMENT_MAX_ITERATIONS": 0},
        {"TARGETED_EDIT_LENGTH_RATIO": (1.2, 0.8)},
        {"QUEUE_MIN_DELAY_SECONDS": 20.0, "QUEUE_MAX_DELAY_SECONDS": 1.0},
        {"LLM_RETRY_ATTEMPTS": 0},
    ],
)
def test_invalid_policy_rejected(overrides):
    with pytest.raises(ValueError):
        FolioSettings(OPENAI_API_KEY="valid", **overrides)


def test_refinement_defaults():
    s = FolioSettings(OPENAI_API_KEY="valid")
    assert s.REFINEMENT_MAX_ITERATIONS == 2
    assert s.REFINEMENT_QUALITY_THRESHOLD == 70
    assert s.REFINEMENT_LOW_CONFIDENCE_THRESHOLD == 60
    assert s.REFINEMENT_DEFAULT_QUALITY_SCORE == 75
    assert s.MIN_CHAPTERS == 3


def test_params_for_falls_back_to_editing():
    s = FolioSettings(OPENAI_API_KEY="valid", GENERATION_PARAMS={})
    assert s.params_for("chapter").temperature == 0.8
    assert s.params_for("unknown-kind") == s.params_for("editing")
