# models/agent_models.py
"""Structured responses exchanged with the LLM-backed agents."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel


class AgentBaseModel(BaseModel):
    """Base model supporting mapping style access.

    Fields accept either their snake_case name or the camelCase key that the
    prompts ask the model to emit.
    """

    model_config = ConfigDict(
        from_attributes=True,
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def __getitem__(self, item: str) -> Any:  # pragma: no cover - convenience
        return getattr(self, item)

    def __setitem__(
        self, key: str, value: Any
    ) -> None:  # pragma: no cover - convenience
        setattr(self, key, value)

    def get(
        self, item: str, default: Any = None
    ) -> Any:  # pragma: no cover - convenience
        return getattr(self, item, default)


def coerce_str_list(value: Any) -> list[str]:
    """Turn a comma separated string or scalar into a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


class RefinementStrategy(str, Enum):
    TARGETED_EDIT = "targeted-edit"
    REGENERATE = "regenerate"
    LIGHT_POLISH = "light-polish"
    SKIP = "skip"


class RefinementPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_STRATEGY_SYNONYMS = {"polish": "light-polish", "edit": "targeted-edit"}


class RefinementDecision(AgentBaseModel):
    """Which revision strategy to apply to a chapter, and how sure we are."""

    model_config = ConfigDict(
        extra="ignore", alias_generator=to_camel, populate_by_name=True
    )

    strategy: RefinementStrategy
    reasoning: str = ""
    priority: RefinementPriority = RefinementPriority.MEDIUM
    confidence: float = Field(ge=0, le=100)
    estimated_changes: str | None = None

    @field_validator("strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().lower().replace("_", "-").replace(" ", "-")
            return _STRATEGY_SYNONYMS.get(key, key)
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("estimated_changes", mode="before")
    @classmethod
    def _stringify_changes(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class QualityEvaluation(AgentBaseModel):
    """Post-revision quality assessment."""

    quality_score: float = Field(ge=0, le=100)
    changes_applied: list[str] = Field(default_factory=list)
    plan_elements_present: list[str] = Field(default_factory=list)
    remaining_issues: list[str] = Field(default_factory=list)

    @field_validator(
        "changes_applied", "plan_elements_present", "remaining_issues", mode="before"
    )
    @classmethod
    def _as_list(cls, value: Any) -> list[str]:
        if isinstance(value, bool):
            return []
        return coerce_str_list(value)


class ChapterAnalysis(AgentBaseModel):
    """Summary, timeline and emotional arc extracted from a drafted chapter."""

    summary: str = Field(min_length=1)
    time_elapsed: str = ""
    end_time_of_chapter: str = ""
    specific_markers: str = ""
    primary_emotion: str = ""
    tension_level: int | str | None = None
    unresolved_hook: str = ""
    pacing_score: float | None = None
    dialogue_ratio: float | None = None
    word_count: int | None = None
    key_events: list[str] = Field(default_factory=list)
    character_moments: list[str] = Field(default_factory=list)
    foreshadowing: list[str] = Field(default_factory=list)

    @field_validator("summary")
    @classmethod
    def _summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("summary must not be blank")
        return value.strip()

    @field_validator(
        "time_elapsed",
        "end_time_of_chapter",
        "specific_markers",
        "primary_emotion",
        "unresolved_hook",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else str(value)

    @field_validator("pacing_score", "dialogue_ratio", "word_count", mode="before")
    @classmethod
    def _lenient_number(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or isinstance(value, bool):
            return None
        if not isinstance(value, (int, float)):
            match = re.search(r"-?\d+(?:\.\d+)?", str(value))
            if not match:
                return None
            value = float(match.group(0))
        return int(value) if info.field_name == "word_count" else value

    @field_validator("key_events", "character_moments", "foreshadowing", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> list[str]:
        return coerce_str_list(value)


class CharacterProfile(AgentBaseModel):
    """A character tracked across the whole book."""

    name: str
    description: str = ""
    status: str = "alive"
    location: str = ""
    emotional_state: str = ""
    relationships: dict[str, str] = Field(default_factory=dict)
    development: list[dict[str, Any]] = Field(default_factory=list)


class CharacterExtraction(AgentBaseModel):
    characters: list[CharacterProfile] = Field(min_length=1)


class WorldNameExtraction(AgentBaseModel):
    world_name: str = Field(min_length=1)


class MotifExtraction(AgentBaseModel):
    motifs: list[str] = Field(min_length=1)

    @field_validator("motifs", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> list[str]:
        return coerce_str_list(value)


class CharacterUpdate(AgentBaseModel):
    """State change for one character after a chapter."""

    name: str
    status: str | None = None
    location: str | None = None
    emotional_state: str | None = None
    development: str | None = None


class CharacterUpdates(AgentBaseModel):
    character_updates: list[CharacterUpdate] = Field(default_factory=list)
