# models/book_models.py
"""Persistent state of a book generation session."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from .agent_models import (
    AgentBaseModel,
    ChapterAnalysis,
    CharacterProfile,
    RefinementStrategy,
    coerce_str_list,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GenerationPhase(str, Enum):
    IDLE = "Idle"
    OUTLINE_GENERATION = "OutlineGeneration"
    AWAITING_OUTLINE_APPROVAL = "AwaitingOutlineApproval"
    CONTEXT_EXTRACTION = "ContextExtraction"
    PLAN_GENERATION = "PlanGeneration"
    UNIT_GENERATION = "UnitGeneration"
    CONSOLIDATION_PASS = "ConsolidationPass"
    POLISH_PASS = "PolishPass"
    TRANSITION_PASS = "TransitionPass"
    COMPILATION = "Compilation"
    COMPLETE = "Complete"
    FAILED = "Failed"


PHASE_ORDER: tuple[GenerationPhase, ...] = (
    GenerationPhase.IDLE,
    GenerationPhase.OUTLINE_GENERATION,
    GenerationPhase.AWAITING_OUTLINE_APPROVAL,
    GenerationPhase.CONTEXT_EXTRACTION,
    GenerationPhase.PLAN_GENERATION,
    GenerationPhase.UNIT_GENERATION,
    GenerationPhase.CONSOLIDATION_PASS,
    GenerationPhase.POLISH_PASS,
    GenerationPhase.TRANSITION_PASS,
    GenerationPhase.COMPILATION,
    GenerationPhase.COMPLETE,
)

TERMINAL_PHASES = frozenset({GenerationPhase.COMPLETE, GenerationPhase.FAILED})


def is_valid_transition(current: GenerationPhase, target: GenerationPhase) -> bool:
    """Forward moves along ``PHASE_ORDER``, failure, or outline regeneration."""
    if current in TERMINAL_PHASES:
        return False
    if target is GenerationPhase.FAILED:
        return True
    if (
        current is GenerationPhase.AWAITING_OUTLINE_APPROVAL
        and target is GenerationPhase.OUTLINE_GENERATION
    ):
        return True
    return PHASE_ORDER.index(target) > PHASE_ORDER.index(current)


class ChapterStage(str, Enum):
    NOT_STARTED = "NotStarted"
    DRAFTING = "Drafting"
    REFINING = "Refining"
    CONSISTENCY_CHECKED = "ConsistencyChecked"
    COMPLETE = "Complete"


class ChapterPlan(AgentBaseModel):
    """Plan for a single chapter, produced during plan generation."""

    title: str = Field(min_length=1)
    summary: str = Field(min_length=1)
    scene_breakdown: str = ""
    character_development_focus: str = ""
    plot_advancement: str = ""
    timeline_indicators: str = ""
    emotional_tone_tension: str = ""
    connection_to_next_chapter: str = ""
    conflict_type: str | None = None
    tension_level: int | None = None
    rhythm_pacing: str | None = None
    word_economy_focus: str | None = None
    moral_dilemma: str | None = None
    character_complexity: str | None = None
    consequences_of_choices: str | None = None

    @field_validator(
        "scene_breakdown",
        "character_development_focus",
        "plot_advancement",
        "timeline_indicators",
        "emotional_tone_tension",
        "connection_to_next_chapter",
        mode="before",
    )
    @classmethod
    def _flatten_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, list):
            return "\n".join(coerce_str_list(value))
        return value if isinstance(value, str) else str(value)

    @field_validator("tension_level", mode="before")
    @classmethod
    def _lenient_tension(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None

    def as_prompt_text(self) -> str:
        """Readable plan text for prompts."""
        lines = [f"Title: {self.title}", f"Summary: {self.summary}"]
        for label, value in (
            ("Scene Breakdown", self.scene_breakdown),
            ("Character Development", self.character_development_focus),
            ("Plot Advancement", self.plot_advancement),
            ("Timeline", self.timeline_indicators),
            ("Emotional Tone", self.emotional_tone_tension),
            ("Connection to Next Chapter", self.connection_to_next_chapter),
            ("Conflict Type", self.conflict_type),
            ("Tension Level", self.tension_level),
            ("Pacing", self.rhythm_pacing),
            ("Word Economy", self.word_economy_focus),
            ("Moral Dilemma", self.moral_dilemma),
            ("Character Complexity", self.character_complexity),
            ("Consequences", self.consequences_of_choices),
        ):
            if value not in (None, ""):
                lines.append(f"{label}: {value}")
        return "\n".join(lines)


class RefinementIteration(AgentBaseModel):
    """One decide/execute/evaluate cycle recorded on a chapter."""

    iteration: int
    strategy: RefinementStrategy
    confidence: float
    quality_score: float | None = None
    accepted: bool = False
    changes_applied: list[str] = Field(default_factory=list)
    remaining_issues: list[str] = Field(default_factory=list)
    note: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class Chapter(AgentBaseModel):
    """A single generated chapter (the unit of generation)."""

    index: int = Field(ge=1)
    title: str = ""
    content: str = ""
    plan: ChapterPlan
    stage: ChapterStage = ChapterStage.NOT_STARTED
    analysis: ChapterAnalysis | None = None
    critique: str | None = None
    refinement_history: list[RefinementIteration] = Field(default_factory=list)
    consistency_warnings: list[str] = Field(default_factory=list)
    passes_applied: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.stage is ChapterStage.COMPLETE


class SessionError(AgentBaseModel):
    phase: GenerationPhase
    message: str
    error_type: str = "Exception"
    timestamp: datetime = Field(default_factory=utc_now)


class StorySettings(AgentBaseModel):
    """Optional author preferences fed to the prompts."""

    genre: str | None = None
    narrative_voice: str | None = None
    tone: str | None = None
    target_audience: str | None = None
    writing_style: str | None = None


class BookArtifact(AgentBaseModel):
    title: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class GenerationSession(AgentBaseModel):
    """The whole persisted state of one book generation."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    premise: str
    chapter_count: int = Field(ge=1)
    current_phase: GenerationPhase = GenerationPhase.IDLE
    story_settings: StorySettings = Field(default_factory=StorySettings)
    outline: str | None = None
    plan: list[ChapterPlan] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)
    characters: dict[str, CharacterProfile] = Field(default_factory=dict)
    world_name: str | None = None
    motifs: list[str] = Field(default_factory=list)
    chapter_summaries: dict[int, str] = Field(default_factory=dict)
    book_title: str | None = None
    book: BookArtifact | None = None
    error: SessionError | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def completed_chapters(self) -> list[Chapter]:
        return [c for c in self.chapters if c.is_complete]

    def chapter(self, index: int) -> Chapter | None:
        for chapter in self.chapters:
            if chapter.index == index:
                return chapter
        return None

    def touch(self) -> None:
        self.updated_at = utc_now()
