"""Central package for Folio data models."""

from .agent_models import (
    AgentBaseModel,
    ChapterAnalysis,
    CharacterExtraction,
    CharacterProfile,
    CharacterUpdate,
    CharacterUpdates,
    MotifExtraction,
    QualityEvaluation,
    RefinementDecision,
    RefinementPriority,
    RefinementStrategy,
    WorldNameExtraction,
)
from .book_models import (
    PHASE_ORDER,
    TERMINAL_PHASES,
    BookArtifact,
    Chapter,
    ChapterPlan,
    ChapterStage,
    GenerationPhase,
    GenerationSession,
    RefinementIteration,
    SessionError,
    StorySettings,
    is_valid_transition,
)
from .event_models import EventKind, ProgressEvent, ResilienceStatus

__all__ = [
    "AgentBaseModel",
    "ChapterAnalysis",
    "CharacterExtraction",
    "CharacterProfile",
    "CharacterUpdate",
    "CharacterUpdates",
    "MotifExtraction",
    "QualityEvaluation",
    "RefinementDecision",
    "RefinementPriority",
    "RefinementStrategy",
    "WorldNameExtraction",
    "PHASE_ORDER",
    "TERMINAL_PHASES",
    "BookArtifact",
    "Chapter",
    "ChapterPlan",
    "ChapterStage",
    "GenerationPhase",
    "GenerationSession",
    "RefinementIteration",
    "SessionError",
    "StorySettings",
    "is_valid_transition",
    "EventKind",
    "ProgressEvent",
    "ResilienceStatus",
]
