# models/event_models.py
"""Progress events and service status shared with observers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from core.errors import ErrorClass

from .book_models import GenerationPhase, utc_now


class EventKind(str, Enum):
    PHASE = "phase"
    DECISION = "decision"
    EXECUTION = "execution"
    EVALUATION = "evaluation"
    ITERATION = "iteration"
    WARNING = "warning"
    SUCCESS = "success"
    DIFF = "diff"
    CHUNK = "chunk"
    ERROR = "error"
    INFO = "info"


class ProgressEvent(BaseModel):
    kind: EventKind
    message: str = ""
    phase: GenerationPhase | None = None
    unit_index: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ResilienceStatus(BaseModel):
    """Availability of the generative service as seen by this process."""

    is_available: bool = True
    retry_count: int = 0
    last_error: str | None = None
    error_class: ErrorClass | None = None
    estimated_recovery_time: datetime | None = None
    last_success_time: datetime | None = None
