from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

import structlog

from models import ChapterStage, GenerationPhase
from orchestration.chapter_flow import run_chapter_pipeline

if TYPE_CHECKING:  # pragma: no cover - type hints
    from .book_orchestrator import BookOrchestrator

logger = structlog.get_logger(__name__)


class RunnerState(Enum):
    """States for the chapter generation runner."""

    INIT = auto()
    GENERATE_CHAPTER = auto()
    HANDLE_ERROR = auto()
    FINISH = auto()


@dataclass
class ChapterGenerationRunner:
    """Generate the planned chapters strictly in order using a state machine."""

    orchestrator: BookOrchestrator
    chapters_written: int = 0
    state: RunnerState = RunnerState.INIT
    current_chapter_number: int = 0
    error: Exception | None = None

    async def run(self) -> None:
        """Execute the chapter generation loop; re-raise the first failure."""
        while self.state != RunnerState.FINISH:
            if self.state == RunnerState.INIT:
                await self._init()
            elif self.state == RunnerState.GENERATE_CHAPTER:
                await self._generate_chapter()
            elif self.state == RunnerState.HANDLE_ERROR:
                await self._handle_error()
        if self.error is not None:
            raise self.error

    async def _init(self) -> None:
        self.orchestrator._ensure_chapters()
        session = self.orchestrator._session
        assert session is not None
        done = len(session.completed_chapters())
        logger.info(
            f"Chapter generation: {done}/{len(session.chapters)} chapters already complete."
        )
        self.state = RunnerState.GENERATE_CHAPTER

    async def _generate_chapter(self) -> None:
        session = self.orchestrator._session
        assert session is not None
        # Lowest unfinished chapter first; each one builds on its predecessors.
        pending = sorted(
            (c for c in session.chapters if c.stage is not ChapterStage.COMPLETE),
            key=lambda c: c.index,
        )
        if not pending:
            self.state = RunnerState.FINISH
            return

        chapter = pending[0]
        self.current_chapter_number = chapter.index
        self.orchestrator._emit_phase(
            GenerationPhase.UNIT_GENERATION,
            unit_index=chapter.index,
            message=f"Generating chapter {chapter.index} of {len(session.chapters)}",
        )
        try:
            await run_chapter_pipeline(self.orchestrator, chapter.index)
        except Exception as exc:
            self.error = exc
            self.state = RunnerState.HANDLE_ERROR
            return
        self.chapters_written += 1

    async def _handle_error(self) -> None:
        logger.error(
            f"Chapter {self.current_chapter_number} failed after "
            f"{self.chapters_written} chapter(s) written this run: {self.error}"
        )
        self.state = RunnerState.FINISH
