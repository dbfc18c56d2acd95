from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from .book_orchestrator import BookOrchestrator

logger = structlog.get_logger(__name__)


async def run_chapter_pipeline(
    orchestrator: BookOrchestrator, chapter_number: int
) -> str:
    """High-level pipeline for generating a chapter.

    Drafting and analysis failures propagate; critique, consistency and
    character tracking are best effort. An interrupted chapter restarts
    from the draft.
    """
    chapter = orchestrator._chapter(chapter_number)
    logger.info(f"Chapter {chapter_number}: '{chapter.title}' starting.")

    await orchestrator._draft_chapter(chapter)
    await orchestrator._analyze_chapter(chapter)
    await orchestrator._critique_chapter(chapter)
    await orchestrator._refine_chapter(chapter)
    await orchestrator._check_consistency(chapter)
    await orchestrator._update_characters(chapter)
    await orchestrator._complete_chapter(chapter)

    return chapter.content
