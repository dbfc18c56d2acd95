# agents/finalize_agent.py
"""Whole-book passes: consolidation, polish, transitions and compilation."""

from __future__ import annotations

import structlog
from config import settings
from prompt_renderer import render_prompt

from core.errors import BestEffortCheckFailure, ResponseValidationError, ServiceError
from core.generative_client import GenerativeClient, generative_client
from core.request_queue import RequestPriority
from models import BookArtifact, Chapter, GenerationSession
from processing.decision_heuristics import length_ratio, length_ratio_ok

logger = structlog.get_logger(__name__)

FINAL_EDITOR_SYSTEM_PROMPT = (
    "You are a senior fiction editor preparing a manuscript for publication."
)


class FinalizeAgent:
    """Per-chapter rewrites for the finishing passes.

    Each method returns the new chapter content, or ``None`` when the output
    was rejected and the chapter should stay as it is. Service failures are
    raised as ``BestEffortCheckFailure``.
    """

    def __init__(self, client: GenerativeClient | None = None) -> None:
        self.client = client or generative_client

    async def _rewrite(self, prompt: str, kind: str, chapter_index: int) -> str:
        try:
            return await self.client.generate(
                prompt,
                kind=kind,
                system_instruction=FINAL_EDITOR_SYSTEM_PROMPT,
                priority=RequestPriority.MEDIUM,
            )
        except (ServiceError, ResponseValidationError) as exc:
            raise BestEffortCheckFailure(
                f"{kind} pass failed for Chapter {chapter_index}: {exc}"
            ) from exc

    async def consolidate_chapter(
        self, session: GenerationSession, chapter: Chapter
    ) -> str | None:
        summaries = "\n".join(
            f"Chapter {index}: {summary}"
            for index, summary in sorted(session.chapter_summaries.items())
        )
        prompt = render_prompt(
            "finalize_agent/consolidate.j2",
            {
                "chapter_total": len(session.chapters),
                "book_summaries": summaries,
                "chapter_number": chapter.index,
                "chapter_title": chapter.title,
                "chapter_text": chapter.content,
            },
        )
        revised = await self._rewrite(prompt, "editing", chapter.index)
        return self._guard(chapter, revised, "consolidation")

    async def polish_chapter(self, chapter: Chapter) -> str | None:
        prompt = render_prompt(
            "finalize_agent/polish.j2",
            {
                "chapter_number": chapter.index,
                "chapter_title": chapter.title,
                "chapter_text": chapter.content,
            },
        )
        revised = await self._rewrite(prompt, "light_polish", chapter.index)
        return self._guard(chapter, revised, "polish")

    def _guard(self, chapter: Chapter, revised: str, label: str) -> str | None:
        if length_ratio_ok(chapter.content, revised, settings.POLISH_LENGTH_RATIO):
            return revised.strip()
        logger.warning(
            f"Chapter {chapter.index}: {label} output discarded "
            f"(length ratio {length_ratio(chapter.content, revised):.2f})."
        )
        return None

    async def refine_transition(self, chapter: Chapter, next_chapter: Chapter) -> str | None:
        """Rewrite only the last window of ``chapter`` to lead into ``next_chapter``."""
        window = settings.TRANSITION_WINDOW_CHARS
        if not chapter.content or not next_chapter.content:
            return None
        ending = chapter.content[-window:]
        prompt = render_prompt(
            "finalize_agent/transition.j2",
            {
                "chapter_number": chapter.index,
                "next_chapter_number": next_chapter.index,
                "ending": ending,
                "next_opening": next_chapter.content[:window],
            },
        )
        refined = await self._rewrite(prompt, "transition", chapter.index)
        if not refined.strip():
            logger.warning(f"Chapter {chapter.index}: empty transition rewrite ignored.")
            return None
        head = chapter.content[: len(chapter.content) - len(ending)]
        return head + refined.strip()


def compile_book(session: GenerationSession, title: str) -> BookArtifact:
    """Concatenate the chapters under ``title`` and collect book metadata."""
    parts = [f"# {title}\n\n"]
    for chapter in session.chapters:
        parts.append(
            f"\n\n## Chapter {chapter.index}: {chapter.title}\n\n{chapter.content.strip()}\n\n"
        )
    timeline = {}
    emotional_arc = {}
    for chapter in session.chapters:
        if chapter.analysis is None:
            continue
        timeline[str(chapter.index)] = {
            "time_elapsed": chapter.analysis.time_elapsed,
            "end_time_of_chapter": chapter.analysis.end_time_of_chapter,
            "specific_markers": chapter.analysis.specific_markers,
        }
        emotional_arc[str(chapter.index)] = {
            "primary_emotion": chapter.analysis.primary_emotion,
            "tension_level": chapter.analysis.tension_level,
            "unresolved_hook": chapter.analysis.unresolved_hook,
        }
    metadata = {
        "title": title,
        "premise": session.premise,
        "world_name": session.world_name,
        "motifs": session.motifs,
        "characters": {
            name: profile.model_dump(mode="json")
            for name, profile in session.characters.items()
        },
        "chapter_summaries": {
            str(index): summary
            for index, summary in sorted(session.chapter_summaries.items())
        },
        "timeline": timeline,
        "emotional_arc": emotional_arc,
        "chapter_count": len(session.chapters),
    }
    return BookArtifact(title=title, text="".join(parts), metadata=metadata)
