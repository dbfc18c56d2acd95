# agents/drafting_agent.py
"""Chapter drafting, analysis and self-critique."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from config import settings
from prompt_renderer import render_prompt, story_context

from core.errors import BestEffortCheckFailure, ResponseValidationError, ServiceError
from core.generative_client import GenerativeClient, generative_client
from core.request_queue import RequestPriority
from models import Chapter, ChapterAnalysis, ChapterPlan, GenerationSession

logger = structlog.get_logger(__name__)

WRITER_SYSTEM_PROMPT = (
    "You are a celebrated novelist, known for rich prose, compelling characters "
    "and intricate plots. Adhere strictly to the provided chapter plan and stay "
    "consistent with the outline, character profiles, world details, motifs and "
    "previous chapter summaries."
)
ANALYST_SYSTEM_PROMPT = "You are a literary analyst. Respond with JSON only."
CRITIC_SYSTEM_PROMPT = "You are a demanding but fair fiction editor."


def previous_summaries_text(session: GenerationSession, before_index: int) -> str:
    lines = [
        f"Chapter {index}: {summary}"
        for index, summary in sorted(session.chapter_summaries.items())
        if index < before_index
    ]
    return "\n".join(lines)


class DraftingAgent:
    """Writes the first draft of a chapter and reports on it."""

    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or generative_client

    async def draft_chapter(
        self,
        session: GenerationSession,
        plan: ChapterPlan,
        chapter_number: int,
        on_chunk: Callable[[str], None],
        on_restart: Callable[[], None] | None = None,
    ) -> str:
        previous = session.chapter(chapter_number - 1)
        previous_tail = ""
        if previous is not None and previous.content:
            previous_tail = previous.content[-settings.PREVIOUS_CHAPTER_CONTEXT_CHARS :]

        context = story_context(session)
        context.update(
            {
                "outline": session.outline or "",
                "characters": session.characters,
                "world_name": session.world_name,
                "motifs": session.motifs,
                "previous_chapter_tail": previous_tail,
                "previous_summaries": previous_summaries_text(session, chapter_number),
                "chapter_number": chapter_number,
                "chapter_title": plan.title,
                "chapter_plan": plan.as_prompt_text(),
            }
        )
        prompt = render_prompt("drafting_agent/draft_chapter.j2", context)
        logger.info(f"Drafting Chapter {chapter_number}: '{plan.title}'")
        text = await self.client.stream(
            prompt,
            on_chunk,
            kind="chapter",
            system_instruction=WRITER_SYSTEM_PROMPT,
            priority=RequestPriority.HIGH,
            on_restart=on_restart,
        )
        if not text.strip():
            raise ResponseValidationError(
                f"Draft for Chapter {chapter_number} came back empty.", text
            )
        return text

    async def analyze_chapter(self, chapter: Chapter) -> ChapterAnalysis:
        """Structured analysis; a missing summary is a validation error."""
        prompt = render_prompt(
            "drafting_agent/analysis.j2",
            {"chapter_number": chapter.index, "chapter_text": chapter.content},
        )
        return await self.client.generate_structured(
            prompt,
            ChapterAnalysis,
            kind="analysis",
            system_instruction=ANALYST_SYSTEM_PROMPT,
        )

    async def critique_chapter(self, chapter: Chapter) -> str:
        """Free-text critique feeding the refinement loop. Best effort."""
        prompt = render_prompt(
            "drafting_agent/critique.j2",
            {
                "chapter_number": chapter.index,
                "chapter_plan": chapter.plan.as_prompt_text(),
                "chapter_text": chapter.content,
            },
        )
        try:
            return await self.client.generate(
                prompt,
                kind="critique",
                system_instruction=CRITIC_SYSTEM_PROMPT,
                priority=RequestPriority.LOW,
            )
        except (ServiceError, ResponseValidationError) as exc:
            raise BestEffortCheckFailure(
                f"Critique for Chapter {chapter.index} failed: {exc}"
            ) from exc
