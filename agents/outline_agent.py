# agents/outline_agent.py
"""Story outline and book title generation."""

from __future__ import annotations

import re

import structlog
from config import settings
from prompt_renderer import render_prompt, story_context

from core.errors import ResponseValidationError, ServiceError
from core.generative_client import GenerativeClient, generative_client
from core.request_queue import RequestPriority
from models import GenerationSession

logger = structlog.get_logger(__name__)

OUTLINE_SYSTEM_PROMPT = (
    "You are a master storyteller and novel architect. You design outlines "
    "with morally complex characters, layered conflict and a satisfying arc."
)
TITLE_SYSTEM_PROMPT = "You are an expert at naming novels."


def fallback_title(premise: str) -> str:
    return f"A Novel: {premise[: settings.FALLBACK_TITLE_PREMISE_CHARS]}..."


def _clean_title(raw: str) -> str:
    first_line = next((line for line in raw.splitlines() if line.strip()), "")
    title = re.sub(r"^\s*(?:\*\*)?title(?:\*\*)?\s*:\s*", "", first_line, flags=re.I)
    return title.strip().strip("*#").strip().strip("\"'").strip()


class OutlineAgent:
    """Generates the outline the user approves, and the final title."""

    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or generative_client

    async def generate_outline(self, session: GenerationSession) -> str:
        prompt = render_prompt("outline_agent/outline.j2", story_context(session))
        outline = await self.client.generate(
            prompt,
            kind="outline",
            system_instruction=OUTLINE_SYSTEM_PROMPT,
            priority=RequestPriority.HIGH,
        )
        if not outline.strip():
            raise ResponseValidationError("Outline response was empty.", outline)
        logger.info(f"Outline generated ({len(outline)} chars).")
        return outline

    async def generate_title(self, session: GenerationSession) -> str:
        """Generate a book title; falls back to one built from the premise."""
        prompt = render_prompt(
            "outline_agent/title.j2",
            {
                "premise": session.premise,
                "outline_excerpt": (session.outline or "")[:2000],
                "chapter_titles": [c.title for c in session.chapters],
            },
        )
        try:
            raw = await self.client.generate(
                prompt,
                kind="title",
                system_instruction=TITLE_SYSTEM_PROMPT,
                priority=RequestPriority.LOW,
            )
        except (ServiceError, ResponseValidationError) as exc:
            logger.warning(f"Title generation failed, using fallback: {exc}")
            return fallback_title(session.premise)
        title = _clean_title(raw)
        if not title:
            logger.warning("Title generation returned nothing, using fallback.")
            return fallback_title(session.premise)
        return title
