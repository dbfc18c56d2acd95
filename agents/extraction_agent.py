# agents/extraction_agent.py
"""Extracts characters, world name and motifs from the approved outline."""

from __future__ import annotations

import structlog
from prompt_renderer import render_prompt

from core.generative_client import GenerativeClient, generative_client
from models import (
    CharacterExtraction,
    CharacterProfile,
    MotifExtraction,
    WorldNameExtraction,
)

logger = structlog.get_logger(__name__)

EXTRACTION_SYSTEM_PROMPT = (
    "You extract structured facts from story outlines and respond with JSON only."
)


class ExtractionAgent:
    """Each method is one independent structured call; failures propagate."""

    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or generative_client

    async def extract_characters(self, outline: str) -> dict[str, CharacterProfile]:
        prompt = render_prompt("extraction_agent/characters.j2", {"outline": outline})
        result = await self.client.generate_structured(
            prompt,
            CharacterExtraction,
            kind="extraction",
            system_instruction=EXTRACTION_SYSTEM_PROMPT,
        )
        characters = {c.name.strip(): c for c in result.characters if c.name.strip()}
        logger.info(f"Extracted {len(characters)} characters from outline.")
        return characters

    async def extract_world_name(self, outline: str) -> str:
        prompt = render_prompt("extraction_agent/world_name.j2", {"outline": outline})
        result = await self.client.generate_structured(
            prompt,
            WorldNameExtraction,
            kind="extraction",
            system_instruction=EXTRACTION_SYSTEM_PROMPT,
        )
        return result.world_name.strip()

    async def extract_motifs(self, outline: str) -> list[str]:
        prompt = render_prompt("extraction_agent/motifs.j2", {"outline": outline})
        result = await self.client.generate_structured(
            prompt,
            MotifExtraction,
            kind="extraction",
            system_instruction=EXTRACTION_SYSTEM_PROMPT,
        )
        return result.motifs
