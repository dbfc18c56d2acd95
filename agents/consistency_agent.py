# agents/consistency_agent.py
"""Best-effort continuity checks and character state tracking."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog
from config import settings
from prompt_renderer import render_prompt

from agents.drafting_agent import previous_summaries_text
from core.errors import BestEffortCheckFailure, ResponseValidationError, ServiceError
from core.generative_client import GenerativeClient, generative_client
from core.request_queue import RequestPriority
from models import Chapter, CharacterProfile, CharacterUpdates, GenerationSession

logger = structlog.get_logger(__name__)

CONSISTENCY_PASSED_MARKER = "CONSISTENCY CHECK PASSED"
CONSISTENCY_SYSTEM_PROMPT = "You are a meticulous story continuity checker."
TRACKER_SYSTEM_PROMPT = (
    "You track character state across a novel and respond with JSON only."
)


@dataclass
class ConsistencyIssue:
    severity: str
    description: str


@dataclass
class ConsistencyReport:
    passed: bool
    issues: list[ConsistencyIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_warnings(self) -> list[str]:
        return [f"{i.severity}: {i.description}" for i in self.issues] + self.warnings


def parse_consistency_response(response: str) -> ConsistencyReport:
    """Lines mentioning critical/major become issues, minor ones warnings."""
    if CONSISTENCY_PASSED_MARKER in response.upper():
        return ConsistencyReport(passed=True)
    issues: list[ConsistencyIssue] = []
    warnings: list[str] = []
    for line in response.splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if not stripped:
            continue
        if "critical" in lowered:
            issues.append(ConsistencyIssue("critical", stripped))
        elif "major" in lowered:
            issues.append(ConsistencyIssue("major", stripped))
        elif "minor" in lowered:
            warnings.append(stripped)
    return ConsistencyReport(
        passed=not any(i.severity == "critical" for i in issues),
        issues=issues,
        warnings=warnings,
    )


def validate_character_names(
    chapter_content: str, characters: dict[str, CharacterProfile]
) -> list[str]:
    """Warn when a multi-part name only ever appears as its first name."""
    warnings: list[str] = []
    for name in characters:
        parts = name.split()
        if len(parts) < 2:
            continue
        first_name = parts[0]
        first_count = len(re.findall(rf"\b{re.escape(first_name)}\b", chapter_content))
        full_count = len(re.findall(rf"\b{re.escape(name)}\b", chapter_content))
        if first_count > 0 and full_count == 0:
            warnings.append(
                f'Character "{name}" is referred to only by first name "{first_name}" '
                "in this chapter. Ensure this is intentional."
            )
    return warnings


def validate_timeline(current_end_time: str, previous_end_time: str) -> list[str]:
    if current_end_time and previous_end_time and current_end_time == previous_end_time:
        return [
            f'Chapter ends at the same time as previous chapter: "{current_end_time}". '
            "Verify this is correct."
        ]
    return []


class ConsistencyAgent:
    """Continuity checks; every failure surfaces as ``BestEffortCheckFailure``."""

    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or generative_client

    async def check_chapter(
        self, session: GenerationSession, chapter: Chapter
    ) -> ConsistencyReport:
        prompt = render_prompt(
            "consistency_agent/consistency_check.j2",
            {
                "chapter_number": chapter.index,
                "world_name": session.world_name,
                "characters": list(session.characters.values()),
                "previous_summaries": previous_summaries_text(session, chapter.index),
                "chapter_text": chapter.content[: settings.CONSISTENCY_CHECK_MAX_CHARS],
            },
        )
        try:
            response = await self.client.generate(
                prompt,
                kind="consistency",
                system_instruction=CONSISTENCY_SYSTEM_PROMPT,
                priority=RequestPriority.LOW,
            )
        except (ServiceError, ResponseValidationError) as exc:
            raise BestEffortCheckFailure(
                f"Consistency check for Chapter {chapter.index} failed: {exc}"
            ) from exc

        report = parse_consistency_response(response)
        report.warnings.extend(validate_character_names(chapter.content, session.characters))
        previous = session.chapter(chapter.index - 1)
        if previous is not None and previous.analysis and chapter.analysis:
            report.warnings.extend(
                validate_timeline(
                    chapter.analysis.end_time_of_chapter,
                    previous.analysis.end_time_of_chapter,
                )
            )
        if not report.passed:
            logger.warning(
                f"Chapter {chapter.index} has {len(report.issues)} consistency issue(s)."
            )
        return report

    async def update_character_states(
        self, session: GenerationSession, chapter: Chapter
    ) -> dict[str, CharacterProfile]:
        """Return updated copies of the characters whose state changed."""
        prompt = render_prompt(
            "consistency_agent/character_updates.j2",
            {
                "chapter_number": chapter.index,
                "character_names": sorted(session.characters),
                "chapter_text": chapter.content[: settings.CONSISTENCY_CHECK_MAX_CHARS],
            },
        )
        try:
            updates = await self.client.generate_structured(
                prompt,
                CharacterUpdates,
                kind="extraction",
                system_instruction=TRACKER_SYSTEM_PROMPT,
                priority=RequestPriority.LOW,
            )
        except (ServiceError, ResponseValidationError) as exc:
            raise BestEffortCheckFailure(
                f"Character update for Chapter {chapter.index} failed: {exc}"
            ) from exc

        changed: dict[str, CharacterProfile] = {}
        for update in updates.character_updates:
            existing = session.characters.get(update.name)
            if existing is None:
                logger.debug(f"Ignoring update for unknown character '{update.name}'.")
                continue
            fields: dict[str, object] = {}
            for attr in ("status", "location", "emotional_state"):
                value = getattr(update, attr)
                if value:
                    fields[attr] = value
            if update.development:
                fields["development"] = [
                    *existing.development,
                    {"chapter": chapter.index, "description": update.development},
                ]
            if fields:
                changed[update.name] = existing.model_copy(update=fields, deep=True)
        return changed
