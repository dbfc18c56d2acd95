# agents/planner_agent.py
import json
import re
from typing import Any

import structlog
from prompt_renderer import render_prompt, story_context
from pydantic import ValidationError

from core.errors import ResponseValidationError
from core.generative_client import GenerativeClient, generative_client
from core.request_queue import RequestPriority
from models import ChapterPlan, GenerationSession

logger = structlog.get_logger(__name__)

CHAPTER_PLAN_KEY_MAP = {
    "title": "title",
    "chapter_title": "title",
    "summary": "summary",
    "scenebreakdown": "scene_breakdown",
    "scene_breakdown": "scene_breakdown",
    "scenes": "scene_breakdown",
    "characterdevelopmentfocus": "character_development_focus",
    "character_development_focus": "character_development_focus",
    "plotadvancement": "plot_advancement",
    "plot_advancement": "plot_advancement",
    "timelineindicators": "timeline_indicators",
    "timeline_indicators": "timeline_indicators",
    "emotionaltonetension": "emotional_tone_tension",
    "emotional_tone_tension": "emotional_tone_tension",
    "connectiontonextchapter": "connection_to_next_chapter",
    "connection_to_next_chapter": "connection_to_next_chapter",
    "conflicttype": "conflict_type",
    "conflict_type": "conflict_type",
    "tensionlevel": "tension_level",
    "tension_level": "tension_level",
    "rhythmpacing": "rhythm_pacing",
    "rhythm_pacing": "rhythm_pacing",
    "wordeconomyfocus": "word_economy_focus",
    "word_economy_focus": "word_economy_focus",
    "moraldilemma": "moral_dilemma",
    "moral_dilemma": "moral_dilemma",
    "charactercomplexity": "character_complexity",
    "character_complexity": "character_complexity",
    "consequencesofchoices": "consequences_of_choices",
    "consequences_of_choices": "consequences_of_choices",
}

PLAN_SYSTEM_PROMPT = (
    "You are a meticulous story planner. You respond with JSON only, "
    "following the requested schema exactly."
)


class PlannerAgent:
    """LLM-powered chapter planner for the approved outline."""

    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or generative_client

    def _parse_llm_chapter_plan_output(
        self, json_text: str, chapter_count: int
    ) -> list[ChapterPlan]:
        """
        Parses JSON chapter plan output from LLM.
        Accepts ``{"chapters": [...]}`` or a bare JSON array of plan objects.
        Raises ResponseValidationError when fewer than ``chapter_count``
        usable entries are found.
        """
        if not json_text or not json_text.strip():
            raise ResponseValidationError("Chapter plan response is empty.", json_text)

        try:
            parsed_data: Any = json.loads(json_text)
        except json.JSONDecodeError as e:
            logger.error(
                f"Failed to decode JSON chapter plan: {e}. Text: {json_text[:500]}..."
            )
            match = re.search(r"\[\s*\{.*\}\s*\]", json_text, re.DOTALL)
            if not match:
                raise ResponseValidationError(
                    f"Chapter plan is not valid JSON: {e}", json_text
                ) from e
            logger.info(
                "Found a JSON array within the malformed JSON string. Attempting to parse that."
            )
            try:
                parsed_data = json.loads(match.group(0))
            except json.JSONDecodeError as inner:
                raise ResponseValidationError(
                    f"Extracted chapter plan array is not valid JSON: {inner}",
                    json_text,
                ) from inner

        if isinstance(parsed_data, dict):
            parsed_data = parsed_data.get("chapters")
        if not isinstance(parsed_data, list):
            raise ResponseValidationError(
                f"Chapter plan is not a list as expected. Type: {type(parsed_data)}",
                json_text,
            )

        plans: list[ChapterPlan] = []
        for i, plan_item in enumerate(parsed_data):
            if not isinstance(plan_item, dict):
                logger.warning(
                    f"Plan item {i + 1} is not a dictionary. Skipping. Item: {str(plan_item)[:100]}"
                )
                continue
            processed: dict[str, Any] = {}
            for llm_key, value in plan_item.items():
                normalized = str(llm_key).strip().lower().replace(" ", "_")
                internal_key = CHAPTER_PLAN_KEY_MAP.get(
                    normalized, CHAPTER_PLAN_KEY_MAP.get(normalized.replace("_", ""))
                )
                if internal_key:
                    processed[internal_key] = value
            try:
                plans.append(ChapterPlan.model_validate(processed))
            except ValidationError as e:
                logger.warning(
                    f"Plan item {i + 1} is missing a title or summary. Skipping. ({e.error_count()} error(s))"
                )

        if len(plans) < chapter_count:
            raise ResponseValidationError(
                f"Chapter plan has {len(plans)} usable entries, expected {chapter_count}.",
                json_text,
            )
        if len(plans) > chapter_count:
            logger.info(
                f"Chapter plan returned {len(plans)} entries; keeping the first {chapter_count}."
            )
        return plans[:chapter_count]

    async def plan_chapters(self, session: GenerationSession) -> list[ChapterPlan]:
        context = story_context(session)
        context.update(
            {
                "outline": session.outline or "",
                "character_names": sorted(session.characters),
                "world_name": session.world_name,
                "motifs": session.motifs,
            }
        )
        prompt = render_prompt("planner_agent/chapter_plan.j2", context)
        raw = await self.client.generate(
            prompt,
            kind="outline",
            system_instruction=PLAN_SYSTEM_PROMPT,
            priority=RequestPriority.HIGH,
        )
        plans = self._parse_llm_chapter_plan_output(raw, session.chapter_count)
        logger.info(f"Chapter plan parsed with {len(plans)} chapters.")
        return plans
