# agents/editing_agent.py
"""Model-backed steps of the refinement loop: decide, execute, evaluate."""

from __future__ import annotations

import structlog
from prompt_renderer import render_prompt

from core.errors import ResponseValidationError
from core.generative_client import GenerativeClient, generative_client
from models import (
    ChapterPlan,
    QualityEvaluation,
    RefinementDecision,
    RefinementStrategy,
)

logger = structlog.get_logger(__name__)

DECISION_SYSTEM_PROMPT = (
    "You are an intelligent editing agent that makes strategic decisions "
    "about how to improve text."
)
EDITOR_SYSTEM_PROMPT = "You are a professional fiction editor."
EVALUATOR_SYSTEM_PROMPT = "You are a quality evaluator."

REGENERATE_CONTEXT_CHARS = 8000
EVALUATION_EXCERPT_CHARS = 3000

_STRATEGY_TEMPLATES = {
    RefinementStrategy.TARGETED_EDIT: ("editing_agent/targeted_edit.j2", "targeted_edit"),
    RefinementStrategy.REGENERATE: ("editing_agent/regenerate.j2", "regenerate"),
    RefinementStrategy.LIGHT_POLISH: ("editing_agent/light_polish.j2", "light_polish"),
}


class EditingAgent:
    """Implements the three calls the refinement loop drives."""

    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or generative_client

    async def decide(
        self, content: str, critique: str, plan: ChapterPlan, chapter_index: int
    ) -> RefinementDecision:
        prompt = render_prompt(
            "editing_agent/decide.j2",
            {
                "chapter_number": chapter_index,
                "critique": critique,
                "chapter_plan": plan.as_prompt_text(),
                "chapter_length": len(content),
            },
        )
        decision = await self.client.generate_structured(
            prompt,
            RefinementDecision,
            kind="decision",
            system_instruction=DECISION_SYSTEM_PROMPT,
        )
        logger.info(
            f"Ch {chapter_index}: strategy {decision.strategy.value} "
            f"(confidence {decision.confidence:.0f}) - {decision.reasoning}"
        )
        return decision

    async def execute(
        self,
        strategy: RefinementStrategy,
        content: str,
        critique: str,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> str:
        if strategy is RefinementStrategy.SKIP:
            return content
        template, kind = _STRATEGY_TEMPLATES[strategy]
        chapter_text = content
        truncated = False
        if strategy is RefinementStrategy.REGENERATE and len(content) > REGENERATE_CONTEXT_CHARS:
            chapter_text = content[:REGENERATE_CONTEXT_CHARS]
            truncated = True
        prompt = render_prompt(
            template,
            {
                "chapter_number": chapter_index,
                "critique": critique,
                "chapter_plan": plan.as_prompt_text(),
                "chapter_text": chapter_text,
                "truncated": truncated,
            },
        )
        revised = await self.client.generate(
            prompt, kind=kind, system_instruction=EDITOR_SYSTEM_PROMPT
        )
        if not revised.strip():
            raise ResponseValidationError(
                f"{strategy.value} returned no text for Chapter {chapter_index}.", revised
            )
        return revised

    async def evaluate(
        self,
        original: str,
        revised: str,
        critique: str,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> QualityEvaluation:
        prompt = render_prompt(
            "editing_agent/evaluate.j2",
            {
                "chapter_number": chapter_index,
                "critique": critique,
                "chapter_plan": plan.as_prompt_text(),
                "original_length": len(original),
                "revised_excerpt": revised[:EVALUATION_EXCERPT_CHARS],
            },
        )
        return await self.client.generate_structured(
            prompt,
            QualityEvaluation,
            kind="evaluation",
            system_instruction=EVALUATOR_SYSTEM_PROMPT,
        )
