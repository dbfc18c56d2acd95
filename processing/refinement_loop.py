# processing/refinement_loop.py
"""Bounded decide / execute / evaluate revision loop for a single chapter."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import structlog
from config import settings

from core.errors import ResponseValidationError
from models import (
    ChapterPlan,
    EventKind,
    ProgressEvent,
    QualityEvaluation,
    RefinementDecision,
    RefinementIteration,
    RefinementStrategy,
)
from processing.decision_heuristics import fallback_decision, length_ratio_ok

logger = structlog.get_logger(__name__)

EventSink = Callable[[ProgressEvent], None]

LOW_CONFIDENCE_NOTE = (
    "PREVIOUS ATTEMPT FAILED. Need complete regeneration following plan."
)
TARGETED_EDIT_NOTE = "Targeted edits not enough. Need deeper structural changes."


class RefinementAgent(Protocol):
    """The three model-backed steps the loop drives."""

    async def decide(
        self, content: str, critique: str, plan: ChapterPlan, chapter_index: int
    ) -> RefinementDecision: ...

    async def execute(
        self,
        strategy: RefinementStrategy,
        content: str,
        critique: str,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> str: ...

    async def evaluate(
        self,
        original: str,
        revised: str,
        critique: str,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> QualityEvaluation: ...


@dataclass(frozen=True)
class RefinementPolicy:
    max_iterations: int = 2
    quality_threshold: float = 70
    low_confidence_threshold: float = 60
    default_quality_score: float = 75
    length_bands: dict[RefinementStrategy, tuple[float, float]] = field(
        default_factory=lambda: {
            RefinementStrategy.TARGETED_EDIT: (0.8, 1.2),
            RefinementStrategy.LIGHT_POLISH: (0.6, 1.4),
            RefinementStrategy.REGENERATE: (0.5, 2.0),
        }
    )

    @classmethod
    def from_settings(cls) -> RefinementPolicy:
        return cls(
            max_iterations=settings.REFINEMENT_MAX_ITERATIONS,
            quality_threshold=settings.REFINEMENT_QUALITY_THRESHOLD,
            low_confidence_threshold=settings.REFINEMENT_LOW_CONFIDENCE_THRESHOLD,
            default_quality_score=settings.REFINEMENT_DEFAULT_QUALITY_SCORE,
            length_bands={
                RefinementStrategy.TARGETED_EDIT: settings.TARGETED_EDIT_LENGTH_RATIO,
                RefinementStrategy.LIGHT_POLISH: settings.LIGHT_POLISH_LENGTH_RATIO,
                RefinementStrategy.REGENERATE: settings.REGENERATE_LENGTH_RATIO,
            },
        )


@dataclass
class RefinementResult:
    content: str
    decision: RefinementDecision
    quality_score: float | None
    accepted: bool
    changes_applied: list[str] = field(default_factory=list)
    remaining_issues: list[str] = field(default_factory=list)
    history: list[RefinementIteration] = field(default_factory=list)

    @property
    def iterations(self) -> int:
        return len(self.history)


class RefinementLoop:
    """Runs at most ``policy.max_iterations`` revision cycles on a chapter.

    The input content is never mutated; callers receive a new
    :class:`RefinementResult`.
    """

    def __init__(
        self,
        agent: RefinementAgent,
        policy: RefinementPolicy | None = None,
        event_sink: EventSink | None = None,
    ) -> None:
        self.agent = agent
        self.policy = policy or RefinementPolicy.from_settings()
        self._event_sink = event_sink

    def _emit(
        self,
        kind: EventKind,
        message: str,
        chapter_index: int,
        **details: object,
    ) -> None:
        if self._event_sink is None:
            return
        self._event_sink(
            ProgressEvent(
                kind=kind,
                message=message,
                unit_index=chapter_index,
                details=dict(details),
            )
        )

    async def decide(
        self, content: str, critique: str, plan: ChapterPlan, chapter_index: int
    ) -> RefinementDecision:
        """Ask the agent for a decision; fall back to keyword heuristics."""
        try:
            decision = await self.agent.decide(content, critique, plan, chapter_index)
        except Exception as exc:
            logger.warning(
                f"Ch {chapter_index}: decision failed, using heuristics: {exc}"
            )
            decision = fallback_decision(critique)
        if not isinstance(decision, RefinementDecision):
            decision = fallback_decision(critique)
        return decision

    async def _execute(
        self,
        decision: RefinementDecision,
        content: str,
        critique: str,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> str:
        match decision.strategy:
            case RefinementStrategy.SKIP:
                return content
            case (
                RefinementStrategy.TARGETED_EDIT
                | RefinementStrategy.REGENERATE
                | RefinementStrategy.LIGHT_POLISH
            ):
                band = self.policy.length_bands[decision.strategy]
            case _:
                raise ValueError(f"Unsupported refinement strategy: {decision.strategy!r}")
        try:
            revised = await self.agent.execute(
                decision.strategy, content, critique, plan, chapter_index
            )
        except ResponseValidationError as exc:
            logger.warning(
                f"Ch {chapter_index}: {decision.strategy.value} produced unusable output: {exc}"
            )
            return content
        if not length_ratio_ok(content, revised, band):
            ratio = len(revised) / len(content) if content else 0.0
            logger.warning(
                f"Ch {chapter_index}: {decision.strategy.value} output rejected "
                f"(length ratio {ratio:.2f} outside {band[0]}-{band[1]})."
            )
            self._emit(
                EventKind.WARNING,
                f"{decision.strategy.value} output discarded: length ratio {ratio:.2f}",
                chapter_index,
                strategy=decision.strategy.value,
            )
            return content
        if revised != content:
            self._emit(
                EventKind.DIFF,
                f"Text changes applied via {decision.strategy.value}",
                chapter_index,
                strategy=decision.strategy.value,
                before_chars=len(content),
                after_chars=len(revised),
            )
        return revised

    async def _evaluate(
        self,
        original: str,
        revised: str,
        critique: str,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> QualityEvaluation:
        try:
            return await self.agent.evaluate(
                original, revised, critique, plan, chapter_index
            )
        except Exception as exc:
            logger.warning(
                f"Ch {chapter_index}: evaluation failed, assuming score "
                f"{self.policy.default_quality_score}: {exc}"
            )
            return QualityEvaluation(
                quality_score=self.policy.default_quality_score,
                remaining_issues=["Evaluation unavailable"],
            )

    async def run(
        self,
        content: str,
        critique: str | None,
        plan: ChapterPlan,
        chapter_index: int,
    ) -> RefinementResult:
        policy = self.policy
        current = content
        current_critique = critique or ""
        forced_strategy: RefinementStrategy | None = None
        history: list[RefinementIteration] = []
        changes: list[str] = []
        decision: RefinementDecision | None = None
        evaluation: QualityEvaluation | None = None

        for iteration in range(1, policy.max_iterations + 1):
            self._emit(
                EventKind.ITERATION,
                f"Iteration {iteration}/{policy.max_iterations}",
                chapter_index,
                iteration=iteration,
            )
            decision = await self.decide(current, current_critique, plan, chapter_index)
            if forced_strategy is not None:
                decision = decision.model_copy(
                    update={
                        "strategy": forced_strategy,
                        "reasoning": f"Escalated after low quality: {decision.reasoning}",
                    }
                )
                forced_strategy = None
            self._emit(
                EventKind.DECISION,
                f"Strategy: {decision.strategy.value} - {decision.reasoning}",
                chapter_index,
                strategy=decision.strategy.value,
                confidence=decision.confidence,
                priority=decision.priority.value,
            )
            if decision.confidence < policy.low_confidence_threshold:
                self._emit(
                    EventKind.WARNING,
                    f"Low confidence ({decision.confidence:.0f}%)",
                    chapter_index,
                    confidence=decision.confidence,
                )

            if decision.strategy is RefinementStrategy.SKIP:
                history.append(
                    RefinementIteration(
                        iteration=iteration,
                        strategy=decision.strategy,
                        confidence=decision.confidence,
                        accepted=True,
                        note="Chapter is strong, no changes needed",
                    )
                )
                self._emit(
                    EventKind.SUCCESS, "Chapter is strong, no changes needed", chapter_index
                )
                return RefinementResult(
                    content=current,
                    decision=decision,
                    quality_score=evaluation.quality_score if evaluation else None,
                    accepted=True,
                    changes_applied=changes,
                    history=history,
                )

            self._emit(
                EventKind.EXECUTION,
                f"Executing {decision.strategy.value}",
                chapter_index,
                strategy=decision.strategy.value,
            )
            revised = await self._execute(
                decision, current, current_critique, plan, chapter_index
            )
            evaluation = await self._evaluate(
                current, revised, current_critique, plan, chapter_index
            )
            changes.extend(evaluation.changes_applied)
            score = evaluation.quality_score
            self._emit(
                EventKind.EVALUATION,
                f"Quality score {score:.0f}/100",
                chapter_index,
                quality_score=score,
                remaining_issues=evaluation.remaining_issues,
            )
            current = revised

            passed = score >= policy.quality_threshold
            last = iteration >= policy.max_iterations
            note: str | None = None
            if passed:
                note = "Quality threshold met"
            elif last:
                note = "Max iterations reached"
            history.append(
                RefinementIteration(
                    iteration=iteration,
                    strategy=decision.strategy,
                    confidence=decision.confidence,
                    quality_score=score,
                    accepted=passed or last,
                    changes_applied=evaluation.changes_applied,
                    remaining_issues=evaluation.remaining_issues,
                    note=note,
                )
            )
            if passed:
                self._emit(
                    EventKind.SUCCESS,
                    f"Quality threshold met ({score:.0f}/100)",
                    chapter_index,
                    quality_score=score,
                )
                break
            if last:
                logger.warning(
                    f"Ch {chapter_index}: max refinement iterations reached with score {score:.0f}."
                )
                self._emit(
                    EventKind.WARNING,
                    f"Max iterations reached ({score:.0f}/100)",
                    chapter_index,
                    quality_score=score,
                )
                break

            if decision.confidence < policy.low_confidence_threshold:
                forced_strategy = RefinementStrategy.REGENERATE
                current_critique = f"{current_critique}\n\n{LOW_CONFIDENCE_NOTE}".strip()
            elif decision.strategy is RefinementStrategy.TARGETED_EDIT:
                forced_strategy = RefinementStrategy.REGENERATE
                current_critique = f"{current_critique}\n\n{TARGETED_EDIT_NOTE}".strip()
            else:
                self._emit(
                    EventKind.WARNING,
                    f"Quality still low after {decision.strategy.value}",
                    chapter_index,
                )
            if forced_strategy is not None:
                self._emit(
                    EventKind.ITERATION,
                    "Escalating to regeneration",
                    chapter_index,
                    reason=decision.strategy.value,
                )

        assert decision is not None
        return RefinementResult(
            content=current,
            decision=decision,
            quality_score=evaluation.quality_score if evaluation else None,
            accepted=True,
            changes_applied=changes,
            remaining_issues=evaluation.remaining_issues if evaluation else [],
            history=history,
        )
