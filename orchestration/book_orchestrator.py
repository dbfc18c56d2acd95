# orchestration/book_orchestrator.py
"""Phase state machine driving a whole book generation session."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from config import settings

from agents.consistency_agent import ConsistencyAgent
from agents.drafting_agent import DraftingAgent
from agents.editing_agent import EditingAgent
from agents.extraction_agent import ExtractionAgent
from agents.finalize_agent import FinalizeAgent, compile_book
from agents.outline_agent import OutlineAgent
from agents.planner_agent import PlannerAgent
from core.errors import BestEffortCheckFailure, InvalidPhaseError
from core.generative_client import GenerativeClient, generative_client
from core.resilience import describe_error_class
from models import (
    Chapter,
    ChapterStage,
    EventKind,
    GenerationPhase,
    GenerationSession,
    ProgressEvent,
    ResilienceStatus,
    SessionError,
    StorySettings,
    is_valid_transition,
)
from orchestration.chapter_generation_runner import ChapterGenerationRunner
from orchestration.events import EventChannel
from processing.refinement_loop import RefinementLoop, RefinementPolicy
from storage.session_store import SessionStore

logger = structlog.get_logger(__name__)

CONSOLIDATION_PASS = "consolidation"
POLISH_PASS = "polish"
TRANSITION_PASS = "transition"


class BookOrchestrator:
    """Drives a :class:`GenerationSession` through its phases.

    The session is checkpointed after every phase transition and every
    completed chapter, so any phase can be resumed after a crash or failure.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        client: GenerativeClient | None = None,
        events: EventChannel | None = None,
        policy: RefinementPolicy | None = None,
    ) -> None:
        self.client = client or generative_client
        self.store = store or SessionStore()
        self.events = events or EventChannel()
        self.outline_agent = OutlineAgent(self.client)
        self.extraction_agent = ExtractionAgent(self.client)
        self.planner_agent = PlannerAgent(self.client)
        self.drafting_agent = DraftingAgent(self.client)
        self.editing_agent = EditingAgent(self.client)
        self.consistency_agent = ConsistencyAgent(self.client)
        self.finalize_agent = FinalizeAgent(self.client)
        self.refinement_loop = RefinementLoop(
            self.editing_agent, policy, event_sink=self._publish
        )
        self._session: GenerationSession | None = None
        self._unsubscribe_status = self.client.monitor.subscribe(
            self._on_status_change
        )
        logger.info("BookOrchestrator initialized.")

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    @property
    def session(self) -> GenerationSession | None:
        """Deep copy of the current session."""
        return self._session.model_copy(deep=True) if self._session else None

    @property
    def phase(self) -> GenerationPhase:
        return self._session.current_phase if self._session else GenerationPhase.IDLE

    def resilience_status(self) -> ResilienceStatus:
        return self.client.monitor.status

    def close(self) -> None:
        self._unsubscribe_status()

    async def start(
        self,
        premise: str,
        chapter_count: int,
        story_settings: StorySettings | None = None,
    ) -> GenerationSession | None:
        """Create a session and generate its outline, or continue a stored one."""
        if not premise or not premise.strip():
            raise ValueError("premise must not be empty")
        if chapter_count < settings.MIN_CHAPTERS:
            raise ValueError(
                f"chapter_count must be at least {settings.MIN_CHAPTERS}, got {chapter_count}"
            )

        existing = self._session or await self.store.load()
        if existing is not None:
            if existing.current_phase is GenerationPhase.COMPLETE:
                raise InvalidPhaseError(
                    "The stored session is already complete; call reset() before starting a new book."
                )
            if existing.current_phase is not GenerationPhase.IDLE:
                logger.info(
                    "Resumable session found; continuing it instead of starting over.",
                    phase=existing.current_phase.value,
                )
                self._session = existing
                return await self._resume_loaded()

        self._session = GenerationSession(
            premise=premise.strip(),
            chapter_count=chapter_count,
            story_settings=story_settings or StorySettings(),
        )
        await self._checkpoint()
        self._emit_phase(GenerationPhase.IDLE)
        logger.info(
            f"Started session {self._session.session_id} for {chapter_count} chapters."
        )
        await self._guarded(self._outline_phase)
        return self.session

    async def approve_outline(self) -> GenerationSession | None:
        """Accept the outline and run every remaining phase to completion."""
        await self._ensure_loaded()
        if self.phase is not GenerationPhase.AWAITING_OUTLINE_APPROVAL:
            self._report_invalid("approve_outline")
            return self.session
        await self._guarded(
            lambda: self._run_from(GenerationPhase.CONTEXT_EXTRACTION)
        )
        return self.session

    async def regenerate_outline(self) -> GenerationSession | None:
        """Discard the outline and generate a new one."""
        await self._ensure_loaded()
        if self.phase is not GenerationPhase.AWAITING_OUTLINE_APPROVAL:
            self._report_invalid("regenerate_outline")
            return self.session
        assert self._session is not None
        self._session.outline = None
        await self._guarded(self._outline_phase)
        return self.session

    async def resume(self) -> GenerationSession | None:
        """Reload the last checkpoint and continue from its phase."""
        self._session = await self.store.load()
        if self._session is None:
            logger.info("No stored session to resume; staying idle.")
            return None
        return await self._resume_loaded()

    async def reset(self) -> None:
        """Forget the session and clear the store."""
        await self.store.clear()
        self._session = None
        self._emit(EventKind.INFO, "Session reset.", phase=GenerationPhase.IDLE)

    # ------------------------------------------------------------------
    # Phase machinery
    # ------------------------------------------------------------------
    async def _ensure_loaded(self) -> None:
        if self._session is None:
            self._session = await self.store.load()

    async def _resume_loaded(self) -> GenerationSession | None:
        session = self._session
        assert session is not None
        if session.current_phase is GenerationPhase.FAILED:
            if session.error is None:
                logger.warning("Failed session has no recorded error; cannot resume.")
                return self.session
            restored = session.error.phase
            logger.info(f"Restoring failed session to phase {restored.value}.")
            session.current_phase = restored
            session.error = None
            await self._checkpoint()
            self._emit_phase(restored, message=f"Resumed at {restored.value}")

        phase = session.current_phase
        if phase in (GenerationPhase.IDLE, GenerationPhase.COMPLETE):
            return self.session
        if phase is GenerationPhase.AWAITING_OUTLINE_APPROVAL:
            self._emit(EventKind.INFO, "Outline is waiting for approval.")
            return self.session
        if phase is GenerationPhase.OUTLINE_GENERATION:
            await self._guarded(self._outline_phase)
            return self.session
        await self._guarded(lambda: self._run_from(phase))
        return self.session

    async def _guarded(self, step: Callable[[], Awaitable[Any]]) -> None:
        """Run ``step``; any escaping error fails and persists the session."""
        try:
            await step()
        except Exception as exc:
            await self._fail(exc)
            raise

    async def _fail(self, exc: Exception) -> None:
        session = self._session
        if session is None:
            return
        failed_phase = session.current_phase
        if failed_phase is GenerationPhase.FAILED:
            return
        logger.error(
            f"Phase {failed_phase.value} failed: {exc}",
            error_type=type(exc).__name__,
            exc_info=True,
        )
        session.error = SessionError(
            phase=failed_phase, message=str(exc), error_type=type(exc).__name__
        )
        session.current_phase = GenerationPhase.FAILED
        try:
            await self._checkpoint()
        except Exception as save_exc:
            logger.error(f"Could not persist failed session: {save_exc}")
        self._emit(
            EventKind.ERROR,
            f"{failed_phase.value} failed: {exc}",
            phase=GenerationPhase.FAILED,
            failed_phase=failed_phase.value,
            error_type=type(exc).__name__,
        )

    async def _transition(self, target: GenerationPhase) -> None:
        session = self._session
        assert session is not None
        current = session.current_phase
        if not is_valid_transition(current, target):
            raise InvalidPhaseError(
                f"Invalid phase transition {current.value} -> {target.value}"
            )
        session.current_phase = target
        await self._checkpoint()
        logger.info(f"Phase {current.value} -> {target.value}")
        # Unit generation reports one phase event per chapter instead.
        if target is not GenerationPhase.UNIT_GENERATION:
            self._emit_phase(target)

    async def _checkpoint(self) -> None:
        assert self._session is not None
        self._session.touch()
        await self.store.save(self._session)

    async def _outline_phase(self) -> None:
        session = self._session
        assert session is not None
        if session.current_phase is not GenerationPhase.OUTLINE_GENERATION:
            await self._transition(GenerationPhase.OUTLINE_GENERATION)
        session.outline = await self.outline_agent.generate_outline(session)
        await self._transition(GenerationPhase.AWAITING_OUTLINE_APPROVAL)

    def _pipeline(self) -> list[tuple[GenerationPhase, Callable[[], Awaitable[None]]]]:
        return [
            (GenerationPhase.CONTEXT_EXTRACTION, self._context_extraction_phase),
            (GenerationPhase.PLAN_GENERATION, self._plan_generation_phase),
            (GenerationPhase.UNIT_GENERATION, self._unit_generation_phase),
            (GenerationPhase.CONSOLIDATION_PASS, self._consolidation_phase),
            (GenerationPhase.POLISH_PASS, self._polish_phase),
            (GenerationPhase.TRANSITION_PASS, self._transition_phase),
            (GenerationPhase.COMPILATION, self._compilation_phase),
        ]

    async def _run_from(self, phase: GenerationPhase) -> None:
        session = self._session
        assert session is not None
        pipeline = self._pipeline()
        start = next(i for i, (p, _) in enumerate(pipeline) if p is phase)
        for target, step in pipeline[start:]:
            if session.current_phase is not target:
                await self._transition(target)
            await step()
        await self._transition(GenerationPhase.COMPLETE)
        logger.info(f"Book '{session.book_title}' complete.")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    async def _context_extraction_phase(self) -> None:
        session = self._session
        assert session is not None
        outline = session.outline or ""
        pending: dict[str, Awaitable[Any]] = {}
        if not session.characters:
            pending["characters"] = self.extraction_agent.extract_characters(outline)
        if not session.world_name:
            pending["world_name"] = self.extraction_agent.extract_world_name(outline)
        if not session.motifs:
            pending["motifs"] = self.extraction_agent.extract_motifs(outline)
        if not pending:
            logger.info("Context already extracted; skipping.")
            return

        tasks = [asyncio.ensure_future(coro) for coro in pending.values()]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # No sibling may keep calling the service once the phase failed.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        # Applied only once every sub-task succeeded.
        for key, value in zip(pending, results):
            setattr(session, key, value)
        await self._checkpoint()
        self._emit(
            EventKind.INFO,
            f"Extracted {', '.join(pending)}",
            characters=len(session.characters),
            world_name=session.world_name,
            motifs=len(session.motifs),
        )

    async def _plan_generation_phase(self) -> None:
        session = self._session
        assert session is not None
        if len(session.plan) >= session.chapter_count:
            logger.info("Chapter plan already present; skipping.")
            return
        session.plan = await self.planner_agent.plan_chapters(session)
        await self._checkpoint()

    async def _unit_generation_phase(self) -> None:
        runner = ChapterGenerationRunner(self)
        await runner.run()

    async def _consolidation_phase(self) -> None:
        session = self._session
        assert session is not None
        if len(session.chapters) <= 1:
            logger.info("Single chapter book; consolidation pass skipped.")
            return

        async def _consolidate(chapter: Chapter) -> str | None:
            return await self.finalize_agent.consolidate_chapter(session, chapter)

        await self._apply_pass(CONSOLIDATION_PASS, session.chapters, _consolidate)

    async def _polish_phase(self) -> None:
        session = self._session
        assert session is not None
        await self._apply_pass(
            POLISH_PASS, session.chapters, self.finalize_agent.polish_chapter
        )

    async def _transition_phase(self) -> None:
        session = self._session
        assert session is not None
        ordered = sorted(session.chapters, key=lambda c: c.index)
        followers = {c.index: n for c, n in zip(ordered, ordered[1:])}

        async def _refine(chapter: Chapter) -> str | None:
            return await self.finalize_agent.refine_transition(
                chapter, followers[chapter.index]
            )

        await self._apply_pass(TRANSITION_PASS, ordered[:-1], _refine)

    async def _apply_pass(
        self,
        pass_name: str,
        chapters: list[Chapter],
        rewrite: Callable[[Chapter], Awaitable[str | None]],
    ) -> None:
        """Rewrite each chapter once; failures leave the chapter unchanged."""
        for chapter in chapters:
            if pass_name in chapter.passes_applied:
                continue
            try:
                revised = await rewrite(chapter)
            except BestEffortCheckFailure as exc:
                logger.warning(str(exc))
                self._emit(
                    EventKind.WARNING,
                    f"{pass_name} skipped: {exc}",
                    unit_index=chapter.index,
                )
                revised = None
            if revised:
                chapter.content = revised
            chapter.passes_applied.append(pass_name)
            await self._checkpoint()

    async def _compilation_phase(self) -> None:
        session = self._session
        assert session is not None
        if session.book is not None:
            logger.info("Book already compiled; skipping.")
            return
        if not session.book_title:
            session.book_title = await self.outline_agent.generate_title(session)
            await self._checkpoint()
        session.book = compile_book(session, session.book_title)
        await self._checkpoint()
        self._emit(EventKind.SUCCESS, f"Compiled '{session.book_title}'")

    # ------------------------------------------------------------------
    # Chapter steps (composed by orchestration.chapter_flow)
    # ------------------------------------------------------------------
    def _ensure_chapters(self) -> None:
        session = self._session
        assert session is not None
        for position, plan in enumerate(session.plan[: session.chapter_count], start=1):
            if session.chapter(position) is None:
                session.chapters.append(
                    Chapter(index=position, title=plan.title, plan=plan)
                )
        session.chapters.sort(key=lambda c: c.index)

    def _chapter(self, chapter_number: int) -> Chapter:
        assert self._session is not None
        chapter = self._session.chapter(chapter_number)
        if chapter is None:
            raise KeyError(f"Chapter {chapter_number} is not planned")
        return chapter

    async def _draft_chapter(self, chapter: Chapter) -> None:
        session = self._session
        assert session is not None
        chapter.stage = ChapterStage.DRAFTING
        chapter.content = ""
        chapter.analysis = None

        def _on_chunk(piece: str) -> None:
            chapter.content += piece
            self._emit(EventKind.CHUNK, piece, unit_index=chapter.index)

        def _on_restart() -> None:
            chapter.content = ""
            self._emit(
                EventKind.WARNING,
                "Draft stream restarted after a service error.",
                unit_index=chapter.index,
            )

        text = await self.drafting_agent.draft_chapter(
            session,
            chapter.plan.model_copy(deep=True),
            chapter.index,
            on_chunk=_on_chunk,
            on_restart=_on_restart,
        )
        chapter.content = text

    async def _analyze_chapter(self, chapter: Chapter) -> None:
        chapter.analysis = await self.drafting_agent.analyze_chapter(chapter)

    async def _critique_chapter(self, chapter: Chapter) -> None:
        try:
            chapter.critique = await self.drafting_agent.critique_chapter(chapter)
        except BestEffortCheckFailure as exc:
            logger.warning(str(exc))
            chapter.critique = None

    async def _refine_chapter(self, chapter: Chapter) -> None:
        chapter.stage = ChapterStage.REFINING
        result = await self.refinement_loop.run(
            chapter.content,
            chapter.critique,
            chapter.plan.model_copy(deep=True),
            chapter.index,
        )
        chapter.content = result.content
        chapter.refinement_history.extend(result.history)

    async def _check_consistency(self, chapter: Chapter) -> None:
        session = self._session
        assert session is not None
        try:
            report = await self.consistency_agent.check_chapter(session, chapter)
        except BestEffortCheckFailure as exc:
            logger.warning(str(exc))
            chapter.consistency_warnings = ["Consistency check could not be performed"]
        else:
            chapter.consistency_warnings = report.as_warnings()
            for warning in chapter.consistency_warnings:
                self._emit(EventKind.WARNING, warning, unit_index=chapter.index)
        chapter.stage = ChapterStage.CONSISTENCY_CHECKED

    async def _update_characters(self, chapter: Chapter) -> None:
        session = self._session
        assert session is not None
        try:
            changed = await self.consistency_agent.update_character_states(
                session, chapter
            )
        except BestEffortCheckFailure as exc:
            logger.warning(str(exc))
            return
        session.characters.update(changed)

    async def _complete_chapter(self, chapter: Chapter) -> None:
        session = self._session
        assert session is not None
        if chapter.analysis is not None:
            session.chapter_summaries[chapter.index] = chapter.analysis.summary
        chapter.stage = ChapterStage.COMPLETE
        await self._checkpoint()
        self._emit(
            EventKind.SUCCESS,
            f"Chapter {chapter.index} complete ({len(chapter.content)} chars)",
            unit_index=chapter.index,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def _publish(self, event: ProgressEvent) -> None:
        if event.phase is None and self._session is not None:
            event = event.model_copy(update={"phase": self._session.current_phase})
        self.events.publish(event)

    def _emit(
        self,
        kind: EventKind,
        message: str,
        *,
        phase: GenerationPhase | None = None,
        unit_index: int | None = None,
        **details: Any,
    ) -> None:
        self._publish(
            ProgressEvent(
                kind=kind,
                message=message,
                phase=phase,
                unit_index=unit_index,
                details=details,
            )
        )

    def _emit_phase(
        self,
        phase: GenerationPhase,
        unit_index: int | None = None,
        message: str | None = None,
    ) -> None:
        self._emit(
            EventKind.PHASE,
            message or phase.value,
            phase=phase,
            unit_index=unit_index,
        )

    def _report_invalid(self, operation: str) -> None:
        message = f"{operation}() is not allowed in phase {self.phase.value}"
        logger.error(message)
        self._emit(EventKind.ERROR, message)

    def _on_status_change(self, status: ResilienceStatus) -> None:
        if status.is_available:
            self._emit(EventKind.INFO, "Generation service available again.")
        else:
            self._emit(
                EventKind.WARNING,
                describe_error_class(status.error_class),
                retry_count=status.retry_count,
                estimated_recovery_time=(
                    status.estimated_recovery_time.isoformat()
                    if status.estimated_recovery_time
                    else None
                ),
            )
