# orchestration/cli_runner.py
"""Command-line runner for the Folio orchestrator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog
from config import settings
from core.generative_client import generative_client
from core.llm_interface import llm_service
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from ui.rich_display import RichDisplayManager
from utils.logging import setup_logging_folio

from models import GenerationPhase, GenerationSession
from orchestration.book_orchestrator import BookOrchestrator
from storage.file_manager import BookFileManager

logger = structlog.get_logger(__name__)


@dataclass
class RunOptions:
    premise: str | None = None
    chapters: int = settings.MIN_CHAPTERS
    auto_approve: bool = False
    resume: bool = False
    reset: bool = False
    approve: bool = False
    regenerate_outline: bool = False


async def _dispatch(
    orchestrator: BookOrchestrator, options: RunOptions
) -> GenerationSession | None:
    if options.reset:
        await orchestrator.reset()
        if not options.premise:
            return None
    if options.approve:
        return await orchestrator.approve_outline()
    if options.regenerate_outline:
        session = await orchestrator.regenerate_outline()
    elif options.resume:
        session = await orchestrator.resume()
    elif options.premise:
        session = await orchestrator.start(options.premise, options.chapters)
    else:
        logger.error("Nothing to do: pass --premise, --resume or --approve.")
        return None
    if (
        options.auto_approve
        and orchestrator.phase is GenerationPhase.AWAITING_OUTLINE_APPROVAL
    ):
        session = await orchestrator.approve_outline()
    return session


def _report(
    console: Console,
    session: GenerationSession | None,
    fallback_actions: list[str],
) -> None:
    if session is None:
        return
    if session.current_phase is GenerationPhase.AWAITING_OUTLINE_APPROVAL:
        console.print(
            Panel(
                Markdown(session.outline or ""),
                title="Outline awaiting approval",
                border_style="green",
            )
        )
        console.print(
            "Run again with --approve to continue, or --regenerate-outline for a new outline."
        )
    elif session.current_phase is GenerationPhase.FAILED and session.error:
        console.print(
            f"[red]Generation failed in {session.error.phase.value}: "
            f"{session.error.message}[/red]"
        )
        for action in fallback_actions or ["Run again with --resume to continue."]:
            console.print(f"- {action}")


async def _run(orchestrator: BookOrchestrator, options: RunOptions) -> int:
    """Run the requested operation and return the process exit status."""
    console = Console()
    failed = False
    display = RichDisplayManager(orchestrator.events)
    unsubscribe = orchestrator.client.monitor.subscribe(display.update_resilience)
    display.start()
    try:
        session = await _dispatch(orchestrator, options)
    except Exception as exc:
        logger.error(f"Generation stopped: {exc}", error_type=type(exc).__name__)
        session = orchestrator.session
        failed = True
    finally:
        unsubscribe()
        await display.stop()
        orchestrator.close()
        if generative_client.queue is not None:
            await generative_client.queue.aclose()
        await llm_service.aclose()

    _report(console, session, orchestrator.client.monitor.suggest_fallback_actions())
    if session is not None and session.current_phase is GenerationPhase.FAILED:
        failed = True
    if (
        session is not None
        and session.current_phase is GenerationPhase.COMPLETE
        and session.book is not None
    ):
        book_path, metadata_path = await BookFileManager().save_book(session.book)
        console.print(
            f"[bold green]'{session.book.title}' written to {book_path}[/bold green] "
            f"(metadata: {metadata_path})"
        )
    return 1 if failed else 0


def run(options: RunOptions) -> None:
    """Initialize the orchestrator and run the requested operation.

    Raises ``SystemExit`` with a non-zero status when the session failed or
    an error escaped, so scripts can tell a failed run from a finished one.
    """
    setup_logging_folio()
    orchestrator = BookOrchestrator()
    try:
        status = asyncio.run(_run(orchestrator, options))
    except KeyboardInterrupt:
        logger.info(
            "Folio shutting down due to KeyboardInterrupt; progress is checkpointed."
        )
        raise SystemExit(130)
    except Exception as main_err:
        logger.critical(
            "Folio encountered an unhandled exception: %s",
            main_err,
            exc_info=True,
        )
        raise SystemExit(1) from main_err
    if status:
        raise SystemExit(status)
