from __future__ import annotations

import asyncio
import time
from typing import Optional

from config import settings
from core.llm_interface import llm_service
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from models import EventKind, ProgressEvent, ResilienceStatus
from orchestration.events import EventChannel, EventSubscription


class RichDisplayManager:
    """Renders orchestrator progress events in a Rich live panel."""

    def __init__(self, events: Optional[EventChannel] = None) -> None:
        self.events = events
        self.subscription: Optional[EventSubscription] = None
        self.live: Optional[Live] = None
        self.group: Optional[Group] = None
        self.status_text_book_title: Text = Text("Book: N/A")
        self.status_text_phase: Text = Text("Phase: Idle")
        self.status_text_current_chapter: Text = Text("Current Chapter: N/A")
        self.status_text_current_step: Text = Text("Current Step: Initializing...")
        self.status_text_streamed_chars: Text = Text("Characters Streamed (this chapter): 0")
        self.status_text_service: Text = Text("Service: available")
        self.status_text_elapsed_time: Text = Text("Elapsed Time: 0s")
        self.status_text_requests_per_minute: Text = Text("Requests/Min: 0.0")
        self.streamed_chars: int = 0
        self.warnings: int = 0
        self.run_start_time: float = 0.0
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None

        if settings.ENABLE_RICH_PROGRESS:
            self.group = Group(
                self.status_text_book_title,
                self.status_text_phase,
                self.status_text_current_chapter,
                self.status_text_current_step,
                self.status_text_streamed_chars,
                self.status_text_service,
                self.status_text_requests_per_minute,
                self.status_text_elapsed_time,
            )
            self.live = Live(
                Panel(
                    self.group,
                    title="Folio Progress",
                    border_style="blue",
                    expand=True,
                ),
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def start(self) -> None:
        self.run_start_time = time.time()
        self._stop_event.clear()
        if self.events is not None:
            self.subscription = self.events.subscribe()
            self._consumer = asyncio.create_task(self._consume())
        if self.live:
            self.live.start()
            self._task = asyncio.create_task(self._auto_refresh())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self.subscription is not None:
            for event in self.subscription.drain():
                self.handle_event(event)
            self.subscription.close()
            self.subscription = None
        if self.live and self.live.is_started:
            self.update()
            self.live.stop()

    async def _auto_refresh(self) -> None:
        while not self._stop_event.is_set():
            self.update()
            await asyncio.sleep(1)

    async def _consume(self) -> None:
        assert self.subscription is not None
        while True:
            event = await self.subscription.get()
            self.handle_event(event)

    def handle_event(self, event: ProgressEvent) -> None:
        if event.phase is not None:
            self.status_text_phase.plain = f"Phase: {event.phase.value}"
        if event.unit_index is not None:
            self.status_text_current_chapter.plain = (
                f"Current Chapter: {event.unit_index}"
            )
        if event.kind is EventKind.CHUNK:
            self.streamed_chars += len(event.message)
            self.status_text_streamed_chars.plain = (
                f"Characters Streamed (this chapter): {self.streamed_chars:,}"
            )
            return
        if event.kind is EventKind.PHASE:
            self.streamed_chars = 0
        if event.kind is EventKind.WARNING:
            self.warnings += 1
        self.status_text_current_step.plain = (
            f"Current Step: [{event.kind.value}] {event.message}"
        )

    def update_resilience(self, status: ResilienceStatus) -> None:
        if status.is_available:
            self.status_text_service.plain = "Service: available"
            return
        eta = (
            status.estimated_recovery_time.strftime("%H:%M:%S")
            if status.estimated_recovery_time
            else "unknown"
        )
        kind = status.error_class.value if status.error_class else "unknown"
        self.status_text_service.plain = (
            f"Service: unavailable ({kind}, {status.retry_count} retries, "
            f"recovery ~{eta})"
        )

    def update(
        self,
        book_title: Optional[str] = None,
        run_start_time: Optional[float] = None,
    ) -> None:
        if not (self.live and self.group):
            return
        if book_title is not None:
            self.status_text_book_title.plain = f"Book: {book_title}"
        start_time = run_start_time or self.run_start_time
        elapsed_seconds = time.time() - start_time
        requests_per_minute = (
            llm_service.request_count / (elapsed_seconds / 60)
            if elapsed_seconds > 0
            else 0.0
        )
        self.status_text_requests_per_minute.plain = (
            f"Requests/Min: {requests_per_minute:.2f}"
        )
        self.status_text_elapsed_time.plain = (
            f"Elapsed Time: {time.strftime('%H:%M:%S', time.gmtime(elapsed_seconds))}"
        )
