# core/request_queue.py
"""Priority admission queue in front of the generative service.

Requests are executed one at a time, highest priority first and FIFO within
a priority. A delay separates consecutive requests while work is waiting;
the delay grows when the service reports overload and shrinks again after a
run of successful calls.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import structlog
from config import settings

from core.errors import ErrorClass, ServiceError

logger = structlog.get_logger(__name__)


class RequestPriority(IntEnum):
    """Lower value is served first."""

    HIGH = 0
    MEDIUM = 1
    LOW = 2


@dataclass(order=True)
class QueuedRequest:
    """Queue entry; ordered by ``(priority, sequence)``."""

    priority: RequestPriority
    sequence: int
    request_id: str = field(compare=False)
    enqueued_at: float = field(compare=False)
    payload: Callable[[], Awaitable[Any]] = field(compare=False, repr=False)
    future: asyncio.Future = field(compare=False, repr=False)


class RequestQueue:
    """Serializes generative calls by priority with an adaptive delay."""

    def __init__(
        self,
        rate_limit_delay: float = settings.QUEUE_RATE_LIMIT_DELAY_SECONDS,
        min_delay: float = settings.QUEUE_MIN_DELAY_SECONDS,
        max_delay: float = settings.QUEUE_MAX_DELAY_SECONDS,
        success_streak: int = settings.QUEUE_SUCCESS_STREAK,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rate_limit_delay = rate_limit_delay
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.success_streak = success_streak
        self._sleep = sleep
        self._heap: list[QueuedRequest] = []
        self._sequence = itertools.count()
        self._task: asyncio.Task | None = None
        self._consecutive_successes = 0
        self._closed = False

    @property
    def size(self) -> int:
        return len(self._heap)

    @property
    def is_processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(
        self,
        payload: Callable[[], Awaitable[Any]],
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> asyncio.Future:
        """Queue ``payload`` and return a future resolved with its outcome.

        Must be called from a running event loop. The processing task starts
        on the next loop iteration, so requests enqueued back to back are
        ordered by priority before the first one runs.
        """
        if self._closed:
            raise RuntimeError("RequestQueue is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        request = QueuedRequest(
            priority=RequestPriority(priority),
            sequence=next(self._sequence),
            request_id=uuid.uuid4().hex,
            enqueued_at=time.monotonic(),
            payload=payload,
            future=future,
        )
        heapq.heappush(self._heap, request)
        logger.debug(
            "Request queued.",
            request_id=request.request_id,
            priority=request.priority.name,
            queue_size=self.size,
        )
        if not self.is_processing:
            self._task = loop.create_task(self._process())
        return future

    async def submit(
        self,
        payload: Callable[[], Awaitable[Any]],
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> Any:
        """Enqueue ``payload`` and wait for its result."""
        return await self.enqueue(payload, priority)

    def adjust_rate_limit(self, increase: bool) -> float:
        """Grow the delay by 1.5x or shrink it by 0.8x within the bounds."""
        previous = self.rate_limit_delay
        if increase:
            self.rate_limit_delay = min(self.rate_limit_delay * 1.5, self.max_delay)
        else:
            self.rate_limit_delay = max(self.rate_limit_delay * 0.8, self.min_delay)
        if self.rate_limit_delay != previous:
            logger.info(
                f"Request queue delay adjusted {previous:.2f}s -> {self.rate_limit_delay:.2f}s"
            )
        return self.rate_limit_delay

    async def aclose(self) -> None:
        """Stop processing and cancel every request still waiting."""
        self._closed = True
        while self._heap:
            request = heapq.heappop(self._heap)
            if not request.future.done():
                request.future.cancel()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _process(self) -> None:
        while self._heap:
            request = heapq.heappop(self._heap)
            if request.future.cancelled():
                continue
            try:
                result = await request.payload()
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as exc:
                self._record_outcome(exc)
                if not request.future.done():
                    request.future.set_exception(exc)
            else:
                self._record_outcome(None)
                if not request.future.done():
                    request.future.set_result(result)
            if self._heap:
                await self._sleep(self.rate_limit_delay)

    def _record_outcome(self, exc: BaseException | None) -> None:
        if exc is None:
            self._consecutive_successes += 1
            if self._consecutive_successes >= self.success_streak:
                self._consecutive_successes = 0
                self.adjust_rate_limit(increase=False)
            return
        self._consecutive_successes = 0
        if isinstance(exc, ServiceError) and exc.error_class in (
            ErrorClass.OVERLOAD,
            ErrorClass.RATE_LIMIT,
        ):
            self.adjust_rate_limit(increase=True)
