# core/resilience.py
"""Error classification, retry with backoff and service availability tracking.

Every call to the generative service goes through :func:`call_with_resilience`.
The wrapper classifies failures, retries transient ones with exponential
backoff plus jitter, and reports the outcome to a :class:`ResilienceMonitor`
that owns the process-wide :class:`~models.ResilienceStatus`.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

import httpx
import structlog
from config import settings

from core.errors import (
    ErrorClass,
    PermanentServiceError,
    ServiceError,
    TransientServiceError,
)
from models import ResilienceStatus

logger = structlog.get_logger(__name__)

T = TypeVar("T")

StatusObserver = Callable[[ResilienceStatus], None]

_PERMANENT_MARKERS = (
    "api key not valid",
    "invalid api key",
    "incorrect api key",
    "quota exceeded",
    "permission denied",
)
_OVERLOAD_MARKERS = ("unavailable", "503", "overloaded")
_RATE_LIMIT_MARKERS = ("resource_exhausted", "resource exhausted", "429", "too many requests")

# Minutes until the service is expected back, before the retry multiplier.
_RECOVERY_BASE_MINUTES = {
    ErrorClass.OVERLOAD: 5,
    ErrorClass.RATE_LIMIT: 60,
    ErrorClass.PERMANENT: 60,
    ErrorClass.UNKNOWN: 2,
}


def classify_error(exc: BaseException) -> ErrorClass:
    """Map an exception raised by a service call to an :class:`ErrorClass`."""
    if isinstance(exc, ServiceError):
        return exc.error_class
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorClass.UNKNOWN

    message = str(exc).lower()
    # Permanent markers win over anything else in the message.
    if any(marker in message for marker in _PERMANENT_MARKERS):
        return ErrorClass.PERMANENT

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return ErrorClass.PERMANENT
        if status == 429:
            return ErrorClass.RATE_LIMIT
        if status in (502, 503, 529):
            return ErrorClass.OVERLOAD

    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorClass.RATE_LIMIT
    if any(marker in message for marker in _OVERLOAD_MARKERS):
        return ErrorClass.OVERLOAD
    return ErrorClass.UNKNOWN


def compute_backoff_delay(
    error_class: ErrorClass,
    attempt: int,
    base_delay: float = settings.LLM_RETRY_BASE_DELAY_SECONDS,
) -> float:
    """Return the retry delay in seconds for a 0-based ``attempt``, without jitter."""
    delay = base_delay * (2**attempt)
    if error_class is ErrorClass.OVERLOAD:
        return max(delay, 5.0 + 3.0 * attempt)
    if error_class is ErrorClass.RATE_LIMIT:
        return max(delay, 10.0 + 5.0 * attempt)
    return delay


def describe_error_class(error_class: ErrorClass | None) -> str:
    """User facing explanation for the current service condition."""
    if error_class is ErrorClass.OVERLOAD:
        return "The generation service is temporarily overloaded. Requests will be retried automatically."
    if error_class is ErrorClass.RATE_LIMIT:
        return "Rate limit reached. Requests are paused until the quota recovers."
    if error_class is ErrorClass.PERMANENT:
        return "The service rejected the request. Check the API key and quota."
    return "The generation service returned an unexpected error."


class ResilienceMonitor:
    """Owns the availability status of the generative service.

    Mutations happen under an ``asyncio.Lock``. Observers are notified only
    when ``is_available`` flips, never on every call.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._status = ResilienceStatus()
        self._lock = asyncio.Lock()
        self._observers: list[StatusObserver] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> ResilienceStatus:
        """Snapshot of the current status."""
        return self._status.model_copy()

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Register ``observer`` and return a callable that removes it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    async def record_success(self) -> None:
        async with self._lock:
            was_available = self._status.is_available
            self._status = self._status.model_copy(
                update={
                    "is_available": True,
                    "retry_count": 0,
                    "estimated_recovery_time": None,
                    "error_class": None,
                    "last_success_time": self._clock(),
                }
            )
            snapshot = self._status.model_copy()
        if not was_available:
            logger.info("Generative service available again.")
            self._notify(snapshot)

    async def record_failure(
        self,
        exc: BaseException,
        error_class: ErrorClass,
        retries_remaining: bool,
    ) -> None:
        async with self._lock:
            was_available = self._status.is_available
            retry_count = self._status.retry_count + 1
            base_minutes = _RECOVERY_BASE_MINUTES[error_class]
            estimate = timedelta(minutes=base_minutes * (1.5 ** min(retry_count, 10)))
            self._status = self._status.model_copy(
                update={
                    "is_available": retries_remaining,
                    "retry_count": retry_count,
                    "last_error": str(exc) or type(exc).__name__,
                    "error_class": error_class,
                    "estimated_recovery_time": self._clock() + estimate,
                }
            )
            snapshot = self._status.model_copy()
        if was_available != snapshot.is_available:
            logger.warning(
                "Generative service marked unavailable.",
                error_class=error_class.value,
                retry_count=retry_count,
            )
            self._notify(snapshot)

    def suggest_fallback_actions(self) -> list[str]:
        """Suggestions shown to the user while the service is degraded."""
        status = self._status
        actions: list[str] = []
        if status.is_available:
            return actions
        if status.error_class is ErrorClass.RATE_LIMIT:
            actions.append("Wait for the quota window to reset, then resume.")
        elif status.error_class is ErrorClass.OVERLOAD:
            actions.append("Retry in a few minutes; progress is saved automatically.")
        elif status.error_class is ErrorClass.PERMANENT:
            actions.append("Verify OPENAI_API_KEY and the account quota.")
        actions.append("Resume later with --resume to continue from the last checkpoint.")
        return actions

    def _notify(self, snapshot: ResilienceStatus) -> None:
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception as exc:  # observers must not break the caller
                logger.warning("Resilience observer raised.", error=str(exc))


async def call_with_resilience(
    fn: Callable[[], Awaitable[T]],
    *,
    monitor: ResilienceMonitor | None = None,
    max_attempts: int = settings.LLM_RETRY_ATTEMPTS,
    base_delay: float = settings.LLM_RETRY_BASE_DELAY_SECONDS,
    timeout: float | None = settings.LLM_CALL_TIMEOUT_SECONDS,
    jitter: float = settings.RETRY_JITTER_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, ErrorClass], None] | None = None,
    label: str = "service call",
) -> T:
    """Invoke ``fn`` with classification, retries and status reporting.

    Args:
        fn: Zero-argument coroutine factory; invoked once per attempt.
        monitor: Status owner updated after every attempt.
        max_attempts: Total attempts including the first.
        base_delay: Backoff base in seconds.
        timeout: Per-attempt timeout in seconds, ``None`` to disable.
        jitter: Upper bound of the random delay added to each backoff.
        sleep: Awaitable sleep, replaceable in tests.
        on_retry: Called with the 1-based failed attempt before sleeping.
        label: Used in log messages.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        PermanentServiceError: on the first permanent failure.
        TransientServiceError: once every attempt failed.
    """
    last_exc: BaseException | None = None
    last_class = ErrorClass.UNKNOWN
    for attempt in range(max_attempts):
        try:
            if timeout is not None:
                result = await asyncio.wait_for(fn(), timeout=timeout)
            else:
                result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_exc = exc
            last_class = classify_error(exc)
            retries_remaining = (
                last_class.is_transient and attempt < max_attempts - 1
            )
            if monitor is not None:
                await monitor.record_failure(exc, last_class, retries_remaining)
            if last_class is ErrorClass.PERMANENT:
                logger.error(
                    f"{label}: permanent failure, not retrying: {exc}",
                    attempt=attempt + 1,
                )
                raise PermanentServiceError(str(exc), attempts=attempt + 1) from exc
            if not retries_remaining:
                break
            delay = compute_backoff_delay(last_class, attempt, base_delay)
            delay += random.uniform(0, jitter) if jitter > 0 else 0.0
            logger.warning(
                f"{label} (attempt {attempt + 1}/{max_attempts}) failed: "
                f"{str(exc) or type(exc).__name__}. "
                f"Retrying in {delay:.2f}s.",
                error_class=last_class.value,
            )
            if on_retry is not None:
                on_retry(attempt + 1, last_class)
            await sleep(delay)
            continue
        if monitor is not None:
            await monitor.record_success()
        return result

    if last_exc is None:
        message = "unknown failure"
    else:
        message = str(last_exc) or type(last_exc).__name__
    logger.error(f"{label}: all {max_attempts} attempts failed. Last error: {message}")
    raise TransientServiceError(message, last_class, attempts=max_attempts) from last_exc


resilience_monitor = ResilienceMonitor()
