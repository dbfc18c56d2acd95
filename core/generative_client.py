# core/generative_client.py
"""Resilient access to the generative text service.

``GenerativeClient`` is the only way agents talk to the service: every call
is retried and classified by ``call_with_resilience`` and, when a request
queue is configured, admitted through it by priority.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from config import settings
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.errors import ResponseValidationError
from core.llm_interface import (
    ChunkCallback,
    TextService,
    clean_model_response,
    extract_json_payload,
    llm_service,
)
from core.request_queue import RequestPriority, RequestQueue
from core.resilience import (
    ResilienceMonitor,
    call_with_resilience,
    resilience_monitor,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")


def parse_json_response(raw_text: str) -> Any:
    """Decode the JSON embedded in a model response."""
    payload = extract_json_payload(raw_text)
    if not payload:
        raise ResponseValidationError("Empty response where JSON was expected.", raw_text)
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ResponseValidationError(
            f"Response is not valid JSON: {exc}", raw_text
        ) from exc


def _require_prompt(prompt: str) -> None:
    # Rejected before the resilient call so it is never retried.
    if not prompt or not prompt.strip():
        raise ValueError("prompt must not be empty")


class GenerativeClient:
    """Issues text, structured and streamed requests through the resilience layer."""

    def __init__(
        self,
        service: TextService,
        monitor: ResilienceMonitor | None = None,
        queue: RequestQueue | None = None,
        max_attempts: int = settings.LLM_RETRY_ATTEMPTS,
        base_delay: float = settings.LLM_RETRY_BASE_DELAY_SECONDS,
        timeout: float | None = settings.LLM_CALL_TIMEOUT_SECONDS,
        jitter: float = settings.RETRY_JITTER_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service = service
        self.monitor = monitor or ResilienceMonitor()
        self.queue = queue
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.jitter = jitter
        self._sleep = sleep

    async def _invoke(
        self,
        fn: Callable[[], Awaitable[T]],
        priority: RequestPriority,
        label: str,
    ) -> T:
        async def _resilient() -> T:
            return await call_with_resilience(
                fn,
                monitor=self.monitor,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                timeout=self.timeout,
                jitter=self.jitter,
                sleep=self._sleep,
                label=label,
            )

        if self.queue is not None:
            return await self.queue.submit(_resilient, priority)
        return await _resilient()

    async def generate(
        self,
        prompt: str,
        *,
        kind: str = "editing",
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
        clean: bool = True,
    ) -> str:
        """Return the model's text for ``prompt`` using the ``kind`` sampling params."""
        _require_prompt(prompt)
        params = settings.params_for(kind)

        async def _call() -> str:
            return await self.service.generate_text(
                prompt,
                system_instruction=system_instruction,
                response_schema=response_schema,
                temperature=params.temperature,
                top_p=params.top_p,
                top_k=params.top_k,
            )

        text = await self._invoke(_call, priority, f"generate[{kind}]")
        return clean_model_response(text) if clean else text

    async def generate_json(
        self,
        prompt: str,
        *,
        kind: str = "extraction",
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> Any:
        """Return decoded JSON; malformed output raises ``ResponseValidationError``."""
        raw = await self.generate(
            prompt,
            kind=kind,
            system_instruction=system_instruction,
            response_schema=response_schema,
            priority=priority,
            clean=False,
        )
        return parse_json_response(raw)

    async def generate_structured(
        self,
        prompt: str,
        model_cls: type[ModelT],
        *,
        kind: str = "extraction",
        system_instruction: str | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> ModelT:
        """Return ``model_cls`` validated from the response.

        Validation happens after the resilient call returns, so a malformed
        response is reported once instead of being retried.
        """
        data = await self.generate_json(
            prompt,
            kind=kind,
            system_instruction=system_instruction,
            response_schema=model_cls.model_json_schema(by_alias=True),
            priority=priority,
        )
        try:
            return model_cls.model_validate(data)
        except PydanticValidationError as exc:
            logger.warning(
                f"Structured response failed validation for {model_cls.__name__}: "
                f"{exc.error_count()} error(s)."
            )
            raise ResponseValidationError(
                f"{model_cls.__name__} validation failed: {exc}", json.dumps(data)
            ) from exc

    async def stream(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        *,
        kind: str = "chapter",
        system_instruction: str | None = None,
        priority: RequestPriority = RequestPriority.HIGH,
        on_restart: Callable[[], None] | None = None,
    ) -> str:
        """Stream a completion, forwarding each fragment to ``on_chunk``.

        When an attempt fails part way and is retried, ``on_restart`` is
        called before the new attempt so the caller can drop partial output.
        """
        _require_prompt(prompt)
        params = settings.params_for(kind)
        attempts = 0

        async def _call() -> str:
            nonlocal attempts
            attempts += 1
            if attempts > 1 and on_restart is not None:
                on_restart()
            return await self.service.generate_text_streaming(
                prompt,
                on_chunk,
                system_instruction=system_instruction,
                temperature=params.temperature,
                top_p=params.top_p,
                top_k=params.top_k,
            )

        text = await self._invoke(_call, priority, f"stream[{kind}]")
        return clean_model_response(text)


def _default_queue() -> RequestQueue | None:
    return RequestQueue() if settings.ENABLE_REQUEST_QUEUE else None


generative_client = GenerativeClient(
    llm_service, monitor=resilience_monitor, queue=_default_queue()
)
