# core/llm_interface.py
"""
Handles direct interactions with the generative text service through an
OpenAI-compatible chat completions endpoint. Includes plain and streamed
completion calls and response cleaning.

Retries are not performed here; callers wrap these calls with
``core.resilience.call_with_resilience``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any, Protocol

import httpx
import structlog
from config import settings

logger = structlog.get_logger(__name__)

ChunkCallback = Callable[[str], None]


class TextService(Protocol):
    """Contract of the external generative text service."""

    async def generate_text(
        self,
        prompt: str,
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
    ) -> str: ...

    async def generate_text_streaming(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        system_instruction: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
    ) -> str: ...


def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base or "api.anthropic.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


class LLMService:
    """Client for an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_base: str = settings.OPENAI_API_BASE,
        api_key: str = settings.OPENAI_API_KEY,
        model_name: str = settings.GENERATION_MODEL,
        timeout: float = settings.HTTPX_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model_name = model_name
        # Use a single async client for all requests to reuse connections
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self.request_count = 0
        logger.info(f"LLMService initialized for model '{self.model_name}'.")

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(
        self,
        prompt: str,
        system_instruction: str | None,
        temperature: float | None,
        top_p: float | None,
        top_k: int | None,
        response_schema: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        messages: list[dict[str, str]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            _completion_token_param(self.api_base): settings.MAX_GENERATION_TOKENS,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if top_p is not None:
            payload["top_p"] = top_p
        if top_k is not None:
            payload["top_k"] = top_k
        if response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": response_schema.get("title", "response"),
                    "schema": response_schema,
                },
            }
        return payload

    def _log_llm_usage(
        self, usage_data: dict[str, int] | None, streamed: bool = False
    ) -> None:
        """Helper to log LLM token usage if available in the response."""
        stream_prefix = "Streamed " if streamed else ""
        if usage_data and isinstance(usage_data, dict):
            logger.info(
                f"{stream_prefix}LLM ('{self.model_name}') Usage - Prompt: {usage_data.get('prompt_tokens', 'N/A')} tk, "
                f"Comp: {usage_data.get('completion_tokens', 'N/A')} tk, Total: {usage_data.get('total_tokens', 'N/A')} tk"
            )
        else:
            logger.debug(
                f"{stream_prefix}LLM ('{self.model_name}') response missing 'usage' information."
            )

    async def _post_non_streaming(
        self, payload: dict[str, Any]
    ) -> tuple[str, dict[str, int] | None]:
        """Send a regular chat completion request."""
        payload["stream"] = False
        response = await self._client.post(
            f"{self.api_base}/chat/completions",
            json=payload,
            headers=self._headers(),
        )
        response.raise_for_status()
        data = response.json()
        raw_text = ""
        if data.get("choices") and len(data["choices"]) > 0:
            message = data["choices"][0].get("message")
            if message and message.get("content"):
                raw_text = message["content"]
        else:
            logger.error(
                f"LLM ('{payload['model']}') Invalid response structure - missing choices/content despite 200 OK: {data}"
            )
        return raw_text, data.get("usage")

    async def _post_streaming(
        self, payload: dict[str, Any], on_chunk: ChunkCallback
    ) -> tuple[str, dict[str, int] | None]:
        """Send a streaming chat completion request, forwarding each fragment."""
        payload["stream"] = True
        accumulated = ""
        usage: dict[str, int] | None = None
        async with self._client.stream(
            "POST",
            f"{self.api_base}/chat/completions",
            json=payload,
            headers=self._headers(),
        ) as response_stream:
            if response_stream.is_error:
                await response_stream.aread()
            response_stream.raise_for_status()
            async for line in response_stream.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data_json_str = line[len("data: ") :].strip()
                if data_json_str == "[DONE]":
                    break
                chunk_data = json.loads(data_json_str)
                if chunk_data.get("choices"):
                    delta = chunk_data["choices"][0].get("delta", {})
                    content_piece = delta.get("content")
                    if content_piece:
                        accumulated += content_piece
                        on_chunk(content_piece)
                    if chunk_data["choices"][0].get("finish_reason") is not None:
                        usage = chunk_data.get("usage") or usage
        return accumulated, usage

    async def generate_text(
        self,
        prompt: str,
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
    ) -> str:
        payload = self._build_payload(
            prompt, system_instruction, temperature, top_p, top_k, response_schema
        )
        logger.debug(
            f"Calling LLM '{self.model_name}'. Temp: {temperature}, TopP: {top_p}, TopK: {top_k}, "
            f"Structured: {response_schema is not None}"
        )
        self.request_count += 1
        text, usage = await self._post_non_streaming(payload)
        self._log_llm_usage(usage)
        return text

    async def generate_text_streaming(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        system_instruction: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
    ) -> str:
        payload = self._build_payload(
            prompt, system_instruction, temperature, top_p, top_k
        )
        self.request_count += 1
        text, usage = await self._post_streaming(payload, on_chunk)
        self._log_llm_usage(usage, streamed=True)
        return text


_THINK_TAGS = (
    "think",
    "thought",
    "thinking",
    "reasoning",
    "reflection",
    "no_think",
)


def clean_model_response(text: str) -> str:
    """Strip reasoning tags, code fences and filler phrases from a response."""
    if not isinstance(text, str):
        logger.warning(
            f"clean_model_response received non-string input: {type(text)}. Returning empty string."
        )
        return ""

    cleaned_text = text
    for tag_name in _THINK_TAGS:
        cleaned_text = re.sub(
            rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
            "",
            cleaned_text,
            flags=re.DOTALL | re.IGNORECASE,
        )
        cleaned_text = re.sub(
            rf"<\s*/?\s*{tag_name}\s*/?\s*>", "", cleaned_text, flags=re.IGNORECASE
        )

    cleaned_text = re.sub(
        r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```",
        r"\1",
        cleaned_text,
        flags=re.DOTALL,
    )

    for pattern_str in (
        r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your)\s+[\w\s]+?:\s*",
        r"^\s*Certainly! Here is the text:\s*",
    ):
        cleaned_text = re.sub(pattern_str, "", cleaned_text, count=1, flags=re.IGNORECASE)

    final_text = cleaned_text.strip()
    final_text = re.sub(r"\n{3,}", "\n\n", final_text)
    if len(final_text) < len(text):
        logger.debug(
            f"Cleaning reduced text length from {len(text)} to {len(final_text)}."
        )
    return final_text


def extract_json_payload(text: str) -> str:
    """Return the JSON object or array embedded in ``text``, or ``text``."""
    cleaned = clean_model_response(text)
    if cleaned.startswith(("{", "[")):
        return cleaned
    match = re.search(r"(\{.*\}|\[.*\])", cleaned, re.DOTALL)
    return match.group(0) if match else cleaned


# Instantiate the service for other modules to import and use
llm_service = LLMService()
