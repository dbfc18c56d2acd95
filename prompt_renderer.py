# prompt_renderer.py
"""Utilities for rendering LLM prompts using Jinja2 templates."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from config import settings
from jinja2 import Environment, FileSystemLoader
from jinja2.utils import htmlsafe_json_dumps
from pydantic import BaseModel

if TYPE_CHECKING:  # pragma: no cover
    from models import GenerationSession

PROMPTS_PATH = Path(__file__).parent / "prompts"
_env = Environment(
    loader=FileSystemLoader(PROMPTS_PATH),
    autoescape=False,
    keep_trailing_newline=True,
)


def _default_json_serializer(value: Any) -> Any:
    """Serialize pydantic models for JSON output."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    raise TypeError(
        f"Object of type {value.__class__.__name__} is not JSON serializable"
    )


def _tojson(value: Any, indent: int | None = None) -> str:
    """JSON filter that supports pydantic models."""
    dumps: Callable[..., str] = lambda obj, **kwargs: json.dumps(
        obj, default=_default_json_serializer, **kwargs
    )
    kwargs: dict[str, Any] = {}
    if indent is not None:
        kwargs["indent"] = indent
    return htmlsafe_json_dumps(value, dumps=dumps, **kwargs)


_env.filters["tojson"] = _tojson


def story_context(session: GenerationSession) -> dict[str, Any]:
    """Context shared by every prompt rendered for ``session``."""
    return {
        "no_think": settings.ENABLE_LLM_NO_THINK_DIRECTIVE,
        "premise": session.premise,
        "story_settings": session.story_settings,
        "chapter_count": session.chapter_count,
    }


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render a Jinja2 template from the prompts directory."""
    context.setdefault("no_think", settings.ENABLE_LLM_NO_THINK_DIRECTIVE)
    template = _env.get_template(template_name)
    return template.render(**context)
