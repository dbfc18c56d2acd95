import prompt_renderer
from jinja2 import DictLoader, Environment
from pydantic import BaseModel

from models import GenerationSession, StorySettings


def test_render_prompt_with_custom_env(monkeypatch):
    env = Environment(
        loader=DictLoader({"greet.j2": "Hello {{ name }}"}), autoescape=False
    )
    monkeypatch.setattr(prompt_renderer, "_env", env)
    result = prompt_renderer.render_prompt("greet.j2", {"name": "Bob"})
    assert result == "Hello Bob"


class Person(BaseModel):
    name: str


def test_render_prompt_with_pydantic_object(monkeypatch):
    env = Environment(
        loader=DictLoader({"greet.j2": "Hello {{ person.name }}"}), autoescape=False
    )
    monkeypatch.setattr(prompt_renderer, "_env", env)
    result = prompt_renderer.render_prompt("greet.j2", {"person": Person(name="Alice")})
    assert result == "Hello Alice"


def test_tojson_with_pydantic_object(monkeypatch):
    env = Environment(
        loader=DictLoader({"obj.j2": "{{ person | tojson }}"}),
        autoescape=False,
    )
    env.filters["tojson"] = prompt_renderer._tojson
    monkeypatch.setattr(prompt_renderer, "_env", env)
    result = prompt_renderer.render_prompt("obj.j2", {"person": Person(name="Alice")})
    assert result == '{"name": "Alice"}'


def test_no_think_directive_defaults_from_settings(monkeypatch):
    env = Environment(
        loader=DictLoader({"t.j2": "{% if no_think %}/no_think{% endif %}ok"}),
        autoescape=False,
    )
    monkeypatch.setattr(prompt_renderer, "_env", env)
    monkeypatch.setattr(prompt_renderer.settings, "ENABLE_LLM_NO_THINK_DIRECTIVE", True)
    assert prompt_renderer.render_prompt("t.j2", {}) == "/no_thinkok"
    assert prompt_renderer.render_prompt("t.j2", {"no_think": False}) == "ok"


def test_outline_template_includes_story_settings():
    session = GenerationSession(
        premise="A lighthouse keeper hears voices",
        chapter_count=4,
        story_settings=StorySettings(genre="gothic", tone="bleak"),
    )
    prompt = prompt_renderer.render_prompt(
        "outline_agent/outline.j2", prompt_renderer.story_context(session)
    )
    assert "lighthouse keeper" in prompt
    assert "gothic" in prompt
    assert "bleak" in prompt
    assert "4" in prompt
