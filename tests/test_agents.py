import json
from unittest.mock import AsyncMock

import pytest
from agents.drafting_agent import DraftingAgent
from agents.editing_agent import EditingAgent
from agents.extraction_agent import ExtractionAgent
from agents.outline_agent import OutlineAgent, fallback_title
from agents.planner_agent import PlannerAgent
from core.errors import (
    BestEffortCheckFailure,
    PermanentServiceError,
    ResponseValidationError,
)
from core.generative_client import GenerativeClient
from core.resilience import ResilienceMonitor

from models import Chapter, ChapterPlan, GenerationSession, RefinementStrategy


class CannedService:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def generate_text(self, prompt, **kwargs):
        self.prompts.append(prompt)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_text_streaming(self, prompt, on_chunk, **kwargs):
        self.prompts.append(prompt)
        text = self.responses.pop(0)
        for word in text.split(" "):
            on_chunk(word + " ")
        return text


def _client(service) -> GenerativeClient:
    return GenerativeClient(
        service, monitor=ResilienceMonitor(), sleep=AsyncMock(), jitter=0, max_attempts=2
    )


def _session(**kwargs) -> GenerationSession:
    data = {"premise": "A detective in a drowned city", "chapter_count": 3}
    data.update(kwargs)
    return GenerationSession(**data)


def _plans(n: int) -> list[dict]:
    return [{"title": f"Chapter {i}", "summary": f"Summary {i}"} for i in range(1, n + 1)]


def test_parse_plan_accepts_wrapped_and_bare_lists():
    planner = PlannerAgent(_client(CannedService()))
    wrapped = planner._parse_llm_chapter_plan_output(
        json.dumps({"chapters": _plans(3)}), 3
    )
    bare = planner._parse_llm_chapter_plan_output(json.dumps(_plans(4)), 3)
    assert [p.title for p in wrapped] == ["Chapter 1", "Chapter 2", "Chapter 3"]
    assert len(bare) == 3


def test_parse_plan_maps_alternate_keys():
    planner = PlannerAgent(_client(CannedService()))
    raw = json.dumps(
        [
            {"Chapter Title": "Fog", "Summary": "s", "sceneBreakdown": "docks"},
            {"title": "Rain", "summary": "s", "Tension Level": 7},
            {"title": "Ash", "summary": "s"},
        ]
    )
    plans = planner._parse_llm_chapter_plan_output(raw, 3)
    assert plans[0].title == "Fog"
    assert plans[0].scene_breakdown == "docks"
    assert plans[1].tension_level == 7


def test_parse_plan_recovers_array_from_noise():
    planner = PlannerAgent(_client(CannedService()))
    raw = "Plan follows: " + json.dumps(_plans(3)) + " trailing"
    assert len(planner._parse_llm_chapter_plan_output(raw, 3)) == 3


@pytest.mark.parametrize(
    "raw",
    ["", "not json at all", json.dumps({"chapters": "nope"}), json.dumps(_plans(2))],
)
def test_parse_plan_rejects_unusable_output(raw):
    planner = PlannerAgent(_client(CannedService()))
    with pytest.raises(ResponseValidationError):
        planner._parse_llm_chapter_plan_output(raw, 3)


def test_parse_plan_skips_items_without_summary():
    planner = PlannerAgent(_client(CannedService()))
    items = _plans(3) + [{"title": "No summary"}]
    items.insert(1, {"title": "Broken"})
    assert len(planner._parse_llm_chapter_plan_output(json.dumps(items), 3)) == 3


@pytest.mark.asyncio
async def test_plan_chapters_renders_outline():
    service = CannedService(json.dumps({"chapters": _plans(3)}))
    plans = await PlannerAgent(_client(service)).plan_chapters(
        _session(outline="THE OUTLINE TEXT", world_name="Lowmere")
    )
    assert len(plans) == 3
    assert "THE OUTLINE TEXT" in service.prompts[0]
    assert "Lowmere" in service.prompts[0]


@pytest.mark.asyncio
async def test_outline_includes_premise_and_count():
    service = CannedService("1. Setup\n2. Twist")
    outline = await OutlineAgent(_client(service)).generate_outline(_session())
    assert outline.startswith("1. Setup")
    assert "drowned city" in service.prompts[0]


@pytest.mark.asyncio
async def test_empty_outline_is_rejected():
    with pytest.raises(ResponseValidationError):
        await OutlineAgent(_client(CannedService("   "))).generate_outline(_session())


@pytest.mark.asyncio
async def test_title_falls_back_when_service_fails():
    service = CannedService(RuntimeError("invalid api key"))
    session = _session(outline="o")
    title = await OutlineAgent(_client(service)).generate_title(session)
    assert title == fallback_title(session.premise)
    assert title.startswith("A Novel: ")


@pytest.mark.asyncio
async def test_title_is_cleaned():
    service = CannedService('**Title:** "The Drowned Ledger"')
    title = await OutlineAgent(_client(service)).generate_title(_session(outline="o"))
    assert title == "The Drowned Ledger"


@pytest.mark.asyncio
async def test_extraction_builds_character_map():
    service = CannedService(
        json.dumps(
            {
                "characters": [
                    {"name": "Mara Voss", "description": "detective"},
                    {"name": "  ", "description": "nobody"},
                ]
            }
        ),
        '{"world_name": "Lowmere"}',
        '{"motifs": "water, ledgers"}',
    )
    agent = ExtractionAgent(_client(service))
    characters = await agent.extract_characters("outline")
    assert list(characters) == ["Mara Voss"]
    assert await agent.extract_world_name("outline") == "Lowmere"
    assert await agent.extract_motifs("outline") == ["water", "ledgers"]


@pytest.mark.asyncio
async def test_extraction_failure_propagates():
    agent = ExtractionAgent(_client(CannedService('{"characters": []}')))
    with pytest.raises(ResponseValidationError):
        await agent.extract_characters("outline")


@pytest.mark.asyncio
async def test_draft_streams_chunks_and_uses_previous_tail():
    session = _session(outline="o")
    session.chapters.append(
        Chapter(
            index=1,
            title="One",
            plan=ChapterPlan(title="One", summary="s"),
            content="EARLIER ENDING",
        )
    )
    service = CannedService("The second chapter begins")
    chunks: list[str] = []
    text = await DraftingAgent(_client(service)).draft_chapter(
        session, ChapterPlan(title="Two", summary="s"), 2, on_chunk=chunks.append
    )
    assert text == "The second chapter begins"
    assert "".join(chunks).strip() == "The second chapter begins"
    assert "EARLIER ENDING" in service.prompts[0]


@pytest.mark.asyncio
async def test_analysis_requires_summary():
    chapter = Chapter(index=1, title="One", plan=ChapterPlan(title="One", summary="s"), content="c")
    agent = DraftingAgent(_client(CannedService('{"summary": "", "word_count": "1200"}')))
    with pytest.raises(ResponseValidationError):
        await agent.analyze_chapter(chapter)


@pytest.mark.asyncio
async def test_analysis_coerces_numbers():
    chapter = Chapter(index=1, title="One", plan=ChapterPlan(title="One", summary="s"), content="c")
    agent = DraftingAgent(
        _client(CannedService('{"summary": "Mara finds the ledger", "word_count": "1200"}'))
    )
    analysis = await agent.analyze_chapter(chapter)
    assert analysis.word_count == 1200


@pytest.mark.asyncio
async def test_critique_failure_is_best_effort():
    chapter = Chapter(index=1, title="One", plan=ChapterPlan(title="One", summary="s"), content="c")
    agent = DraftingAgent(_client(CannedService(RuntimeError("invalid api key"))))
    with pytest.raises(BestEffortCheckFailure):
        await agent.critique_chapter(chapter)


@pytest.mark.asyncio
async def test_editing_execute_rejects_empty_output():
    agent = EditingAgent(_client(CannedService("  ")))
    with pytest.raises(ResponseValidationError):
        await agent.execute(
            RefinementStrategy.TARGETED_EDIT,
            "text",
            "critique",
            ChapterPlan(title="t", summary="s"),
            1,
        )


@pytest.mark.asyncio
async def test_editing_regenerate_truncates_long_chapters():
    service = CannedService("rewritten")
    agent = EditingAgent(_client(service))
    await agent.execute(
        RefinementStrategy.REGENERATE,
        "A" * 9000 + "TAILMARK",
        "c",
        ChapterPlan(title="t", summary="s"),
        1,
    )
    assert "TAILMARK" not in service.prompts[0]


@pytest.mark.asyncio
async def test_editing_service_errors_propagate():
    agent = EditingAgent(_client(CannedService(RuntimeError("invalid api key"))))
    with pytest.raises(PermanentServiceError):
        await agent.execute(
            RefinementStrategy.LIGHT_POLISH,
            "text",
            "c",
            ChapterPlan(title="t", summary="s"),
            1,
        )
