from unittest.mock import AsyncMock

import pytest
from agents.finalize_agent import FinalizeAgent, compile_book
from core.errors import BestEffortCheckFailure
from core.generative_client import GenerativeClient
from core.resilience import ResilienceMonitor

from models import Chapter, ChapterAnalysis, ChapterPlan, GenerationSession


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

    async def generate_text_streaming(self, prompt, on_chunk, **kwargs):  # pragma: no cover
        raise NotImplementedError


def _agent(service) -> FinalizeAgent:
    return FinalizeAgent(
        GenerativeClient(
            service, monitor=ResilienceMonitor(), sleep=AsyncMock(), jitter=0, max_attempts=1
        )
    )


def _chapter(index: int, content: str) -> Chapter:
    return Chapter(
        index=index,
        title=f"Part {index}",
        plan=ChapterPlan(title=f"Part {index}", summary="s"),
        content=content,
    )


@pytest.mark.asyncio
async def test_polish_accepts_output_within_band():
    agent = _agent(CannedService("b" * 110))
    assert await agent.polish_chapter(_chapter(1, "a" * 100)) == "b" * 110


@pytest.mark.asyncio
async def test_polish_rejects_output_outside_band():
    agent = _agent(CannedService("b" * 20))
    assert await agent.polish_chapter(_chapter(1, "a" * 100)) is None


@pytest.mark.asyncio
async def test_polish_service_failure_is_best_effort():
    agent = _agent(CannedService(RuntimeError("overloaded")))
    with pytest.raises(BestEffortCheckFailure):
        await agent.polish_chapter(_chapter(1, "a" * 100))


@pytest.mark.asyncio
async def test_transition_rewrites_only_the_ending():
    head = "H" * 3000
    ending = "E" * 1500
    service = CannedService("A smoother ending.")
    agent = _agent(service)
    result = await agent.refine_transition(_chapter(1, head + ending), _chapter(2, "Next."))

    assert result == head + "A smoother ending."
    assert "H" * 10 not in service.prompts[0]
    assert "Next." in service.prompts[0]


@pytest.mark.asyncio
async def test_transition_skipped_without_content():
    agent = _agent(CannedService())
    assert await agent.refine_transition(_chapter(1, ""), _chapter(2, "x")) is None


@pytest.mark.asyncio
async def test_consolidation_uses_book_summaries():
    session = GenerationSession(premise="p", chapter_count=3)
    session.chapter_summaries = {1: "Mara finds the ledger", 2: "The flood"}
    chapter = _chapter(2, "c" * 100)
    session.chapters = [_chapter(1, "x"), chapter]
    service = CannedService("d" * 100)
    result = await _agent(service).consolidate_chapter(session, chapter)

    assert result == "d" * 100
    assert "Mara finds the ledger" in service.prompts[0]


def test_compile_book_layout_and_metadata():
    session = GenerationSession(premise="A drowned city", chapter_count=2, world_name="Lowmere")
    first = _chapter(1, "  First text.  ")
    first.analysis = ChapterAnalysis(
        summary="one", end_time_of_chapter="dusk", primary_emotion="dread"
    )
    session.chapters = [first, _chapter(2, "Second text.")]
    session.chapter_summaries = {1: "one"}

    book = compile_book(session, "The Ledger")

    assert book.text.startswith("# The Ledger\n\n")
    assert "\n\n## Chapter 1: Part 1\n\nFirst text.\n\n" in book.text
    assert book.text.index("Chapter 1") < book.text.index("Chapter 2")
    assert book.metadata["world_name"] == "Lowmere"
    assert book.metadata["chapter_count"] == 2
    assert book.metadata["timeline"]["1"]["end_time_of_chapter"] == "dusk"
    assert book.metadata["emotional_arc"]["1"]["primary_emotion"] == "dread"
    assert "2" not in book.metadata["timeline"]


def test_compile_book_is_deterministic():
    session = GenerationSession(premise="p", chapter_count=1)
    session.chapters = [_chapter(1, "Only chapter.")]
    assert compile_book(session, "T") == compile_book(session, "T")
