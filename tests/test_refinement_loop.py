import pytest
from core.errors import ResponseValidationError
from processing.refinement_loop import (
    LOW_CONFIDENCE_NOTE,
    TARGETED_EDIT_NOTE,
    RefinementLoop,
    RefinementPolicy,
)

from models import (
    ChapterPlan,
    EventKind,
    QualityEvaluation,
    RefinementDecision,
    RefinementStrategy,
)

PLAN = ChapterPlan(title="The Fog", summary="A detective walks the docks.")
TEXT = "x" * 1000


class ScriptedAgent:
    """Returns canned decisions, revisions and scores in order."""

    def __init__(self, decisions, revisions=(), scores=()):
        self.decisions = list(decisions)
        self.revisions = list(revisions)
        self.scores = list(scores)
        self.executed: list[tuple[RefinementStrategy, str]] = []
        self.decide_calls = 0
        self.evaluate_calls = 0

    async def decide(self, content, critique, plan, chapter_index):
        self.decide_calls += 1
        item = self.decisions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def execute(self, strategy, content, critique, plan, chapter_index):
        self.executed.append((strategy, critique))
        item = self.revisions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def evaluate(self, original, revised, critique, plan, chapter_index):
        self.evaluate_calls += 1
        item = self.scores.pop(0)
        if isinstance(item, Exception):
            raise item
        return QualityEvaluation(quality_score=item)


def _decision(strategy: str, confidence: float = 80) -> RefinementDecision:
    return RefinementDecision(strategy=strategy, confidence=confidence, reasoning="r")


@pytest.mark.asyncio
async def test_skip_short_circuits_without_execution():
    agent = ScriptedAgent([_decision("skip", 95)])
    result = await RefinementLoop(agent, RefinementPolicy()).run(TEXT, "fine", PLAN, 1)

    assert result.content == TEXT
    assert result.accepted is True
    assert result.iterations == 1
    assert agent.executed == []
    assert agent.evaluate_calls == 0


@pytest.mark.asyncio
async def test_threshold_met_stops_after_one_iteration():
    agent = ScriptedAgent([_decision("light_polish")], ["y" * 1000], [85])
    result = await RefinementLoop(agent, RefinementPolicy()).run(TEXT, "c", PLAN, 1)

    assert result.content == "y" * 1000
    assert result.quality_score == 85
    assert result.iterations == 1
    assert agent.decide_calls == 1


@pytest.mark.asyncio
async def test_targeted_edit_escalates_to_regenerate():
    agent = ScriptedAgent(
        [_decision("targeted-edit", 80), _decision("light-polish", 80)],
        ["y" * 1000, "z" * 1100],
        [50, 72],
    )
    result = await RefinementLoop(agent, RefinementPolicy()).run(TEXT, "weak", PLAN, 2)

    assert [s for s, _ in agent.executed] == [
        RefinementStrategy.TARGETED_EDIT,
        RefinementStrategy.REGENERATE,
    ]
    assert TARGETED_EDIT_NOTE in agent.executed[1][1]
    assert result.content == "z" * 1100
    assert result.iterations == 2


@pytest.mark.asyncio
async def test_low_confidence_forces_regenerate():
    agent = ScriptedAgent(
        [_decision("light-polish", 40), _decision("light-polish", 40)],
        ["y" * 1000, "z" * 1000],
        [30, 30],
    )
    result = await RefinementLoop(agent, RefinementPolicy()).run(TEXT, "", PLAN, 1)

    assert agent.executed[1][0] is RefinementStrategy.REGENERATE
    assert LOW_CONFIDENCE_NOTE in agent.executed[1][1]
    assert result.iterations == 2
    assert result.history[-1].note == "Max iterations reached"


@pytest.mark.asyncio
async def test_iterations_are_bounded():
    agent = ScriptedAgent(
        [_decision("light-polish")] * 5, ["y" * 1000] * 5, [10] * 5
    )
    policy = RefinementPolicy(max_iterations=3)
    result = await RefinementLoop(agent, policy).run(TEXT, "bad", PLAN, 1)

    assert agent.decide_calls == 3
    assert result.iterations == 3


@pytest.mark.asyncio
async def test_out_of_band_revision_is_discarded():
    events = []
    agent = ScriptedAgent([_decision("targeted-edit")], ["short"], [90])
    loop = RefinementLoop(agent, RefinementPolicy(), event_sink=events.append)
    result = await loop.run(TEXT, "c", PLAN, 1)

    assert result.content == TEXT
    assert any(
        e.kind is EventKind.WARNING and "discarded" in e.message for e in events
    )


@pytest.mark.asyncio
async def test_unusable_execution_keeps_content():
    agent = ScriptedAgent(
        [_decision("regenerate")], [ResponseValidationError("empty")], [80]
    )
    result = await RefinementLoop(agent, RefinementPolicy()).run(TEXT, "c", PLAN, 1)
    assert result.content == TEXT


@pytest.mark.asyncio
async def test_evaluation_failure_uses_default_score():
    agent = ScriptedAgent(
        [_decision("light-polish")], ["y" * 1000], [ResponseValidationError("bad")]
    )
    result = await RefinementLoop(agent, RefinementPolicy()).run(TEXT, "c", PLAN, 1)
    assert result.quality_score == 75
    assert result.iterations == 1


@pytest.mark.asyncio
async def test_decision_failure_falls_back_to_heuristics():
    agent = ScriptedAgent([RuntimeError("no json")])
    result = await RefinementLoop(agent, RefinementPolicy()).run(
        TEXT, "CHAPTER IS STRONG", PLAN, 1
    )
    assert result.decision.strategy is RefinementStrategy.SKIP
    assert result.content == TEXT


@pytest.mark.asyncio
async def test_events_emitted_for_a_revision():
    events = []
    agent = ScriptedAgent([_decision("light-polish")], ["y" * 1000], [90])
    await RefinementLoop(agent, RefinementPolicy(), event_sink=events.append).run(
        TEXT, "c", PLAN, 3
    )
    kinds = [e.kind for e in events]
    assert kinds[:3] == [EventKind.ITERATION, EventKind.DECISION, EventKind.EXECUTION]
    assert EventKind.DIFF in kinds
    assert EventKind.EVALUATION in kinds
    assert all(e.unit_index == 3 for e in events)
