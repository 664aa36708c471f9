import pytest

from conftest import RecordingCompletion, fast_settings
from trip_assistant.agent import build_assistant
from trip_assistant.config import SynthesizerSettings
from trip_assistant.core.store import SNAPSHOTS
from trip_assistant.core.synthesizer import DEGRADED_REPLY, FALLBACK_REPLY, assess_complexity, assess_urgency
from trip_assistant.errors import ProviderError

PLAN_ROME = "Plan a trip to Rome for 5 days"


def assistant_with(completion, **synthesizer):
    settings = fast_settings()
    if synthesizer:
        settings = settings.model_copy(update={
            "synthesizer": SynthesizerSettings(**{
                "completion_max_attempts": 1,
                "completion_initial_delay": 0.0,
                **synthesizer,
            })
        })
    return build_assistant(settings, completion=completion, skills=())


@pytest.mark.asyncio
async def test_identical_context_is_served_from_cache(assistant, completion):
    first = await assistant.respond("u1", PLAN_ROME, {"conversation_id": "c1"})
    second = await assistant.respond("u1", PLAN_ROME, {"conversation_id": "c2"})

    assert len(completion.calls) == 1
    assert first.provenance["source"] == "completion"
    assert second.provenance["source"] == "cache"
    assert second.text == first.text
    assert assistant.cache.hits == 1


@pytest.mark.asyncio
async def test_planning_intent_triggers_reasoning(assistant, completion):
    reply = await assistant.respond("u1", PLAN_ROME)

    assert reply.trace is not None
    assert reply.trace.recommendation.type == "travel_plan"
    assert reply.provenance["reasoning"] is True
    request = completion.calls[0]
    assert any("Rome city guide" in fact for fact in request.grounding_facts)
    assert "destination=Rome" in request.system_instructions


@pytest.mark.asyncio
async def test_short_information_question_skips_reasoning(assistant):
    reply = await assistant.respond("u1", "Tell me about the local culture")

    assert reply.trace is None
    assert reply.provenance["reasoning"] is False


@pytest.mark.asyncio
async def test_long_message_triggers_reasoning(assistant):
    text = "I have been thinking a lot lately " + "and dreaming about faraway places " * 8

    reply = await assistant.respond("u1", text)

    assert len(text) > 200
    assert reply.trace is not None


@pytest.mark.asyncio
async def test_reasoning_can_be_forced_off(assistant):
    reply = await assistant.respond("u1", PLAN_ROME, {"use_reasoning": False})

    assert reply.trace is None


@pytest.mark.asyncio
async def test_confidence_formula(assistant):
    planned = await assistant.respond("u1", PLAN_ROME, {"conversation_id": "c1"})
    unclear = await assistant.respond("u1", "zzqxw qply", {"conversation_id": "c2"})

    assert planned.confidence == 1.0
    assert unclear.confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_suggestions_stay_between_two_and_four(assistant):
    for text in (PLAN_ROME, "zzqxw qply", "Is Bangkok safe at night?", "book a hotel"):
        reply = await assistant.respond("u1", text, {"conversation_id": text})
        assert 2 <= len(reply.suggestions) <= 4


@pytest.mark.asyncio
async def test_provider_timeout_degrades_and_is_not_cached():
    completion = RecordingCompletion(delay=1.0)
    assistant = assistant_with(completion, completion_timeout_seconds=0.05)

    reply = await assistant.respond("u1", PLAN_ROME)

    assert reply.degraded is True
    assert reply.provenance["source"] == "template"
    assert reply.text.startswith(DEGRADED_REPLY)
    assert "Rome" in reply.text
    assert len(assistant.cache) == 0


@pytest.mark.asyncio
async def test_provider_error_degrades():
    assistant = assistant_with(RecordingCompletion(error=ProviderError("quota exceeded")))

    reply = await assistant.respond("u1", "hello there")

    assert reply.degraded is True
    assert reply.text == DEGRADED_REPLY


@pytest.mark.asyncio
async def test_unexpected_error_returns_safe_fallback(assistant, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(assistant.reasoning, "reason", broken)

    reply = await assistant.respond("u1", PLAN_ROME)

    assert reply.text == FALLBACK_REPLY
    assert reply.confidence == 0.0
    assert reply.provenance["source"] == "error"
    assert reply.suggestions


@pytest.mark.asyncio
async def test_turns_behavior_and_snapshot_are_recorded(assistant, completion):
    await assistant.respond("u1", PLAN_ROME, {"conversation_id": "c1"})
    await assistant.respond("u1", "what about the food there?", {"conversation_id": "c1"})

    history = await assistant.synthesizer.conversation_history("c1")
    events = await assistant.profiler.behavior_history("u1")
    snapshot = await assistant.records.load(SNAPSHOTS, "c1")

    assert [t.role.value for t in history] == ["user", "assistant", "user", "assistant"]
    assert history[0].intent == "travel_planning"
    assert len(events) == 2
    assert snapshot["references"] == ["pronoun", "follow_up"]
    assert len(completion.calls[1].prior_turns) == 2


@pytest.mark.asyncio
async def test_persona_shapes_instructions(assistant, completion):
    await assistant.profiler.update_preferences("u1", budget_range="low", adventure_level="medium", group_size="small")
    await assistant.profiler.recompute_personas("u1")

    await assistant.respond("u1", "hello there")

    assert "Budget Explorer" in completion.calls[0].system_instructions


def test_complexity_and_urgency_levels():
    assert assess_complexity("Rome in May") == "low"
    assert assess_complexity("Should I go to Rome or Paris?") == "medium"
    assert assess_complexity("If flights are cheap, should I go to Rome or Paris? Or both?") == "high"
    assert assess_urgency("I lost my passport, help!") == "high"
    assert assess_urgency("I fly tomorrow") == "medium"
    assert assess_urgency("maybe next year") == "low"


@pytest.mark.asyncio
async def test_gibberish_is_answered_with_clarifying_suggestions(assistant):
    reply = await assistant.respond("u1", "zzqxw qply")

    assert reply.intent.type == "unclear"
    assert reply.suggestions
    assert all(isinstance(s, str) and s for s in reply.suggestions)
