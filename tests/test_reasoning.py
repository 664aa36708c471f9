import pytest

from conftest import BrokenRecordStore
from trip_assistant.core.intents import KeywordIntentClassifier
from trip_assistant.core.knowledge import DEFAULT_ARTICLES, InMemoryKnowledgeBase
from trip_assistant.core.reasoning import (
    ReasoningEngine,
    coerce_requirements,
    extract_requirements,
    significant_keywords,
)
from trip_assistant.core.store import TRACES
from trip_assistant.errors import InputValidationError
from trip_assistant.models import (
    BudgetAnalysis,
    Duration,
    GeneralAssistance,
    KnowledgeArticle,
    PersonaAssignment,
    ScoredArticle,
    StepKind,
    StepStatus,
    TravelPlan,
    TripRequirements,
    UserProfile,
)


def make_engine(records, knowledge=None, **kwargs):
    return ReasoningEngine(
        KeywordIntentClassifier(),
        knowledge or InMemoryKnowledgeBase(DEFAULT_ARTICLES),
        records,
        **kwargs,
    )


class FailingKnowledge:
    async def search(self, query):
        raise RuntimeError("vector index offline")


class RepeatingKnowledge:
    """Returns the same article for every query."""

    def __init__(self):
        self.article = KnowledgeArticle(id="rome", title="Rome city guide", category="destinations", city="Rome")

    async def search(self, query):
        return [ScoredArticle(article=self.article, similarity=0.9)]


class ExplodingClassifier:
    def classify(self, utterance, context=None):
        raise RuntimeError("classifier crashed")


@pytest.mark.parametrize(
    "text, destination, duration, budget",
    [
        ("I want to go to Rome with a budget of $2000 for 5 days", "Rome", Duration(value=5, unit="days"), 2000.0),
        ("Plan a trip to Paris for 2 weeks", "Paris", Duration(value=2, unit="weeks"), None),
        ("thinking about visiting tokyo, around 1,500 dollars", "Tokyo", None, 1500.0),
        ("plan a 7 day trip to Rome with a 1000 dollar budget", "Rome", Duration(value=7, unit="days"), 1000.0),
        ("flying to Dublin on 300 pounds", "Dublin", None, 300.0),
        ("Heading to New York City for a weekend", "New York City", Duration(value=2, unit="days"), None),
        ("I need to plan something in June", None, None, None),
    ],
)
def test_extract_requirements(text, destination, duration, budget):
    req = extract_requirements(text)

    assert req.destination == destination
    assert req.duration == duration
    assert req.budget == budget


def test_extract_requirements_tolerates_non_text():
    assert extract_requirements(None) == TripRequirements()
    assert extract_requirements(123) == TripRequirements()


def test_significant_keywords_drop_stopwords_and_duplicates():
    assert significant_keywords("Tell me about the food and the food markets in Bangkok") == ["food", "markets", "bangkok"]


@pytest.mark.asyncio
async def test_planning_request_yields_grounded_travel_plan(records):
    engine = make_engine(records)

    trace = await engine.reason("s1", "Plan a trip to Rome for 5 days")

    assert trace.intent.type == "travel_planning"
    assert isinstance(trace.recommendation, TravelPlan)
    assert trace.recommendation.destination == "Rome"
    assert trace.recommendation.duration == Duration(value=5, unit="days")
    assert "Rome city guide" in trace.recommendation.sources
    assert trace.steps[0].kind == StepKind.ANALYSIS
    assert [s.step_number for s in trace.steps] == list(range(1, len(trace.steps) + 1))
    assert trace.confidence == pytest.approx((0.8 + 0.9 + 0.8 + 0.7) / 4, abs=1e-4)


@pytest.mark.asyncio
async def test_context_requirements_fill_unspecified_fields(records):
    engine = make_engine(records)

    trace = await engine.reason("s1", "make it 3 days", {"requirements": {"destination": "Rome", "budget": 900}})

    assert trace.requirements.destination == "Rome"
    assert trace.requirements.duration == Duration(value=3, unit="days")
    assert trace.requirements.budget == 900


def test_coerce_requirements_rejects_malformed_input():
    assert coerce_requirements(None) is None
    assert coerce_requirements({"destination": "Rome"}) == TripRequirements(destination="Rome")
    with pytest.raises(InputValidationError):
        coerce_requirements({"budget": -50})
    with pytest.raises(InputValidationError):
        coerce_requirements("Rome please")


@pytest.mark.asyncio
async def test_malformed_context_requirements_are_ignored(records):
    engine = make_engine(records)

    trace = await engine.reason("s1", "Plan a trip to Rome for 5 days", {"requirements": {"budget": "lots"}})

    assert trace.requirements == TripRequirements(destination="Rome", duration=Duration(value=5, unit="days"))
    assert isinstance(trace.recommendation, TravelPlan)


class StaticProfiler:
    async def get_or_create_profile(self, user_id):
        assignment = PersonaAssignment(persona_id="culture_seeker", persona_name="Culture Seeker", confidence=0.9)
        return UserProfile(user_id=user_id, personas=(assignment,))


@pytest.mark.asyncio
async def test_paris_request_end_to_end(records):
    engine = make_engine(records, profiler=StaticProfiler())

    trace = await engine.reason("s1", "plan a 5 day trip to Paris with $800 budget", {"user_id": "u1"})

    assert trace.intent.type == "travel_planning"
    assert trace.intent.confidence >= 0.8
    assert trace.requirements == TripRequirements(destination="Paris", duration=Duration(value=5, unit="days"), budget=800.0)
    assert isinstance(trace.recommendation, TravelPlan)
    assert trace.recommendation.destination == "Paris"
    assert "Paris city guide" in trace.recommendation.sources
    assert [r.confidence for r in trace.results] == [0.9, 0.8, 0.8]
    assert trace.confidence == pytest.approx((0.8 + 0.9 + 0.8 + 0.8) / 4, abs=1e-4)


@pytest.mark.asyncio
async def test_overall_confidence_counts_the_analysis_step(records):
    engine = make_engine(records)

    trace = await engine.reason("s1", "zzqxw qply")

    scores = [trace.steps[0].confidence, *(r.confidence for r in trace.results)]
    assert trace.steps[0].kind == StepKind.ANALYSIS
    assert trace.confidence == pytest.approx(sum(scores) / len(scores), abs=1e-4)
    assert trace.confidence < trace.results[0].confidence


@pytest.mark.asyncio
async def test_budget_question_yields_budget_analysis(records):
    engine = make_engine(records)

    tight = await engine.reason("s1", "Is a budget of $350 enough for 7 days in Lisbon?")
    roomy = await engine.reason("s1", "Is a budget of $1400 enough for 7 days in Lisbon?")

    assert isinstance(tight.recommendation, BudgetAnalysis)
    assert tight.recommendation.daily_budget == 50.0
    assert tight.recommendation.feasibility == "challenging"
    assert roomy.recommendation.feasibility == "feasible"
    assert roomy.recommendation.destination == "Lisbon"


@pytest.mark.asyncio
async def test_unclear_utterance_yields_general_assistance(records):
    engine = make_engine(records)

    trace = await engine.reason("s1", "zzqxw qply")

    assert isinstance(trace.recommendation, GeneralAssistance)
    assert trace.recommendation.query == "zzqxw qply"


@pytest.mark.asyncio
async def test_failed_step_does_not_abort_the_others(records):
    async def broken_research(step, ctx):
        raise RuntimeError("research backend down")

    engine = make_engine(records, executors={StepKind.RESEARCH: broken_research})

    trace = await engine.reason("s1", "Plan a trip to Rome for 5 days")

    statuses = [r.status for r in trace.results]
    assert StepStatus.ERROR in statuses
    assert StepStatus.COMPLETED in statuses
    failed = next(r for r in trace.results if r.status == StepStatus.ERROR)
    assert failed.confidence == 0.0
    assert "research backend down" in failed.error
    assert isinstance(trace.recommendation, TravelPlan)
    assert trace.confidence == pytest.approx((0.8 + 0.9 + 0.0 + 0.7) / 4, abs=1e-4)


@pytest.mark.asyncio
async def test_failed_knowledge_lookup_is_skipped(records):
    engine = make_engine(records, knowledge=FailingKnowledge())

    trace = await engine.reason("s1", "Plan a trip to Rome for 5 days")

    assert trace.knowledge == ()
    assert isinstance(trace.recommendation, TravelPlan)


@pytest.mark.asyncio
async def test_knowledge_hits_are_deduplicated(records):
    engine = make_engine(records, knowledge=RepeatingKnowledge())

    trace = await engine.reason("s1", "Plan a trip to Rome with food, museums and ruins")

    assert len(trace.knowledge) == 1


@pytest.mark.asyncio
async def test_traces_are_persisted(records):
    engine = make_engine(records)

    trace = await engine.reason("s1", "Plan a trip to Rome for 5 days")

    stored = await records.load(TRACES, trace.trace_id)
    assert stored["session_id"] == "s1"
    assert stored["recommendation"]["type"] == "travel_plan"


@pytest.mark.asyncio
async def test_persistence_failure_is_tolerated():
    engine = make_engine(BrokenRecordStore())

    trace = await engine.reason("s1", "Plan a trip to Rome for 5 days")

    assert isinstance(trace.recommendation, TravelPlan)


@pytest.mark.asyncio
async def test_pipeline_failure_stores_error_trace_and_reraises(records):
    engine = ReasoningEngine(ExplodingClassifier(), InMemoryKnowledgeBase(DEFAULT_ARTICLES), records)

    with pytest.raises(RuntimeError, match="classifier crashed"):
        await engine.reason("s1", "Plan a trip to Rome")

    stored = await records.query(TRACES)
    assert len(stored) == 1
    assert stored[0]["steps"][0]["kind"] == "error"
    assert stored[0]["recommendation"] is None
