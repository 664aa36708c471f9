import pytest

from trip_assistant.core.intents import (
    CLARIFICATION_SUGGESTIONS,
    IntentDefinition,
    KeywordIntentClassifier,
)


@pytest.fixture
def classifier():
    return KeywordIntentClassifier()


def test_gibberish_is_unclear_with_clarification_suggestions(classifier):
    result = classifier.classify("zzqxw qply")

    assert result.type == "unclear"
    assert result.is_unclear
    assert result.confidence < 0.3
    assert list(result.suggested_actions) == list(CLARIFICATION_SUGGESTIONS)


def test_planning_request_scores_high(classifier):
    result = classifier.classify("I want to plan a trip to Rome")

    assert result.type == "travel_planning"
    assert result.family == "planning"
    assert result.confidence >= 0.8
    assert set(result.matched_signals) == {"plan", "trip"}


def test_score_is_capped_at_one(classifier):
    result = classifier.classify("plan a trip, travel, visit, vacation and holiday itinerary")

    assert result.confidence == 1.0


@pytest.mark.parametrize("value", [None, "", "   ", 42, {"x": 1}])
def test_malformed_input_never_raises(classifier, value):
    result = classifier.classify(value)

    assert result.type == "unclear"
    assert 0.0 <= result.confidence <= 1.0


def test_topic_bonus_applies_to_matching_family(classifier):
    plain = classifier.classify("how expensive is it")
    with_topic = classifier.classify("how expensive is it", {"current_topic": "budget"})

    assert plain.type == "budget_analysis"
    assert with_topic.confidence == pytest.approx(plain.confidence + 0.2)


def test_continuity_bonus_applies_to_previous_intent(classifier):
    plain = classifier.classify("which hotel")
    continued = classifier.classify("which hotel", {"previous_intent": "booking_help"})

    assert continued.confidence == pytest.approx(plain.confidence + 0.15)


def test_bonuses_do_not_rescue_intents_without_keywords(classifier):
    result = classifier.classify("zzqxw", {"current_topic": "planning", "previous_intent": "travel_planning"})

    assert result.type == "unclear"


def test_ties_break_by_registry_order():
    registry = (
        IntentDefinition(name="first", family="a", keywords=("beach",), boost=0.5),
        IntentDefinition(name="second", family="b", keywords=("sun",), boost=0.5),
    )
    result = KeywordIntentClassifier(registry).classify("sun and beach")

    assert result.type == "first"


def test_strong_runner_up_is_offered_as_alternative(classifier):
    result = classifier.classify("plan a trip with a cheap budget and low cost")

    assert result.type in ("travel_planning", "budget_analysis")
    assert len(result.alternatives) == 1
    assert result.alternatives[0].confidence > 0.5
    assert result.alternatives[0].type != result.type


def test_context_object_with_attributes_is_accepted(classifier):
    class Context:
        current_topic = "safety"
        previous_intent = None

    result = classifier.classify("is it safe", Context())

    assert result.type == "safety_info"
    assert result.confidence == pytest.approx(0.6)
