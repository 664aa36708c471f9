import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Pattern, Protocol, Sequence, Tuple

from trip_assistant.middleware.event_collector import emit_event
from trip_assistant.models import UNCLEAR_INTENT, IntentAlternative, IntentResult

logger = logging.getLogger(__name__)

UNCLEAR_THRESHOLD = 0.3
ALTERNATIVE_THRESHOLD = 0.5
TOPIC_BONUS = 0.2
CONTINUITY_BONUS = 0.15

CLARIFICATION_SUGGESTIONS: Tuple[str, ...] = (
    "Tell me where you'd like to go",
    "Share your travel dates or trip length",
    "Give me a rough budget for the trip",
    "Ask about a destination's culture, safety or highlights",
)


@dataclass(frozen=True)
class IntentDefinition:
    name: str
    family: str
    keywords: Tuple[str, ...]
    boost: float = 0.4
    suggested_actions: Tuple[str, ...] = ()


DEFAULT_INTENTS: Tuple[IntentDefinition, ...] = (
    IntentDefinition(
        name="travel_planning",
        family="planning",
        keywords=("plan", "trip", "travel", "visit", "vacation", "holiday", "journey", "itinerary"),
        boost=0.4,
        suggested_actions=("Build a day-by-day itinerary", "Compare where to stay", "Estimate the trip budget"),
    ),
    IntentDefinition(
        name="budget_analysis",
        family="budget",
        keywords=("budget", "cost", "price", "expensive", "cheap", "money", "afford"),
        boost=0.4,
        suggested_actions=("Break down the budget by category", "Find cost-saving alternatives"),
    ),
    IntentDefinition(
        name="destination_info",
        family="information",
        keywords=("about", "information", "details", "tell me", "what is", "how is"),
        boost=0.3,
        suggested_actions=("Show top highlights", "Share practical travel tips"),
    ),
    IntentDefinition(
        name="recommendations",
        family="recommendation",
        keywords=("recommend", "suggest", "best", "top", "ideas", "options"),
        boost=0.35,
        suggested_actions=("Suggest destinations for my style", "List things to do"),
    ),
    IntentDefinition(
        name="safety_info",
        family="safety",
        keywords=("safe", "dangerous", "security", "warning", "risk", "emergency"),
        boost=0.4,
        suggested_actions=("Check travel advisories", "Share emergency contacts"),
    ),
    IntentDefinition(
        name="cultural_info",
        family="culture",
        keywords=("culture", "customs", "tradition", "etiquette", "local"),
        boost=0.35,
        suggested_actions=("Explain local etiquette", "Suggest cultural experiences"),
    ),
    IntentDefinition(
        name="booking_help",
        family="booking",
        keywords=("book", "reserve", "ticket", "hotel", "flight"),
        boost=0.4,
        suggested_actions=("Compare flight options", "Find hotels that fit my budget"),
    ),
)


class IntentClassifier(Protocol):
    def classify(self, utterance: Any, context: Any = None) -> IntentResult:
        ...


def _keyword_pattern(keyword: str) -> Pattern[str]:
    words = [re.escape(w) for w in keyword.lower().split()]
    return re.compile(r"(?<!\w)" + r"\s+".join(words) + r"s?(?!\w)", re.IGNORECASE)


def _context_value(context: Any, name: str) -> Optional[str]:
    if context is None:
        return None
    if isinstance(context, dict):
        value = context.get(name)
    else:
        value = getattr(context, name, None)
    return value if isinstance(value, str) else None


class KeywordIntentClassifier:
    """Deterministic keyword scorer over an immutable intent registry.

    Scores add the boost of every matched keyword (capped at 1.0), then a topic
    bonus when ``context["current_topic"]`` equals the intent family and a
    continuity bonus when ``context["previous_intent"]`` equals the intent.
    Bonuses only apply to intents with at least one keyword match.
    """

    def __init__(self, registry: Sequence[IntentDefinition] = DEFAULT_INTENTS):
        self.registry: Tuple[IntentDefinition, ...] = tuple(registry)
        self._patterns: List[Tuple[IntentDefinition, List[Tuple[str, Pattern[str]]]]] = [
            (definition, [(kw, _keyword_pattern(kw)) for kw in definition.keywords])
            for definition in self.registry
        ]

    def family_of(self, intent: Optional[str]) -> Optional[str]:
        for definition in self.registry:
            if definition.name == intent:
                return definition.family
        return None

    def score(self, utterance: Any, context: Any = None) -> List[Tuple[IntentDefinition, float, Tuple[str, ...]]]:
        """Score every registered intent, in registry order."""
        text = utterance if isinstance(utterance, str) else ("" if utterance is None else str(utterance))
        topic = _context_value(context, "current_topic")
        previous = _context_value(context, "previous_intent")

        scored = []
        for definition, patterns in self._patterns:
            matched = tuple(kw for kw, pattern in patterns if pattern.search(text))
            if not matched:
                scored.append((definition, 0.0, ()))
                continue
            value = min(1.0, definition.boost * len(matched))
            if topic is not None and topic == definition.family:
                value += TOPIC_BONUS
            if previous is not None and previous == definition.name:
                value += CONTINUITY_BONUS
            scored.append((definition, round(min(1.0, value), 4), matched))
        return scored

    def classify(self, utterance: Any, context: Any = None) -> IntentResult:
        scored = self.score(utterance, context)

        best_index = 0
        for index, (_, value, _) in enumerate(scored):
            # Strict comparison keeps the earliest registry entry on ties.
            if value > scored[best_index][1]:
                best_index = index
        best, best_score, signals = scored[best_index] if scored else (None, 0.0, ())

        if best is None or best_score < UNCLEAR_THRESHOLD:
            result = IntentResult(
                type=UNCLEAR_INTENT,
                confidence=best_score,
                suggested_actions=CLARIFICATION_SUGGESTIONS,
            )
        else:
            runner_up = max(
                (item for i, item in enumerate(scored) if i != best_index),
                key=lambda item: item[1],
                default=None,
            )
            alternatives: Tuple[IntentAlternative, ...] = ()
            if runner_up is not None and runner_up[1] > ALTERNATIVE_THRESHOLD:
                alternatives = (
                    IntentAlternative(
                        type=runner_up[0].name,
                        confidence=runner_up[1],
                        message=f"Did you also want help with {runner_up[0].family}?",
                    ),
                )
            result = IntentResult(
                type=best.name,
                family=best.family,
                confidence=best_score,
                matched_signals=signals,
                suggested_actions=best.suggested_actions,
                alternatives=alternatives,
            )

        logger.info(
            "Intent classified as %s (confidence=%.2f, signals=%s)",
            result.type, result.confidence, list(result.matched_signals),
        )
        emit_event(
            component="intent_classifier",
            status="classified",
            message=f"Intent {result.type}",
            details={"confidence": result.confidence, "signals": list(result.matched_signals)},
        )
        return result
