import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from trip_assistant.config import SynthesizerSettings
from trip_assistant.core.cache import ResponseCache
from trip_assistant.core.completion import CompletionProvider, CompletionRequest
from trip_assistant.core.intents import CLARIFICATION_SUGGESTIONS, IntentClassifier
from trip_assistant.core.locks import KeyedLock
from trip_assistant.core.personas import PersonaProfiler
from trip_assistant.core.reasoning import ReasoningEngine, describe_requirements
from trip_assistant.core.store import CONVERSATIONS, SNAPSHOTS, RecordStore
from trip_assistant.errors import PersistenceError, ProviderError
from trip_assistant.middleware.event_collector import emit_event
from trip_assistant.middleware.retry import MODEL_BACKOFF_FACTOR, call_with_retry
from trip_assistant.models import (
    BudgetAnalysis,
    DestinationInfo,
    GeneralAssistance,
    IntentResult,
    ReasoningTrace,
    Role,
    SynthesizedReply,
    TravelPlan,
    Turn,
    UserProfile,
    utcnow,
)
from trip_assistant.prompts.system_prompt import (
    COMPLEX_INSTRUCTION,
    PERSONA_INSTRUCTION,
    PREFERENCES_INSTRUCTION,
    RECOMMENDATION_INSTRUCTION,
    REQUIREMENTS_INSTRUCTION,
    SYSTEM_PROMPT,
    URGENT_INSTRUCTION,
)

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "Sorry, something went wrong on my side while preparing your answer. "
    "Could you try again in a moment?"
)
DEGRADED_REPLY = (
    "I can't reach my planning service right now, so here is a quick answer. "
    "Ask again in a moment for a fuller reply."
)

REASONING_FAMILIES = ("planning", "booking")

REFERENCE_PATTERNS = {
    "pronoun": re.compile(r"\b(it|that|there|this|them|those|these)\b", re.IGNORECASE),
    "follow_up": re.compile(r"\b(also|another|what about|how about|and then|more)\b", re.IGNORECASE),
    "clarification": re.compile(r"\b(what do you mean|clarify|explain|i meant|instead|rather)\b", re.IGNORECASE),
}

_CONDITIONAL = re.compile(r"\b(if|unless|but|however|although|whether|or)\b", re.IGNORECASE)

URGENCY_PATTERNS = (
    ("high", re.compile(r"\b(urgent|emergency|asap|immediately|right now|stranded|lost my passport|missed my flight)\b", re.IGNORECASE)),
    ("medium", re.compile(r"\b(soon|quickly|tomorrow|tonight|this week|deadline|last minute)\b", re.IGNORECASE)),
)

_ADVENTURE_WORDS = re.compile(r"\b(hike|hiking|trek|trekking|adventure|climb|dive|diving|surf|safari)\b", re.IGNORECASE)
_FAMILY_WORDS = re.compile(r"\b(kids|children|family|son|daughter)\b", re.IGNORECASE)

INTENT_SUGGESTIONS: Dict[str, Tuple[str, ...]] = {
    "travel_planning": ("Create a detailed itinerary", "Find accommodation options", "Estimate the total cost"),
    "budget_analysis": ("Show a daily cost breakdown", "Find cheaper travel dates", "Compare budget accommodation"),
    "destination_info": ("Best time to visit", "Top attractions", "Local transport tips"),
    "recommendations": ("Plan a trip around this idea", "Compare two destinations"),
    "safety_info": ("Check entry requirements", "Find emergency numbers"),
    "cultural_info": ("Learn basic local phrases", "Find cultural events"),
    "booking_help": ("Compare flight prices", "Shortlist hotels", "Check cancellation policies"),
}
GENERAL_SUGGESTIONS = ("Plan a new trip", "Get destination ideas")
MAX_SUGGESTIONS = 4


@dataclass(frozen=True)
class ContextAnalysis:
    intent: IntentResult
    references: Tuple[str, ...]
    complexity: str
    urgency: str


def assess_complexity(text: str) -> str:
    score = 0
    words = len(text.split())
    if words > 50:
        score += 2
    elif words > 20:
        score += 1
    if text.count("?") > 1:
        score += 1
    conditionals = len(_CONDITIONAL.findall(text))
    if conditionals >= 2:
        score += 2
    elif conditionals == 1:
        score += 1
    if score >= 3:
        return "high"
    return "medium" if score >= 1 else "low"


def assess_urgency(text: str) -> str:
    for level, pattern in URGENCY_PATTERNS:
        if pattern.search(text):
            return level
    return "low"


def render_recommendation(recommendation) -> Optional[str]:
    """Plain-text rendering of a recommendation, used when no completion is available."""
    if isinstance(recommendation, TravelPlan):
        where = recommendation.destination or "your destination"
        lines = [f"Here's a starting point for your trip to {where}:"]
        lines += [f"- {name.capitalize()}: {value}" for name, value in recommendation.structure.items()]
        return "\n".join(lines)
    if isinstance(recommendation, BudgetAnalysis):
        parts = [f"Budget check: {recommendation.feasibility}."]
        if recommendation.daily_budget is not None:
            parts.append(f"That is about {recommendation.daily_budget:,.0f} per day.")
        parts += recommendation.recommendations
        return " ".join(parts)
    if isinstance(recommendation, DestinationInfo):
        if not recommendation.information:
            return None
        lines = [f"About {recommendation.destination or 'this destination'}:"]
        lines += [f"- {title}: {summary}" for title, summary in recommendation.information.items()]
        return "\n".join(lines)
    if isinstance(recommendation, GeneralAssistance):
        return recommendation.response
    return None


class ContextSynthesizer:
    """Builds a personalized reply for one user message.

    Classification, optional reasoning, persona-aware instructions, a cached
    completion and intent-keyed suggestions are combined into a
    ``SynthesizedReply``. Provider failures degrade to a template reply that
    is never cached; any other failure yields a fallback reply.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        reasoning: ReasoningEngine,
        profiler: PersonaProfiler,
        cache: ResponseCache,
        completion: CompletionProvider,
        records: RecordStore,
        settings: Optional[SynthesizerSettings] = None,
        model: Optional[str] = None,
    ):
        self.classifier = classifier
        self.reasoning = reasoning
        self.profiler = profiler
        self.cache = cache
        self.completion = completion
        self.settings = settings or SynthesizerSettings()
        self.model = model
        self._records = records
        self._locks = KeyedLock()

    async def respond(self, user_id: str, utterance: Any, options: Optional[Mapping[str, Any]] = None) -> SynthesizedReply:
        options = dict(options or {})
        text = utterance.strip() if isinstance(utterance, str) else ""
        conversation_id = options.get("conversation_id") or user_id
        try:
            return await self._respond(user_id, conversation_id, text, options)
        except Exception as exc:
            logger.exception("Failed to synthesize a reply for user %s", user_id)
            emit_event(
                component="context_synthesizer",
                status="error",
                message="Fell back to a safe reply",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return SynthesizedReply(
                text=FALLBACK_REPLY,
                suggestions=list(CLARIFICATION_SUGGESTIONS[:3]),
                confidence=0.0,
                provenance={"source": "error", "error": type(exc).__name__},
            )

    async def _respond(self, user_id: str, conversation_id: str, text: str, options: Dict[str, Any]) -> SynthesizedReply:
        history = await self.conversation_history(conversation_id, self.settings.history_turns)
        profile = await self.profiler.get_or_create_profile(user_id)
        analysis = self.analyze_context(text, history, options.get("current_topic"))
        intent = analysis.intent

        trace: Optional[ReasoningTrace] = None
        if self.should_reason(text, analysis, options.get("use_reasoning")):
            trace = await self.reasoning.reason(
                conversation_id,
                text,
                {"intent": intent, "requirements": options.get("requirements"), "user_id": user_id},
            )

        instructions = self.build_instructions(profile, analysis, trace)
        facts = self.grounding_facts(trace)
        request = CompletionRequest(
            system_instructions=instructions,
            grounding_facts=facts,
            prior_turns=tuple(history),
            user_turn=text,
            model=options.get("model") or self.model,
            temperature=self.settings.temperature if options.get("temperature") is None else options["temperature"],
        )
        key = self.cache.make_key(
            [t.content for t in history] + [text],
            {
                "model": request.model,
                "temperature": request.temperature,
                "instructions": instructions,
                "facts": list(facts),
            },
        )

        degraded = False
        reply_text = self.cache.get(key)
        source = "cache"
        if reply_text is None:
            try:
                reply_text = await call_with_retry(
                    lambda: self.completion.complete(request),
                    name="completion",
                    component="completion_provider",
                    max_attempts=self.settings.completion_max_attempts,
                    initial_delay=self.settings.completion_initial_delay,
                    backoff_factor=MODEL_BACKOFF_FACTOR,
                    timeout=options.get("timeout") or self.settings.completion_timeout_seconds,
                )
                source = "completion"
                self.cache.set(key, reply_text)
            except ProviderError as exc:
                logger.warning("Completion unavailable, degrading reply: %s: %s", type(exc).__name__, exc)
                degraded = True
                source = "template"
                reply_text = self.degraded_text(trace)

        suggestions = self.suggestions_for(intent)
        confidence = 0.5
        if not intent.is_unclear:
            confidence += 0.2
        if analysis.complexity == "low":
            confidence += 0.2
        if trace is not None:
            confidence += 0.1
        confidence = round(min(1.0, confidence), 4)

        await self._record_side_effects(user_id, conversation_id, text, reply_text, analysis, trace)

        provenance = {
            "source": source,
            "intent": intent.type,
            "complexity": analysis.complexity,
            "urgency": analysis.urgency,
            "references": list(analysis.references),
            "reasoning": trace is not None,
            "trace_id": trace.trace_id if trace else None,
            "degraded": degraded,
        }
        emit_event(
            component="context_synthesizer",
            status="degraded" if degraded else "completed",
            message=f"Reply from {source}",
            details={"intent": intent.type, "confidence": confidence, "reasoning": trace is not None},
        )
        return SynthesizedReply(
            text=reply_text,
            suggestions=suggestions,
            confidence=confidence,
            degraded=degraded,
            provenance=provenance,
            intent=intent,
            trace=trace,
        )

    def analyze_context(self, text: str, history: List[Turn], current_topic: Optional[str] = None) -> ContextAnalysis:
        previous_intent = next((t.intent for t in reversed(history) if t.role == Role.USER and t.intent), None)
        family_of = getattr(self.classifier, "family_of", None)
        if current_topic is None and previous_intent and family_of is not None:
            current_topic = family_of(previous_intent)
        intent = self.classifier.classify(text, {"current_topic": current_topic, "previous_intent": previous_intent})
        references = tuple(kind for kind, pattern in REFERENCE_PATTERNS.items() if pattern.search(text))
        return ContextAnalysis(
            intent=intent,
            references=references,
            complexity=assess_complexity(text),
            urgency=assess_urgency(text),
        )

    def should_reason(self, text: str, analysis: ContextAnalysis, override: Optional[bool] = None) -> bool:
        if override is not None:
            return bool(override)
        return (
            analysis.complexity == "high"
            or analysis.intent.family in REASONING_FAMILIES
            or len(text) > self.settings.long_message_chars
        )

    def build_instructions(self, profile: UserProfile, analysis: ContextAnalysis, trace: Optional[ReasoningTrace]) -> str:
        parts = [SYSTEM_PROMPT.rstrip()]
        primary = profile.primary_persona
        if primary is not None:
            persona = self.profiler.persona(primary.persona_id)
            parts.append(PERSONA_INSTRUCTION.format(
                name=primary.persona_name,
                description=persona.description if persona else "no description",
            ))
        preferences = []
        if profile.travel_style:
            preferences.append("style " + ", ".join(profile.travel_style))
        if profile.preferred_destinations:
            preferences.append("likes " + ", ".join(profile.preferred_destinations))
        if profile.budget_range:
            preferences.append(f"{profile.budget_range} budget")
        if profile.group_size:
            preferences.append(f"travels {profile.group_size}")
        if preferences:
            parts.append(PREFERENCES_INSTRUCTION.format(preferences="; ".join(preferences)))
        if analysis.urgency == "high":
            parts.append(URGENT_INSTRUCTION)
        if analysis.complexity == "high":
            parts.append(COMPLEX_INSTRUCTION)
        if trace is not None:
            described = describe_requirements(trace.requirements)
            if described:
                parts.append(REQUIREMENTS_INSTRUCTION.format(requirements=", ".join(described)))
            if trace.recommendation is not None:
                parts.append(RECOMMENDATION_INSTRUCTION.format(
                    recommendation=json.dumps(trace.recommendation.model_dump(mode="json"), sort_keys=True)
                ))
        return "\n\n".join(parts)

    @staticmethod
    def grounding_facts(trace: Optional[ReasoningTrace]) -> Tuple[str, ...]:
        if trace is None:
            return ()
        facts = [f"{s.article.title}: {s.article.summary} {s.article.content}".strip() for s in trace.knowledge]
        return tuple(facts)

    @staticmethod
    def degraded_text(trace: Optional[ReasoningTrace]) -> str:
        rendered = render_recommendation(trace.recommendation) if trace is not None else None
        return f"{DEGRADED_REPLY}\n\n{rendered}" if rendered else DEGRADED_REPLY

    @staticmethod
    def suggestions_for(intent: IntentResult) -> List[str]:
        if intent.is_unclear:
            return list(CLARIFICATION_SUGGESTIONS[:MAX_SUGGESTIONS])
        suggestions: List[str] = []
        for item in (*INTENT_SUGGESTIONS.get(intent.type, ()), *intent.suggested_actions, *GENERAL_SUGGESTIONS):
            if item not in suggestions:
                suggestions.append(item)
        return suggestions[:MAX_SUGGESTIONS]

    async def conversation_history(self, conversation_id: str, limit: Optional[int] = None) -> List[Turn]:
        try:
            record = await self._records.load(CONVERSATIONS, conversation_id)
        except PersistenceError:
            logger.warning("Conversation memory unavailable for %s", conversation_id, exc_info=True)
            return []
        turns = [Turn.model_validate(t) for t in (record or {}).get("turns", [])]
        return turns[-limit:] if limit else turns

    async def _record_side_effects(
        self,
        user_id: str,
        conversation_id: str,
        text: str,
        reply_text: str,
        analysis: ContextAnalysis,
        trace: Optional[ReasoningTrace],
    ) -> None:
        intent = analysis.intent
        user_turn = Turn(role=Role.USER, content=text, intent=intent.type, confidence=intent.confidence)
        assistant_turn = Turn(role=Role.ASSISTANT, content=reply_text)
        async with self._locks.hold(conversation_id):
            try:
                record = await self._records.load(CONVERSATIONS, conversation_id) or {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "turns": [],
                }
                record["turns"] = [*record["turns"], user_turn.model_dump(mode="json"), assistant_turn.model_dump(mode="json")]
                await self._records.save(CONVERSATIONS, conversation_id, record)
            except PersistenceError:
                logger.warning("Turns for conversation %s were not persisted", conversation_id, exc_info=True)

        await self.profiler.record_user_behavior(
            user_id,
            "message",
            behavior_signals(text, intent),
            session_id=conversation_id,
        )

        snapshot = {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "intent": intent.type,
            "confidence": intent.confidence,
            "references": list(analysis.references),
            "complexity": analysis.complexity,
            "urgency": analysis.urgency,
            "trace_id": trace.trace_id if trace else None,
            "updated_at": utcnow().isoformat(),
        }
        try:
            await self._records.save(SNAPSHOTS, conversation_id, snapshot)
        except PersistenceError:
            logger.warning("Context snapshot for %s was not persisted", conversation_id, exc_info=True)


def behavior_signals(text: str, intent: IntentResult) -> Dict[str, Any]:
    """Behavior event payload: the intent plus any persona signals in the message."""
    data: Dict[str, Any] = {"intent": intent.type}
    if intent.type == "budget_analysis":
        data["budget_focused"] = True
    if _ADVENTURE_WORDS.search(text):
        data["adventure_level"] = "high"
    if _FAMILY_WORDS.search(text):
        data["preferred_group_size"] = "family"
    return data
