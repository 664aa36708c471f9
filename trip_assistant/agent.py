import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langgraph.store.base import BaseStore

from trip_assistant.config import Settings, load_settings
from trip_assistant.core.cache import ResponseCache
from trip_assistant.core.completion import ChatModelCompletionProvider, CompletionProvider
from trip_assistant.core.intents import KeywordIntentClassifier
from trip_assistant.core.knowledge import DEFAULT_ARTICLES, InMemoryKnowledgeBase, KnowledgeBackend
from trip_assistant.core.orchestrator import Orchestrator, OrchestratorReply
from trip_assistant.core.personas import PersonaProfiler
from trip_assistant.core.reasoning import ReasoningEngine
from trip_assistant.core.store import RecordStore, SessionStore
from trip_assistant.core.synthesizer import ContextSynthesizer
from trip_assistant.models import BehaviorEvent, IntentResult, ReasoningTrace, SynthesizedReply, UserProfile
from trip_assistant.skills import BudgetEstimateSkill, Skill, WeatherForecastSkill

logger = logging.getLogger(__name__)


class TripAssistant:
    """The operations the core exposes to its callers."""

    def __init__(
        self,
        *,
        settings: Settings,
        records: RecordStore,
        classifier: KeywordIntentClassifier,
        profiler: PersonaProfiler,
        reasoning: ReasoningEngine,
        cache: ResponseCache,
        synthesizer: ContextSynthesizer,
        orchestrator: Orchestrator,
    ):
        self.settings = settings
        self.records = records
        self.classifier = classifier
        self.profiler = profiler
        self.reasoning = reasoning
        self.cache = cache
        self.synthesizer = synthesizer
        self.orchestrator = orchestrator

    def classify_intent(self, text: Any, context: Any = None) -> IntentResult:
        return self.classifier.classify(text, context)

    async def reason(self, session_id: str, text: Any, context: Optional[Mapping[str, Any]] = None) -> ReasoningTrace:
        return await self.reasoning.reason(session_id, text, context)

    async def respond(self, user_id: str, text: Any, options: Optional[Mapping[str, Any]] = None) -> SynthesizedReply:
        return await self.synthesizer.respond(user_id, text, options)

    async def get_profile(self, user_id: str) -> UserProfile:
        return await self.profiler.get_or_create_profile(user_id)

    async def record_behavior(self, user_id: str, event: Mapping[str, Any]) -> BehaviorEvent:
        """Record one behavior event given as ``{"interaction_type", "data", "session_id", "force_recompute"}``."""
        return await self.profiler.record_user_behavior(
            user_id,
            str(event.get("interaction_type") or "interaction"),
            event.get("data") or {},
            session_id=event.get("session_id"),
            force_recompute=bool(event.get("force_recompute", False)),
        )

    def cache_get(self, key: str) -> Any:
        return self.cache.get(key)

    def cache_set(self, key: str, value: Any) -> None:
        self.cache.set(key, value)

    async def handle_message(self, participant_id: str, text: Any, timestamp: Optional[datetime] = None) -> OrchestratorReply:
        return await self.orchestrator.handle_turn(participant_id, text, timestamp)

    async def aclose(self) -> None:
        await self.cache.stop_sweeper()
        for skill in self.orchestrator.skills:
            close = getattr(skill, "aclose", None)
            if close is not None:
                await close()


def build_assistant(
    settings: Optional[Settings] = None,
    *,
    chat_model: Optional[BaseChatModel] = None,
    completion: Optional[CompletionProvider] = None,
    store: Optional[BaseStore] = None,
    knowledge: Optional[KnowledgeBackend] = None,
    skills: Optional[Sequence[Skill]] = None,
    profiler_rng=None,
) -> TripAssistant:
    """Wire the assistant components together.

    Without ``chat_model`` or ``completion`` the chat model is created from
    ``settings.model`` on first use, so building the assistant needs no
    provider credentials.
    """
    settings = settings or load_settings()
    records = RecordStore(store)
    classifier = KeywordIntentClassifier()
    profiler = PersonaProfiler(records, settings=settings.profiler, rng=profiler_rng)
    reasoning = ReasoningEngine(
        classifier,
        knowledge or InMemoryKnowledgeBase(DEFAULT_ARTICLES),
        records,
        profiler=profiler,
        settings=settings.reasoning,
    )
    cache = ResponseCache(settings.cache)
    if completion is None:
        completion = ChatModelCompletionProvider(
            chat_model,
            model_factory=lambda: init_chat_model(settings.model),
        )
    synthesizer = ContextSynthesizer(
        classifier,
        reasoning,
        profiler,
        cache,
        completion,
        records,
        settings=settings.synthesizer,
        model=settings.model,
    )
    if skills is None:
        skills = (WeatherForecastSkill(), BudgetEstimateSkill())
    orchestrator = Orchestrator(
        synthesizer,
        reasoning,
        classifier,
        SessionStore(records),
        records,
        skills=skills,
        settings=settings.orchestrator,
    )
    logger.info("Trip assistant ready (model=%s, skills=%s)", settings.model, [s.name for s in skills])
    return TripAssistant(
        settings=settings,
        records=records,
        classifier=classifier,
        profiler=profiler,
        reasoning=reasoning,
        cache=cache,
        synthesizer=synthesizer,
        orchestrator=orchestrator,
    )
