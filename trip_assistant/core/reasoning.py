"""Multi-step reasoning over a single user utterance.

The engine classifies the utterance, pulls structured trip requirements out of
it, retrieves grounding knowledge, runs the reasoning steps for the intent
concurrently and turns their results into a typed recommendation. Every trace,
including failed ones, is persisted for audit.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

from pydantic import ValidationError

from trip_assistant.config import ReasoningSettings
from trip_assistant.core.intents import IntentClassifier
from trip_assistant.core.knowledge import KnowledgeBackend, KnowledgeQuery
from trip_assistant.core.store import TRACES, RecordStore
from trip_assistant.errors import InputValidationError, PersistenceError
from trip_assistant.middleware.event_collector import emit_event
from trip_assistant.models import (
    UNCLEAR_INTENT,
    BudgetAnalysis,
    DestinationInfo,
    Duration,
    GeneralAssistance,
    IntentResult,
    ReasoningStep,
    ReasoningTrace,
    ScoredArticle,
    StepKind,
    StepResult,
    StepStatus,
    TravelPlan,
    TripRequirements,
    UserProfile,
)

logger = logging.getLogger(__name__)

# ── Requirement extraction ───────────────────────────────────────────────────

_PLACE = r"([A-Z][\w'-]*(?:\s+[A-Z][\w'-]*)*)"

DESTINATION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"(?i:\b(?:go|going|head|heading|travel|travelling|traveling|trip|fly|flying|move|moving)\s+to)\s+" + _PLACE),
    re.compile(r"(?i:\bvisit(?:ing)?)\s+" + _PLACE),
    re.compile(r"(?i:\b(?:to|in))\s+" + _PLACE),
    re.compile(r"(?i:\b(?:to|visit|visiting))\s+([a-z][a-z'-]{2,})"),
)

# Words that follow "to"/"in"/"visit" without naming a place.
NON_PLACES = frozenset({
    "a", "an", "the", "i", "my", "our", "your", "me", "us", "it", "this", "that", "there", "here",
    "go", "be", "do", "see", "get", "have", "make", "know", "plan", "stay", "book", "travel", "visit",
    "find", "take", "spend", "try", "help", "learn", "explore", "eat", "figure", "start", "some",
    "about", "budget", "save", "compare", "choose", "pick", "leave", "return", "come", "bring",
    "january", "february", "march", "april", "may", "june", "july", "august", "september",
    "october", "november", "december", "monday", "tuesday", "wednesday", "thursday", "friday",
    "saturday", "sunday", "spring", "summer", "autumn", "fall", "winter",
    "relax", "enjoy", "check", "ask", "buy", "rent", "fly", "drive", "walk", "hike", "tour", "move",
    "head", "meet", "celebrate", "escape", "understand", "work",
})

_DURATION = re.compile(r"\b(\d+)\s*-?\s*(day|night|week|month)s?\b", re.IGNORECASE)
_DURATION_WORD = re.compile(r"\b(?:a|one)\s+(day|night|week|month)\b", re.IGNORECASE)
_WEEKEND = re.compile(r"\bweekend\b", re.IGNORECASE)

_AMOUNT = r"((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?)"

BUDGET_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\bbudget\s*(?:of|is|around|about|:)?\s*[$€£]?\s*" + _AMOUNT, re.IGNORECASE),
    re.compile(r"[$€£]\s*" + _AMOUNT),
    re.compile(_AMOUNT + r"\s*(?:dollars?|usd|euros?|eur|pounds?|gbp)\b", re.IGNORECASE),
)


def _extract_destination(text: str) -> Optional[str]:
    for pattern in DESTINATION_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip()
            if candidate.lower() in NON_PLACES:
                continue
            return candidate if candidate[0].isupper() else candidate.title()
    return None


def _extract_duration(text: str) -> Optional[Duration]:
    match = _DURATION.search(text)
    if match and int(match.group(1)) > 0:
        return Duration(value=int(match.group(1)), unit=match.group(2).lower() + "s")
    match = _DURATION_WORD.search(text)
    if match:
        return Duration(value=1, unit=match.group(1).lower() + "s")
    if _WEEKEND.search(text):
        return Duration(value=2, unit="days")
    return None


def _extract_budget(text: str) -> Optional[float]:
    for pattern in BUDGET_PATTERNS:
        match = pattern.search(text)
        if match:
            return float(match.group(1).replace(",", ""))
    return None


def describe_requirements(req: TripRequirements) -> Tuple[str, ...]:
    parts = []
    if req.destination:
        parts.append(f"destination={req.destination}")
    if req.duration is not None:
        parts.append(f"duration={req.duration.value} {req.duration.unit}")
    if req.budget is not None:
        parts.append(f"budget={req.budget:g}")
    return tuple(parts)


def extract_requirements(text: Any) -> TripRequirements:
    """Pull destination, duration and budget out of free text.

    Each field tries its patterns in order and keeps the first match. Fields
    without a match stay ``None``.
    """
    if not isinstance(text, str) or not text.strip():
        return TripRequirements()
    return TripRequirements(
        destination=_extract_destination(text),
        duration=_extract_duration(text),
        budget=_extract_budget(text),
    )


def coerce_requirements(raw: Any) -> Optional[TripRequirements]:
    """Read requirements handed over from a session or a caller.

    Raises InputValidationError when ``raw`` is not a requirements mapping.
    """
    if raw is None or isinstance(raw, TripRequirements):
        return raw
    try:
        return TripRequirements.model_validate(raw)
    except ValidationError as exc:
        raise InputValidationError(f"malformed requirements {raw!r}") from exc


# ── Knowledge retrieval ──────────────────────────────────────────────────────

STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "have", "want", "would", "like", "about",
    "what", "when", "where", "which", "who", "how", "can", "could", "should", "will", "you", "your",
    "our", "are", "was", "were", "been", "being", "some", "any", "into", "out", "there", "here",
    "please", "need", "help", "tell", "give", "get", "going", "plan", "trip", "travel", "days",
    "day", "week", "weeks", "month", "months", "also", "just", "really", "very", "much", "more",
    "its", "it's", "i'm", "let", "lets", "me", "my", "we", "us", "they", "them", "than", "then",
})

INTENT_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "travel_planning": ("destinations", "activities", "accommodation", "transportation"),
    "budget_analysis": ("budget", "accommodation", "transportation"),
    "destination_info": ("destinations", "culture", "food", "activities"),
    "recommendations": ("destinations", "activities", "food"),
    "safety_info": ("safety", "destinations"),
    "cultural_info": ("culture", "destinations"),
    "booking_help": ("accommodation", "transportation"),
}

_WORD = re.compile(r"[a-z][a-z'-]+")


def significant_keywords(text: Any, limit: int = 10) -> List[str]:
    if not isinstance(text, str):
        return []
    seen: List[str] = []
    for word in _WORD.findall(text.lower()):
        if len(word) < 3 or word in STOPWORDS or word in seen:
            continue
        seen.append(word)
        if len(seen) == limit:
            break
    return seen


# ── Steps ────────────────────────────────────────────────────────────────────


@dataclass
class StepContext:
    session_id: str
    utterance: str
    intent: IntentResult
    requirements: TripRequirements
    knowledge: Tuple[ScoredArticle, ...] = ()
    profile: Optional[UserProfile] = None
    extra: Dict[str, Any] = field(default_factory=dict)


StepExecutor = Callable[[ReasoningStep, StepContext], Awaitable[StepResult]]

EXECUTED_KINDS = (StepKind.RESEARCH, StepKind.PLANNING, StepKind.PERSONALIZATION, StepKind.GENERAL)

PLAN_INTENTS = ("travel_planning", "booking_help", "recommendations")
INFO_INTENTS = ("destination_info", "cultural_info", "safety_info")


class ReasoningEngine:
    """Produces a ``ReasoningTrace`` with a typed recommendation for an utterance.

    ``executors`` overrides the coroutine run for a step kind. Kinds without
    an executor of their own run the general executor.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        knowledge: KnowledgeBackend,
        records: RecordStore,
        profiler=None,
        settings: Optional[ReasoningSettings] = None,
        executors: Optional[Mapping[StepKind, StepExecutor]] = None,
    ):
        self.classifier = classifier
        self.knowledge = knowledge
        self.profiler = profiler
        self.settings = settings or ReasoningSettings()
        self._records = records
        self._executors: Dict[StepKind, StepExecutor] = {
            StepKind.RESEARCH: self._run_research,
            StepKind.PLANNING: self._run_planning,
            StepKind.PERSONALIZATION: self._run_personalization,
            StepKind.GENERAL: self._run_general,
        }
        if executors:
            self._executors.update(executors)

    async def reason(self, session_id: str, utterance: Any, context: Optional[Mapping[str, Any]] = None) -> ReasoningTrace:
        context = dict(context or {})
        text = utterance if isinstance(utterance, str) else ""
        started = time.perf_counter()
        intent: Optional[IntentResult] = None
        try:
            intent = self._resolve_intent(text, context)
            analysis = ReasoningStep(
                step_number=1,
                kind=StepKind.ANALYSIS,
                thought=f"User intent is {intent.type}",
                evidence=intent.matched_signals,
                confidence=intent.confidence,
            )
            requirements = extract_requirements(text).merged_over(self._context_requirements(context))
            knowledge = await self.retrieve_knowledge(text, intent, requirements)
            profile = await self._load_profile(context)

            step_ctx = StepContext(
                session_id=session_id,
                utterance=text,
                intent=intent,
                requirements=requirements,
                knowledge=knowledge,
                profile=profile,
                extra=context,
            )
            steps = self.plan_steps(step_ctx, first_number=2)
            results = await self.execute_steps(steps, step_ctx)
            scores = [analysis.confidence, *(r.confidence for r in results)]
            confidence = round(sum(scores) / len(scores), 4)
            recommendation = self.build_recommendation(step_ctx, results)

            trace = ReasoningTrace(
                session_id=session_id,
                intent=intent,
                requirements=requirements,
                steps=(analysis, *steps),
                results=tuple(results),
                knowledge=knowledge,
                recommendation=recommendation,
                confidence=confidence,
                processing_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        except Exception as exc:
            logger.exception("Reasoning failed for session %s", session_id)
            error_trace = ReasoningTrace(
                session_id=session_id,
                intent=intent or IntentResult(type=UNCLEAR_INTENT, confidence=0.0),
                steps=(
                    ReasoningStep(
                        step_number=1,
                        kind=StepKind.ERROR,
                        thought=f"Reasoning failed: {type(exc).__name__}: {exc}",
                        confidence=0.0,
                    ),
                ),
                processing_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            await self._persist(error_trace)
            emit_event(
                component="reasoning_engine",
                status="error",
                message="Reasoning pipeline failed",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            raise

        await self._persist(trace)
        logger.info(
            "Reasoning trace %s: intent=%s steps=%d confidence=%.2f recommendation=%s (%.0fms)",
            trace.trace_id, intent.type, len(trace.steps), trace.confidence,
            recommendation.type if recommendation else None, trace.processing_ms,
        )
        emit_event(
            component="reasoning_engine",
            status="completed",
            message=f"Reasoned over {len(trace.steps)} steps",
            details={
                "trace_id": trace.trace_id,
                "confidence": trace.confidence,
                "knowledge": len(knowledge),
                "recommendation": recommendation.type if recommendation else None,
            },
        )
        return trace

    def _resolve_intent(self, text: str, context: Dict[str, Any]) -> IntentResult:
        given = context.get("intent")
        if isinstance(given, IntentResult):
            return given
        return self.classifier.classify(text, context)

    @staticmethod
    def _context_requirements(context: Dict[str, Any]) -> Optional[TripRequirements]:
        raw = context.get("requirements")
        try:
            return coerce_requirements(raw)
        except InputValidationError as exc:
            logger.warning("Ignoring requirements in reasoning context: %s", exc)
            return None

    async def _load_profile(self, context: Dict[str, Any]) -> Optional[UserProfile]:
        user_id = context.get("user_id")
        if self.profiler is None or not user_id:
            return None
        return await self.profiler.get_or_create_profile(user_id)

    async def retrieve_knowledge(
        self,
        text: str,
        intent: IntentResult,
        requirements: TripRequirements,
    ) -> Tuple[ScoredArticle, ...]:
        """Search once per significant keyword, concurrently, and merge the hits."""
        keywords = significant_keywords(text, self.settings.max_keywords)
        if requirements.destination and requirements.destination.lower() not in keywords:
            keywords.insert(0, requirements.destination.lower())
        if not keywords:
            return ()
        categories = INTENT_CATEGORIES.get(intent.type, ())
        queries = [
            KnowledgeQuery(
                query_text=keyword,
                categories=categories,
                limit=self.settings.knowledge_per_keyword,
                threshold=self.settings.knowledge_threshold,
            )
            for keyword in keywords
        ]
        outcomes = await asyncio.gather(*(self._lookup(q) for q in queries), return_exceptions=True)

        merged: Dict[Tuple[str, Optional[str], Optional[str]], ScoredArticle] = {}
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Knowledge lookup for %r failed: %s: %s", query.query_text, type(outcome).__name__, outcome)
                continue
            for hit in outcome:
                current = merged.get(hit.identity)
                if current is None or hit.similarity > current.similarity:
                    merged[hit.identity] = hit
        ranked = sorted(merged.values(), key=lambda s: s.similarity, reverse=True)
        return tuple(ranked[: self.settings.knowledge_cap])

    async def _lookup(self, query: KnowledgeQuery) -> List[ScoredArticle]:
        return await asyncio.wait_for(self.knowledge.search(query), self.settings.lookup_timeout_seconds)

    def plan_steps(self, ctx: StepContext, first_number: int = 1) -> List[ReasoningStep]:
        """Choose the reasoning steps for the intent, with their preset confidences."""
        weights = self.settings.weights
        req = ctx.requirements
        where = req.destination or "an open destination"
        has_knowledge = bool(ctx.knowledge)
        sources = tuple(s.article.title for s in ctx.knowledge)
        specs: List[Tuple[StepKind, str, Tuple[str, ...], float]] = []

        research = (
            StepKind.RESEARCH,
            f"Gather background on {where}",
            sources,
            weights.research_with_knowledge if has_knowledge else weights.research_without_knowledge,
        )
        personalization = (StepKind.PERSONALIZATION, "Adapt the answer to the traveler's profile", (), weights.personalization)

        if ctx.intent.type in PLAN_INTENTS:
            specs.append((
                StepKind.PLANNING,
                f"Structure a trip to {where}",
                describe_requirements(req),
                weights.planning_with_destination if req.destination else weights.planning_without_destination,
            ))
            specs.append(research)
            specs.append(personalization)
        elif ctx.intent.type == "budget_analysis":
            specs.append((
                StepKind.BUDGET_ASSESSMENT,
                "Assess whether the budget fits the trip",
                (f"budget={req.budget}",) if req.budget is not None else (),
                weights.budget_with_amount if req.budget is not None else weights.budget_without_amount,
            ))
            specs.append(research)
        elif ctx.intent.type in INFO_INTENTS:
            specs.append((
                StepKind.INFORMATION_GATHERING,
                f"Collect {ctx.intent.family or 'general'} information about {where}",
                sources,
                weights.information_with_sources if has_knowledge else weights.information_without_sources,
            ))
            specs.append(research)
        else:
            specs.append((StepKind.GENERAL, "Offer general travel assistance", (), weights.general))

        return [
            ReasoningStep(step_number=first_number + i, kind=kind, thought=thought, evidence=evidence, confidence=conf)
            for i, (kind, thought, evidence, conf) in enumerate(specs)
        ]

    async def execute_steps(self, steps: Sequence[ReasoningStep], ctx: StepContext) -> List[StepResult]:
        """Run every step concurrently. A failed step does not stop the others."""
        executors = [
            self._executors[step.kind] if step.kind in EXECUTED_KINDS else self._executors[StepKind.GENERAL]
            for step in steps
        ]
        outcomes = await asyncio.gather(
            *(executor(step, ctx) for executor, step in zip(executors, steps)),
            return_exceptions=True,
        )
        results = []
        for step, outcome in zip(steps, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Reasoning step %d (%s) failed: %s: %s", step.step_number, step.kind.value, type(outcome).__name__, outcome)
                results.append(StepResult(
                    step_number=step.step_number,
                    status=StepStatus.ERROR,
                    confidence=0.0,
                    error=f"{type(outcome).__name__}: {outcome}",
                ))
            else:
                results.append(outcome)
        return results

    async def _run_general(self, step: ReasoningStep, ctx: StepContext) -> StepResult:
        return StepResult(
            step_number=step.step_number,
            status=StepStatus.COMPLETED,
            confidence=step.confidence,
            evidence=step.evidence,
        )

    async def _run_research(self, step: ReasoningStep, ctx: StepContext) -> StepResult:
        findings = {s.article.title: s.article.summary for s in ctx.knowledge}
        return StepResult(
            step_number=step.step_number,
            status=StepStatus.COMPLETED,
            confidence=step.confidence,
            evidence=tuple(findings),
            data={"findings": findings},
        )

    async def _run_planning(self, step: ReasoningStep, ctx: StepContext) -> StepResult:
        req = ctx.requirements
        structure = {"overview": f"Trip to {req.destination}" if req.destination else "Destination still open"}
        if req.duration is not None:
            days = req.duration.in_days()
            structure["schedule"] = f"{days} day(s): arrival and orientation, {max(days - 2, 0)} full day(s) of exploring, departure"
        else:
            structure["schedule"] = "Trip length to be decided"
        if req.budget is not None:
            structure["budget"] = f"Work within a total budget of {req.budget:,.0f}"
        activity_sources = [s.article.title for s in ctx.knowledge if s.article.category in ("activities", "destinations")]
        if activity_sources:
            structure["highlights"] = ", ".join(activity_sources)
        return StepResult(
            step_number=step.step_number,
            status=StepStatus.COMPLETED,
            confidence=step.confidence,
            evidence=step.evidence,
            data={"structure": structure},
        )

    async def _run_personalization(self, step: ReasoningStep, ctx: StepContext) -> StepResult:
        profile = ctx.profile
        if profile is None or not profile.personas:
            return StepResult(
                step_number=step.step_number,
                status=StepStatus.COMPLETED,
                confidence=self.settings.weights.general,
                data={"personas": []},
            )
        names = [p.persona_name for p in profile.personas]
        return StepResult(
            step_number=step.step_number,
            status=StepStatus.COMPLETED,
            confidence=step.confidence,
            evidence=tuple(names),
            data={"personas": names},
        )

    def build_recommendation(self, ctx: StepContext, results: Sequence[StepResult]):
        intent = ctx.intent.type
        if intent in PLAN_INTENTS:
            return self._travel_plan(ctx, results)
        if intent == "budget_analysis":
            return self._budget_analysis(ctx)
        if intent in INFO_INTENTS:
            return self._destination_info(ctx)
        return GeneralAssistance(
            query=ctx.utterance,
            response="I can plan trips, estimate budgets and share destination information. Where would you like to go?",
        )

    @staticmethod
    def _completed_data(results: Sequence[StepResult], key: str):
        for result in results:
            if result.status == StepStatus.COMPLETED and key in result.data:
                return result.data[key]
        return None

    def _travel_plan(self, ctx: StepContext, results: Sequence[StepResult]) -> TravelPlan:
        req = ctx.requirements
        personas = self._completed_data(results, "personas") or []
        structure = self._completed_data(results, "structure") or {}
        return TravelPlan(
            destination=req.destination,
            duration=req.duration,
            budget=req.budget,
            personalized=bool(personas),
            personas=tuple(personas),
            structure=structure,
            sources=tuple(s.article.title for s in ctx.knowledge),
        )

    def _budget_analysis(self, ctx: StepContext) -> BudgetAnalysis:
        req = ctx.requirements
        daily = None
        if req.budget is not None and req.duration is not None:
            daily = round(req.budget / req.duration.in_days(), 2)

        if daily is not None:
            feasibility = "feasible" if daily >= self.settings.feasible_daily_budget else "challenging"
        elif req.budget is not None:
            feasibility = "feasible" if req.budget >= self.settings.feasible_total_budget else "challenging"
        else:
            feasibility = "unknown"

        tips = []
        if feasibility == "challenging":
            tips += ["Stay in hostels or shared apartments", "Travel in shoulder season", "Use public transport"]
        elif feasibility == "feasible":
            tips += ["Book popular sights in advance", "Keep 10% aside for surprises"]
        else:
            tips.append("Share a total budget and trip length for a daily estimate")
        return BudgetAnalysis(
            budget=req.budget,
            destination=req.destination,
            daily_budget=daily,
            feasibility=feasibility,
            recommendations=tuple(tips),
        )

    def _destination_info(self, ctx: StepContext) -> DestinationInfo:
        information = {s.article.title: s.article.summary for s in ctx.knowledge}
        return DestinationInfo(
            destination=ctx.requirements.destination,
            information=information,
            sources=tuple(information),
        )

    async def _persist(self, trace: ReasoningTrace) -> None:
        try:
            await self._records.save(TRACES, trace.trace_id, trace.model_dump(mode="json"))
        except PersistenceError:
            logger.warning("Reasoning trace %s was not persisted", trace.trace_id, exc_info=True)
