"""Conversation state machine.

One ``handle_turn`` call per inbound message. The orchestrator owns the
session: it loads it, archives it on end or inactivity, runs the synthesizer
and the matching skills concurrently under a request deadline, advances the
state and saves the session back as one record.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from trip_assistant.config import OrchestratorSettings
from trip_assistant.core.intents import CLARIFICATION_SUGGESTIONS, IntentClassifier
from trip_assistant.core.locks import KeyedLock
from trip_assistant.core.reasoning import ReasoningEngine, extract_requirements, significant_keywords
from trip_assistant.core.store import TRIP_PLANS, RecordStore, SessionStore
from trip_assistant.core.synthesizer import ContextSynthesizer
from trip_assistant.errors import PersistenceError
from trip_assistant.middleware.event_collector import emit_event
from trip_assistant.middleware.retry import call_with_retry
from trip_assistant.models import (
    ConversationSession,
    ConversationState,
    GeneralAssistance,
    IntentResult,
    Role,
    SynthesizedReply,
    TripRequirements,
    Turn,
    utcnow,
)
from trip_assistant.skills.base import Skill, SkillOutcome, SkillRequest, should_dispatch

logger = logging.getLogger(__name__)

State = ConversationState

PLANNING_INTENT = "travel_planning"
PLANNING_FAMILY = "planning"

TRANSITIONS: Dict[ConversationState, Set[ConversationState]] = {
    State.IDLE: {State.WELCOMING, State.ENDED},
    State.WELCOMING: {State.AWAITING_REQUIREMENTS, State.ENDED},
    State.AWAITING_REQUIREMENTS: {State.REASONING, State.ENDED},
    State.REASONING: {State.AWAITING_CONFIRMATION, State.ENDED},
    State.AWAITING_CONFIRMATION: {State.COMPLETING, State.ENDED},
    State.COMPLETING: {State.IDLE, State.ENDED},
    State.ENDED: set(),
}

END_SIGNALS = re.compile(r"\b(bye|goodbye|end chat|quit|stop)\b", re.IGNORECASE)
CONFIRM_SIGNALS = re.compile(r"\b(yes|confirm|book it|sounds good|looks good|ok|okay|perfect)\b", re.IGNORECASE)

GREETING = "Hi! I'm Ava, your travel assistant."
FAREWELL_REPLY = "Thanks for planning with me. Have a great trip! Say hi any time to start again."
RETRY_REPLY = "Sorry, I ran into a problem handling that. Could you try again?"
DEADLINE_REPLY = "This is taking longer than expected. Please try again in a moment."
DEADLINE_ERROR = "request deadline exceeded"
CONFIRMATION_PROMPT = "Would you like me to finalize this plan? Reply 'yes' to confirm or tell me what to change."
FINALIZED_REPLY = "Your plan is saved."
WRAP_UP_PROMPTS = {
    State.WELCOMING: (
        "It looks like we're going in circles. Tell me a destination and how long you'd like to travel "
        "and I'll draft a plan, or say 'bye' to end the chat."
    ),
    State.AWAITING_CONFIRMATION: (
        "I want to be sure I got this right: reply 'yes' to finalize the plan, "
        "or tell me exactly what you'd like to change."
    ),
}
DEFAULT_WRAP_UP = "Let's wrap this up. Tell me what you'd like to do next, or say 'bye' to end the chat."

CONFIRMATION_SUGGESTIONS = ("Yes, finalize the plan", "Change the trip length", "Adjust the budget")


class LoopSignal(BaseModel):
    """The conversation stopped making progress in its current state."""
    model_config = ConfigDict(frozen=True)

    reason: Literal["stagnation", "repetition"]
    state: ConversationState
    stagnant_turns: int


class OrchestratorReply(BaseModel):
    text: str
    suggested_actions: List[str] = Field(default_factory=list)
    state: ConversationState
    session_id: Optional[str] = None
    degraded: bool = False
    loop_detected: bool = False
    skill_results: List[SkillOutcome] = Field(default_factory=list)
    provenance: Dict[str, Any] = Field(default_factory=dict)


def _as_utc(timestamp: Optional[datetime]) -> datetime:
    if timestamp is None:
        return utcnow()
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def summarize_skill(outcome: SkillOutcome) -> Optional[str]:
    if not outcome.ok:
        return None
    data = outcome.data
    if outcome.name == "weather_forecast" and data.get("days"):
        lows = [d["tmin_c"] for d in data["days"]]
        highs = [d["tmax_c"] for d in data["days"]]
        place = str(data.get("query") or data.get("place"))
        return f"Weather outlook for {place}: {min(lows):.0f} to {max(highs):.0f}°C over the next {len(data['days'])} days."
    if outcome.name == "budget_estimate":
        parts = ", ".join(f"{name} {value:,.0f}" for name, value in data.get("breakdown", {}).items())
        return f"Daily budget: about {data['daily']:,.0f} {data['currency']} ({parts})."
    return None


class Orchestrator:
    def __init__(
        self,
        synthesizer: ContextSynthesizer,
        reasoning: ReasoningEngine,
        classifier: IntentClassifier,
        sessions: SessionStore,
        records: RecordStore,
        skills: Sequence[Skill] = (),
        settings: Optional[OrchestratorSettings] = None,
    ):
        self.synthesizer = synthesizer
        self.reasoning = reasoning
        self.classifier = classifier
        self.sessions = sessions
        self.skills: Tuple[Skill, ...] = tuple(skills)
        self.settings = settings or OrchestratorSettings()
        self._records = records
        self._locks = KeyedLock()

    async def handle_turn(self, participant_id: str, text: Any, timestamp: Optional[datetime] = None) -> OrchestratorReply:
        """Handle one inbound message. Never raises; failures become a retry prompt."""
        if not isinstance(text, str):
            logger.warning("Non-text message from %s replaced with an empty turn", participant_id)
            text = ""
        now = _as_utc(timestamp)
        try:
            async with self._locks.hold(participant_id):
                return await self._handle(participant_id, text.strip(), now)
        except Exception as exc:
            logger.exception("Failed to handle turn for participant %s", participant_id)
            emit_event(
                component="orchestrator",
                status="error",
                message="Returned a retry prompt",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            session = await self._stored_session(participant_id)
            return OrchestratorReply(
                text=RETRY_REPLY,
                suggested_actions=list(CLARIFICATION_SUGGESTIONS[:2]),
                state=session.state if session is not None else State.IDLE,
                session_id=session.id if session is not None else None,
                degraded=True,
                provenance={"source": "error", "error": type(exc).__name__},
            )

    async def _stored_session(self, participant_id: str) -> Optional[ConversationSession]:
        """The last saved session, which a failed turn leaves untouched."""
        try:
            return await self.sessions.get_active(participant_id)
        except (PersistenceError, ValueError):
            return None

    async def _handle(self, participant_id: str, text: str, now: datetime) -> OrchestratorReply:
        session = await self._current_session(participant_id, now)
        started_in = session.state
        session.turn_count += 1
        session.turns_in_state += 1

        if END_SIGNALS.search(text):
            return await self._end(session, text, now)

        if session.state == State.IDLE:
            self._transition(session, State.WELCOMING)

        intent = self.classifier.classify(text, {"previous_intent": session.last_intent})
        session.requirements = extract_requirements(text).merged_over(session.requirements)

        request = SkillRequest(
            participant_id=participant_id,
            session_id=session.id,
            text=text,
            intent=intent,
            requirements=session.requirements,
        )
        selected = [skill for skill in self.skills if should_dispatch(skill, request)]
        synthesized, outcomes = await self._fan_out(participant_id, session, text, request, selected)
        if synthesized is None:
            logger.warning("Request deadline of %.1fs expired for session %s", self.settings.request_deadline_seconds, session.id)
            emit_event(component="orchestrator", status="deadline", message="Request deadline expired")
            self._record_turns(session, text, intent, DEADLINE_REPLY, now)
            await self._save(session)
            return OrchestratorReply(
                text=DEADLINE_REPLY,
                state=session.state,
                session_id=session.id,
                degraded=True,
                skill_results=outcomes,
                provenance={"source": "deadline", "skills": [o.name for o in outcomes]},
            )

        reply_text = synthesized.text
        suggestions = list(synthesized.suggestions)
        if session.turn_count == 1:
            reply_text = f"{GREETING} {reply_text}"

        if session.state == State.WELCOMING and intent.family == PLANNING_FAMILY:
            self._transition(session, State.AWAITING_REQUIREMENTS)

        loop = self._detect_loop(session, started_in, intent, synthesized.text)

        if session.state == State.AWAITING_REQUIREMENTS:
            missing = session.requirements.missing(self.settings.required_fields)
            if not missing or session.turns_in_state >= self.settings.max_requirement_turns or loop is not None:
                self._transition(session, State.REASONING)

        if session.state == State.REASONING:
            if await self._ensure_recommendation(session, text, intent, synthesized):
                self._transition(session, State.AWAITING_CONFIRMATION)
                reply_text = f"{reply_text}\n\n{CONFIRMATION_PROMPT}"
                suggestions = list(CONFIRMATION_SUGGESTIONS)
        elif started_in == State.AWAITING_CONFIRMATION and CONFIRM_SIGNALS.search(text):
            self._transition(session, State.COMPLETING)
            await self._finalize(session, now)
            self._transition(session, State.IDLE)
            reply_text = f"{FINALIZED_REPLY} {reply_text}"

        if session.state != started_in:
            session.stagnant_turns = 0
        elif loop is not None:
            reply_text = f"{reply_text}\n\n{WRAP_UP_PROMPTS.get(session.state, DEFAULT_WRAP_UP)}"
            session.stagnant_turns = 0
        if session.state == State.AWAITING_CONFIRMATION and not suggestions:
            suggestions = list(CONFIRMATION_SUGGESTIONS)

        summaries = [s for s in (summarize_skill(o) for o in outcomes) if s]
        if summaries:
            reply_text = "\n\n".join([reply_text, *summaries])

        skills_failed = bool(outcomes) and not any(o.ok for o in outcomes)
        degraded = synthesized.degraded or skills_failed

        self._record_turns(session, text, intent, reply_text, now)
        await self._save(session)

        provenance = dict(synthesized.provenance)
        provenance.update({
            "state_before": started_in.value,
            "skills": [o.name for o in outcomes],
            "loop": loop.reason if loop else None,
        })
        return OrchestratorReply(
            text=reply_text,
            suggested_actions=suggestions,
            state=session.state,
            session_id=session.id,
            degraded=degraded,
            loop_detected=loop is not None,
            skill_results=outcomes,
            provenance=provenance,
        )

    async def _current_session(self, participant_id: str, now: datetime) -> ConversationSession:
        try:
            session = await self.sessions.get_active(participant_id)
        except PersistenceError:
            logger.warning("Session store unavailable for %s, starting a fresh session", participant_id, exc_info=True)
            session = None

        if session is not None and session.state != State.ENDED:
            idle = now - _as_utc(session.last_activity_at)
            if idle > timedelta(seconds=self.settings.inactivity_timeout_seconds):
                logger.info("Session %s inactive for %s, archiving", session.id, idle)
                self._transition(session, State.ENDED)
                session.ended_reason = "inactivity"
                await self._archive(session)
                session = None

        if session is None or session.state == State.ENDED:
            session = ConversationSession(participant_id=participant_id, created_at=now, last_activity_at=now)
            logger.info("Started session %s for participant %s", session.id, participant_id)
        return session

    async def _fan_out(
        self,
        participant_id: str,
        session: ConversationSession,
        text: str,
        request: SkillRequest,
        selected: List[Skill],
    ) -> Tuple[Optional[SynthesizedReply], List[SkillOutcome]]:
        """Run the synthesizer and the skills together under the request deadline.

        Whatever finished by the deadline is kept. Skills still running are
        cancelled and reported as failed; a missing reply comes back as ``None``.
        """
        budget = self.settings.request_deadline_seconds
        deadline = asyncio.get_running_loop().time() + budget
        options = {"conversation_id": session.id, "requirements": session.requirements}
        synthesis = asyncio.ensure_future(self.synthesizer.respond(participant_id, text, options))
        running = [(skill, asyncio.ensure_future(self._run_skill(skill, request, deadline))) for skill in selected]
        tasks = [synthesis, *(task for _, task in running)]
        try:
            done, pending = await asyncio.wait(tasks, timeout=budget)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = [
            task.result() if task in done else SkillOutcome(name=skill.name, ok=False, error=DEADLINE_ERROR)
            for skill, task in running
        ]
        return (synthesis.result() if synthesis in done else None), outcomes

    async def _run_skill(self, skill: Skill, request: SkillRequest, deadline: float) -> SkillOutcome:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return SkillOutcome(name=skill.name, ok=False, error=DEADLINE_ERROR)
        try:
            # Retries share whatever is left of the request deadline.
            data = await asyncio.wait_for(
                call_with_retry(
                    lambda: skill.run(request),
                    name=f"skill {skill.name}",
                    component="skills",
                    max_attempts=self.settings.skill_max_attempts,
                    initial_delay=self.settings.skill_initial_delay,
                    backoff_factor=self.settings.skill_backoff_factor,
                    timeout=min(self.settings.skill_timeout_seconds, remaining),
                ),
                remaining,
            )
        except asyncio.TimeoutError:
            logger.warning("Skill %s ran past the request deadline", skill.name)
            return SkillOutcome(name=skill.name, ok=False, error=DEADLINE_ERROR)
        except Exception as exc:
            logger.warning("Skill %s failed: %s: %s", skill.name, type(exc).__name__, exc)
            return SkillOutcome(name=skill.name, ok=False, error=f"{type(exc).__name__}: {exc}")
        return SkillOutcome(name=skill.name, ok=True, data=data)

    def _detect_loop(
        self,
        session: ConversationSession,
        started_in: ConversationState,
        intent: IntentResult,
        reply: str,
    ) -> Optional[LoopSignal]:
        if session.state != started_in:
            return None
        if intent.type == session.last_intent:
            session.stagnant_turns += 1
        else:
            session.stagnant_turns = 1

        signal = None
        if session.stagnant_turns > self.settings.loop_turns:
            signal = LoopSignal(reason="stagnation", state=session.state, stagnant_turns=session.stagnant_turns)
        elif self._repeats_recent_replies(session, reply):
            signal = LoopSignal(reason="repetition", state=session.state, stagnant_turns=session.stagnant_turns)
        if signal is not None:
            logger.info("Loop detected in session %s: %s in %s", session.id, signal.reason, signal.state.value)
            emit_event(
                component="orchestrator",
                status="loop",
                message=f"Conversation loop ({signal.reason})",
                details={"state": signal.state.value, "stagnant_turns": signal.stagnant_turns},
            )
        return signal

    def _repeats_recent_replies(self, session: ConversationSession, reply: str) -> bool:
        window = self.settings.duplicate_window
        recent = [t.content for t in session.turns if t.role == Role.ASSISTANT][-window:]
        if len(recent) < window:
            return False
        tokens = set(significant_keywords(reply, limit=1000))
        return all(
            len(tokens & set(significant_keywords(previous, limit=1000))) >= self.settings.duplicate_overlap_tokens
            for previous in recent
        )

    async def _ensure_recommendation(
        self,
        session: ConversationSession,
        text: str,
        intent: IntentResult,
        synthesized: SynthesizedReply,
    ) -> bool:
        recommendation = synthesized.trace.recommendation if synthesized.trace is not None else None
        if recommendation is None or isinstance(recommendation, GeneralAssistance):
            if intent.family != PLANNING_FAMILY:
                intent = IntentResult(type=PLANNING_INTENT, family=PLANNING_FAMILY, confidence=intent.confidence)
            try:
                trace = await self.reasoning.reason(
                    session.id,
                    text,
                    {"intent": intent, "requirements": session.requirements, "user_id": session.participant_id},
                )
            except Exception:
                logger.exception("Reasoning failed for session %s, staying in reasoning", session.id)
                return False
            recommendation = trace.recommendation
        session.recommendation = recommendation
        return recommendation is not None

    async def _finalize(self, session: ConversationSession, now: datetime) -> None:
        plan = {
            "session_id": session.id,
            "participant_id": session.participant_id,
            "requirements": session.requirements.model_dump(mode="json"),
            "recommendation": session.recommendation.model_dump(mode="json") if session.recommendation else None,
            "finalized_at": now.isoformat(),
        }
        try:
            await self._records.save(TRIP_PLANS, session.id, plan)
            logger.info("Finalized trip plan for session %s", session.id)
        except PersistenceError:
            logger.warning("Trip plan for session %s was not persisted", session.id, exc_info=True)
        emit_event(component="orchestrator", status="finalized", message="Trip plan finalized", details={"session_id": session.id})
        session.recommendation = None
        session.requirements = TripRequirements()

    async def _end(self, session: ConversationSession, text: str, now: datetime) -> OrchestratorReply:
        self._transition(session, State.ENDED)
        session.ended_reason = "user"
        self._record_turns(session, text, None, FAREWELL_REPLY, now)
        await self._archive(session)
        return OrchestratorReply(text=FAREWELL_REPLY, state=State.ENDED, session_id=session.id)

    def _transition(self, session: ConversationSession, target: ConversationState) -> None:
        if target not in TRANSITIONS[session.state]:
            raise ValueError(f"illegal transition {session.state.value} -> {target.value}")
        logger.info("Session %s: %s -> %s", session.id, session.state.value, target.value)
        emit_event(
            component="orchestrator",
            status="transition",
            message=f"{session.state.value} -> {target.value}",
            details={"session_id": session.id},
        )
        session.state = target
        session.turns_in_state = 0

    @staticmethod
    def _record_turns(
        session: ConversationSession,
        text: str,
        intent: Optional[IntentResult],
        reply: str,
        now: datetime,
    ) -> None:
        session.turns.append(Turn(
            role=Role.USER,
            content=text,
            timestamp=now,
            intent=intent.type if intent else None,
            confidence=intent.confidence if intent else None,
        ))
        session.turns.append(Turn(role=Role.ASSISTANT, content=reply, timestamp=now))
        if intent is not None:
            session.last_intent = intent.type
        session.last_activity_at = now

    async def _save(self, session: ConversationSession) -> None:
        try:
            await self.sessions.save(session)
        except PersistenceError:
            logger.warning("Session %s was not persisted", session.id, exc_info=True)

    async def _archive(self, session: ConversationSession) -> None:
        try:
            await self.sessions.archive(session)
        except PersistenceError:
            logger.warning("Session %s could not be archived", session.id, exc_info=True)
