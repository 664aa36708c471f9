from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

UNCLEAR_INTENT = "unclear"

AdventureLevel = Literal["low", "medium", "high"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# ── Conversation ─────────────────────────────────────────────────────────────


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Turn(BaseModel):
    """One message in a conversation. Never modified after it is appended."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    intent: Optional[str] = Field(None, description="Classified intent, user turns only.")
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class ConversationState(str, Enum):
    IDLE = "idle"
    WELCOMING = "welcoming"
    AWAITING_REQUIREMENTS = "awaiting_requirements"
    REASONING = "reasoning"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETING = "completing"
    ENDED = "ended"


# ── Intent ───────────────────────────────────────────────────────────────────


class IntentAlternative(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    message: str


class IntentResult(BaseModel):
    """Outcome of a single classification call."""
    model_config = ConfigDict(frozen=True)

    type: str
    family: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    matched_signals: Tuple[str, ...] = ()
    suggested_actions: Tuple[str, ...] = ()
    alternatives: Tuple[IntentAlternative, ...] = ()

    @property
    def is_unclear(self) -> bool:
        return self.type == UNCLEAR_INTENT


# ── Requirements ─────────────────────────────────────────────────────────────

_UNIT_DAYS = {"days": 1, "nights": 1, "weeks": 7, "months": 30}


class Duration(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: int = Field(..., gt=0)
    unit: Literal["days", "nights", "weeks", "months"]

    def in_days(self) -> int:
        return self.value * _UNIT_DAYS[self.unit]


class TripRequirements(BaseModel):
    """Structured trip constraints. ``None`` means unspecified, never zero."""
    model_config = ConfigDict(frozen=True)

    destination: Optional[str] = None
    duration: Optional[Duration] = None
    budget: Optional[float] = Field(None, ge=0.0)

    def merged_over(self, other: Optional["TripRequirements"]) -> "TripRequirements":
        """Return a copy where fields unspecified here are taken from ``other``."""
        if other is None:
            return self
        return TripRequirements(
            destination=self.destination if self.destination is not None else other.destination,
            duration=self.duration if self.duration is not None else other.duration,
            budget=self.budget if self.budget is not None else other.budget,
        )

    def missing(self, required: Iterable[str]) -> List[str]:
        return [name for name in required if getattr(self, name, None) is None]


# ── Knowledge ────────────────────────────────────────────────────────────────


class KnowledgeArticle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    category: str
    summary: str = ""
    content: str = ""
    country: Optional[str] = None
    city: Optional[str] = None
    tags: Tuple[str, ...] = ()


class ScoredArticle(BaseModel):
    model_config = ConfigDict(frozen=True)

    article: KnowledgeArticle
    similarity: float = Field(..., ge=0.0, le=1.0)

    @property
    def identity(self) -> Tuple[str, Optional[str], Optional[str]]:
        return self.article.title, self.article.country, self.article.city


# ── Reasoning ────────────────────────────────────────────────────────────────


class StepKind(str, Enum):
    ANALYSIS = "analysis"
    PLANNING = "planning"
    PERSONALIZATION = "personalization"
    RESEARCH = "research"
    BUDGET_ASSESSMENT = "budget_assessment"
    INFORMATION_GATHERING = "information_gathering"
    GENERAL = "general"
    ERROR = "error"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    ERROR = "error"


class ReasoningStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int
    kind: StepKind
    thought: str
    evidence: Tuple[str, ...] = ()
    confidence: float = Field(..., ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int
    status: StepStatus
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence: Tuple[str, ...] = ()
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class TravelPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["travel_plan"] = "travel_plan"
    destination: Optional[str] = None
    duration: Optional[Duration] = None
    budget: Optional[float] = None
    personalized: bool = False
    personas: Tuple[str, ...] = ()
    structure: Dict[str, str] = Field(default_factory=dict)
    sources: Tuple[str, ...] = ()


class BudgetAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["budget_analysis"] = "budget_analysis"
    budget: Optional[float] = None
    destination: Optional[str] = None
    daily_budget: Optional[float] = None
    feasibility: Literal["feasible", "challenging", "unknown"] = "unknown"
    recommendations: Tuple[str, ...] = ()


class DestinationInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["destination_info"] = "destination_info"
    destination: Optional[str] = None
    information: Dict[str, str] = Field(default_factory=dict)
    sources: Tuple[str, ...] = ()


class GeneralAssistance(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["general_assistance"] = "general_assistance"
    query: str
    response: str


Recommendation = Annotated[
    Union[TravelPlan, BudgetAnalysis, DestinationInfo, GeneralAssistance],
    Field(discriminator="type"),
]


class ReasoningTrace(BaseModel):
    """Ordered reasoning steps plus the typed recommendation they led to."""
    model_config = ConfigDict(frozen=True)

    trace_id: str = Field(default_factory=new_id)
    session_id: str
    intent: IntentResult
    requirements: TripRequirements = Field(default_factory=TripRequirements)
    steps: Tuple[ReasoningStep, ...] = ()
    results: Tuple[StepResult, ...] = ()
    knowledge: Tuple[ScoredArticle, ...] = ()
    recommendation: Optional[Recommendation] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)
    processing_ms: float = 0.0


# ── Profiles and personas ────────────────────────────────────────────────────


class Persona(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    budget_conscious: Optional[bool] = None
    adventure_level: Optional[AdventureLevel] = None
    group_size: Optional[str] = None
    travel_frequency: Optional[str] = None
    active: bool = True


class PersonaAssignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    persona_id: str
    persona_name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    updated_at: datetime = Field(default_factory=utcnow)


class UserProfile(BaseModel):
    """Per-user preferences and persona assignments.

    Profiles are replaced as whole records (``model_copy``) so a failed update
    never leaves a half-written profile behind.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    travel_style: Tuple[str, ...] = ()
    preferred_destinations: Tuple[str, ...] = ()
    budget_range: Optional[str] = "medium"
    group_size: Optional[str] = "solo"
    travel_frequency: Optional[str] = "occasional"
    adventure_level: Optional[AdventureLevel] = None
    language_preferences: Tuple[str, ...] = ("en",)
    personas: Tuple[PersonaAssignment, ...] = ()
    behavior_events: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def primary_persona(self) -> Optional[PersonaAssignment]:
        if not self.personas:
            return None
        return max(self.personas, key=lambda p: p.confidence)


class BehaviorEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    sequence: int
    interaction_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class BehaviorSample(BaseModel):
    """Behavioral signals used to fit personas. Absent fields are not scored."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    budget_focused: Optional[bool] = None
    adventure_level: Optional[AdventureLevel] = None
    preferred_group_size: Optional[str] = None
    travel_frequency: Optional[str] = None


# ── Sessions and replies ─────────────────────────────────────────────────────


class ConversationSession(BaseModel):
    """Conversation state owned and mutated only by the orchestrator."""

    id: str = Field(default_factory=new_id)
    participant_id: str
    state: ConversationState = ConversationState.IDLE
    turns: List[Turn] = Field(default_factory=list)
    turn_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    requirements: TripRequirements = Field(default_factory=TripRequirements)
    recommendation: Optional[Recommendation] = None
    last_intent: Optional[str] = None
    stagnant_turns: int = 0
    turns_in_state: int = 0
    archived: bool = False
    ended_reason: Optional[str] = None


class SynthesizedReply(BaseModel):
    text: str
    suggestions: List[str] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    degraded: bool = False
    provenance: Dict[str, Any] = Field(default_factory=dict)
    intent: Optional[IntentResult] = None
    trace: Optional[ReasoningTrace] = None
