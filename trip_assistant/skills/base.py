from typing import Any, Dict, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field

from trip_assistant.models import IntentResult, TripRequirements


class SkillRequest(BaseModel):
    """What a skill gets to see of the current turn."""
    model_config = ConfigDict(frozen=True)

    participant_id: str
    session_id: str
    text: str
    intent: IntentResult
    requirements: TripRequirements = Field(default_factory=TripRequirements)


class SkillOutcome(BaseModel):
    name: str
    ok: bool
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class Skill(Protocol):
    """A pluggable capability the orchestrator runs alongside the reply.

    ``intents`` lists the intents the skill is dispatched for; an empty tuple
    means every intent. ``applies`` can further decline a turn, for example
    when a required requirement is still missing.
    """

    name: str
    intents: Tuple[str, ...]

    def applies(self, request: SkillRequest) -> bool:
        ...

    async def run(self, request: SkillRequest) -> Dict[str, Any]:
        ...


def should_dispatch(skill: Skill, request: SkillRequest) -> bool:
    if skill.intents and request.intent.type not in skill.intents:
        return False
    return skill.applies(request)
