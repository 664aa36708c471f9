import logging
import os
from typing import Mapping, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "google_genai:gemini-3-flash-preview"


class CacheSettings(BaseModel):
    max_size: int = Field(100, gt=0, description="Maximum number of cached completions.")
    ttl_seconds: float = Field(3600.0, gt=0, description="Time to live for each entry.")
    offload_threshold: Optional[float] = Field(
        0.8, gt=0, le=1.0, description="Utilization that triggers batch offload. None disables it."
    )
    offload_fraction: float = Field(0.2, gt=0, le=1.0)
    sweep_interval_seconds: float = Field(60.0, gt=0)
    key_turns: int = Field(5, gt=0, description="How many recent turns feed the cache key.")


class StepWeights(BaseModel):
    """Hand-tuned confidences attached to reasoning steps.

    These are adjustable weights, not calibrated values.
    """
    planning_with_destination: float = 0.9
    planning_without_destination: float = 0.6
    personalization: float = 0.8
    research_with_knowledge: float = 0.8
    research_without_knowledge: float = 0.5
    budget_with_amount: float = 0.9
    budget_without_amount: float = 0.7
    information_with_sources: float = 0.8
    information_without_sources: float = 0.4
    general: float = 0.7


class ReasoningSettings(BaseModel):
    knowledge_threshold: float = Field(0.6, ge=0.0, le=1.0)
    knowledge_per_keyword: int = Field(3, gt=0)
    knowledge_cap: int = Field(8, gt=0)
    max_keywords: int = Field(10, gt=0)
    lookup_timeout_seconds: float = Field(5.0, gt=0)
    feasible_daily_budget: float = Field(100.0, gt=0)
    feasible_total_budget: float = Field(1000.0, gt=0)
    weights: StepWeights = Field(default_factory=StepWeights)


class ProfilerSettings(BaseModel):
    recompute_rate: float = Field(0.1, ge=0.0, le=1.0)
    create_threshold: float = 0.5
    keep_threshold: float = 0.3


class SynthesizerSettings(BaseModel):
    history_turns: int = Field(10, gt=0)
    long_message_chars: int = 200
    completion_timeout_seconds: float = Field(20.0, gt=0)
    completion_max_attempts: int = Field(2, gt=0)
    completion_initial_delay: float = Field(1.0, ge=0)
    temperature: float = 0.7


class OrchestratorSettings(BaseModel):
    required_fields: Tuple[str, ...] = ("destination", "duration")
    max_requirement_turns: int = Field(15, gt=0)
    loop_turns: int = Field(15, gt=0)
    duplicate_overlap_tokens: int = Field(3, gt=0)
    duplicate_window: int = Field(2, gt=0)
    skill_timeout_seconds: float = Field(30.0, gt=0)
    skill_max_attempts: int = Field(2, gt=0)
    skill_initial_delay: float = Field(1.5, ge=0)
    skill_backoff_factor: float = Field(2.0, ge=1.0)
    request_deadline_seconds: float = Field(45.0, gt=0)
    inactivity_timeout_seconds: float = Field(1800.0, gt=0)


class Settings(BaseModel):
    model: str = DEFAULT_MODEL
    cache: CacheSettings = Field(default_factory=CacheSettings)
    reasoning: ReasoningSettings = Field(default_factory=ReasoningSettings)
    profiler: ProfilerSettings = Field(default_factory=ProfilerSettings)
    synthesizer: SynthesizerSettings = Field(default_factory=SynthesizerSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)


# env var -> (section, field)
_ENV_FIELDS = {
    "TRIP_CACHE_MAX_SIZE": ("cache", "max_size"),
    "TRIP_CACHE_TTL": ("cache", "ttl_seconds"),
    "TRIP_CACHE_OFFLOAD_THRESHOLD": ("cache", "offload_threshold"),
    "TRIP_PERSONA_RECOMPUTE_RATE": ("profiler", "recompute_rate"),
    "TRIP_COMPLETION_TIMEOUT": ("synthesizer", "completion_timeout_seconds"),
    "TRIP_MAX_REQUIREMENT_TURNS": ("orchestrator", "max_requirement_turns"),
    "TRIP_LOOP_TURNS": ("orchestrator", "loop_turns"),
    "TRIP_SKILL_TIMEOUT": ("orchestrator", "skill_timeout_seconds"),
    "TRIP_REQUEST_DEADLINE": ("orchestrator", "request_deadline_seconds"),
    "TRIP_INACTIVITY_TIMEOUT": ("orchestrator", "inactivity_timeout_seconds"),
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from ``TRIP_*`` environment variables over the defaults."""
    env = os.environ if environ is None else environ
    sections: dict = {}
    for var, (section, field) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        value = None if raw.lower() in ("none", "off", "false") else raw
        sections.setdefault(section, {})[field] = value
    data: dict = {"model": env.get("TRIP_MODEL", DEFAULT_MODEL)}
    data.update(sections)
    settings = Settings.model_validate(data)
    logger.debug("Loaded settings from environment: %s", sorted(sections))
    return settings
