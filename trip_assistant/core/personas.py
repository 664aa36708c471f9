import logging
import random
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from trip_assistant.config import ProfilerSettings
from trip_assistant.core.locks import KeyedLock
from trip_assistant.core.store import BEHAVIOR, PROFILES, RecordStore
from trip_assistant.errors import PersistenceError
from trip_assistant.models import (
    BehaviorEvent,
    BehaviorSample,
    Persona,
    PersonaAssignment,
    UserProfile,
    utcnow,
)

logger = logging.getLogger(__name__)

BUDGET_WEIGHT = 0.3
ADVENTURE_WEIGHT = 0.25
GROUP_WEIGHT = 0.2
FREQUENCY_WEIGHT = 0.15

ADVENTURE_SCALE = {"low": 1, "medium": 2, "high": 3}

GROUP_SIMILARITY = {
    "solo": ("solo",),
    "couple": ("couple", "small"),
    "family": ("family", "group"),
    "small": ("couple", "small"),
    "group": ("family", "group"),
}
GROUP_PARTIAL = 0.7

FREQUENCY_SIMILARITY = {
    "rare": ("rare",),
    "occasional": ("occasional", "rare"),
    "frequent": ("frequent", "occasional"),
    "constant": ("constant", "frequent"),
}
FREQUENCY_PARTIAL = 0.6

PREFERENCE_FIELDS = (
    "travel_style",
    "preferred_destinations",
    "budget_range",
    "group_size",
    "travel_frequency",
    "adventure_level",
    "language_preferences",
)

DEFAULT_PERSONAS: Tuple[Persona, ...] = (
    Persona(
        id="budget_explorer",
        name="Budget Explorer",
        description="travels on a tight budget and seeks authentic local experiences",
        budget_conscious=True,
        adventure_level="medium",
        group_size="small",
        travel_frequency="occasional",
    ),
    Persona(
        id="luxury_seeker",
        name="Luxury Seeker",
        description="prefers high-end experiences and premium services",
        budget_conscious=False,
        adventure_level="low",
        group_size="couple",
        travel_frequency="frequent",
    ),
    Persona(
        id="adventure_enthusiast",
        name="Adventure Enthusiast",
        description="seeks thrilling experiences and outdoor activities",
        adventure_level="high",
        group_size="small",
        travel_frequency="occasional",
    ),
    Persona(
        id="cultural_immersion",
        name="Cultural Immersion",
        description="focuses on local culture and history over long stays",
        adventure_level="medium",
        group_size="solo",
        travel_frequency="rare",
    ),
    Persona(
        id="family_traveler",
        name="Family Traveler",
        description="travels with family and prioritizes kid-friendly activities",
        budget_conscious=True,
        adventure_level="low",
        group_size="family",
        travel_frequency="rare",
    ),
)


def _table_match(table: Mapping[str, Tuple[str, ...]], persona_value: str, user_value: str, partial: float) -> float:
    if persona_value == user_value:
        return 1.0
    return partial if user_value in table.get(persona_value, ()) else 0.0


def persona_fit(persona: Persona, sample: BehaviorSample) -> float:
    """Weighted average over the factors both sides specify.

    A factor missing on either side is left out of the numerator and of the
    denominator, so it neither helps nor hurts the fit.
    """
    factors: List[Tuple[float, float]] = []
    if persona.budget_conscious is not None and sample.budget_focused is not None:
        factors.append((BUDGET_WEIGHT, 1.0 if persona.budget_conscious == sample.budget_focused else 0.0))
    if persona.adventure_level is not None and sample.adventure_level is not None:
        diff = abs(ADVENTURE_SCALE[persona.adventure_level] - ADVENTURE_SCALE[sample.adventure_level])
        factors.append((ADVENTURE_WEIGHT, max(0.0, 1.0 - diff / 2)))
    if persona.group_size is not None and sample.preferred_group_size is not None:
        factors.append((
            GROUP_WEIGHT,
            _table_match(GROUP_SIMILARITY, persona.group_size, sample.preferred_group_size, GROUP_PARTIAL),
        ))
    if persona.travel_frequency is not None and sample.travel_frequency is not None:
        factors.append((
            FREQUENCY_WEIGHT,
            _table_match(FREQUENCY_SIMILARITY, persona.travel_frequency, sample.travel_frequency, FREQUENCY_PARTIAL),
        ))
    if not factors:
        return 0.0
    total_weight = sum(weight for weight, _ in factors)
    return round(sum(weight * score for weight, score in factors) / total_weight, 4)


def coerce_sample(raw: Union[BehaviorSample, Mapping[str, Any], None]) -> BehaviorSample:
    """Validate a behavior sample, dropping fields that fail validation."""
    if isinstance(raw, BehaviorSample):
        return raw
    if not raw:
        return BehaviorSample()
    try:
        return BehaviorSample.model_validate(dict(raw))
    except ValidationError as exc:
        bad = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        logger.warning("Dropping invalid behavior sample fields %s", sorted(bad))
        return BehaviorSample.model_validate({k: v for k, v in raw.items() if k not in bad})


def sample_from_profile(profile: UserProfile, overrides: Optional[Mapping[str, Any]] = None) -> BehaviorSample:
    """Derive a behavior sample from stored preferences, overlaid with event data."""
    budget_focused = None
    if profile.budget_range == "low":
        budget_focused = True
    elif profile.budget_range in ("high", "luxury"):
        budget_focused = False

    adventure = profile.adventure_level
    if adventure is None:
        styles = set(profile.travel_style)
        if "adventure" in styles:
            adventure = "high"
        elif styles & {"relaxation", "luxury"}:
            adventure = "low"

    base = {
        "budget_focused": budget_focused,
        "adventure_level": adventure,
        "preferred_group_size": profile.group_size,
        "travel_frequency": profile.travel_frequency,
    }
    if overrides:
        base.update({k: v for k, v in overrides.items() if k in BehaviorSample.model_fields and v is not None})
    return coerce_sample(base)


class PersonaProfiler:
    """Maintains user profiles and their persona assignments.

    Writes for one user are serialized and each profile is saved as a single
    record. When the store is unavailable the latest profile is kept in
    process memory and the conversation carries on.
    """

    def __init__(
        self,
        records: RecordStore,
        personas: Sequence[Persona] = DEFAULT_PERSONAS,
        settings: Optional[ProfilerSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ):
        self._records = records
        self.personas: Tuple[Persona, ...] = tuple(personas)
        self.settings = settings or ProfilerSettings()
        self._rng = rng or random.Random()
        self._locks = KeyedLock()
        self._memory: Dict[str, UserProfile] = {}

    def list_personas(self) -> Tuple[Persona, ...]:
        return tuple(p for p in self.personas if p.active)

    def persona(self, persona_id: str) -> Optional[Persona]:
        return next((p for p in self.personas if p.id == persona_id), None)

    async def get_or_create_profile(self, user_id: str) -> UserProfile:
        profile = await self._load(user_id)
        if profile is not None:
            return profile
        async with self._locks.hold(user_id):
            return await self._load_or_create(user_id)

    async def update_preferences(self, user_id: str, **updates: Any) -> UserProfile:
        async with self._locks.hold(user_id):
            profile = await self._load_or_create(user_id)
            base = profile.model_dump()
            accepted: Dict[str, Any] = {}
            for name, value in updates.items():
                if name not in PREFERENCE_FIELDS:
                    logger.warning("Ignoring unknown preference %r for user %s", name, user_id)
                    continue
                try:
                    UserProfile.model_validate({**base, name: value})
                except ValidationError:
                    logger.warning("Ignoring invalid value for preference %r for user %s", name, user_id)
                    continue
                accepted[name] = value
            updated = UserProfile.model_validate({**base, **accepted, "updated_at": utcnow()})
            await self._save(updated)
            return updated

    async def recompute_personas(
        self,
        user_id: str,
        sample: Union[BehaviorSample, Mapping[str, Any], None] = None,
    ) -> List[PersonaAssignment]:
        """Refit every active persona. Without a sample, the profile's preferences are used."""
        async with self._locks.hold(user_id):
            profile = await self._load_or_create(user_id)
            resolved = coerce_sample(sample) if sample is not None else sample_from_profile(profile)
            updated = self._apply_fit(profile, resolved)
            await self._save(updated)
            return list(updated.personas)

    async def record_user_behavior(
        self,
        user_id: str,
        interaction_type: str,
        data: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None,
        *,
        force_recompute: bool = False,
    ) -> BehaviorEvent:
        """Append a behavior event; refit personas on a sampled subset of events."""
        async with self._locks.hold(user_id):
            profile = await self._load_or_create(user_id)
            event = BehaviorEvent(
                user_id=user_id,
                sequence=profile.behavior_events + 1,
                interaction_type=interaction_type,
                data=dict(data or {}),
                session_id=session_id,
            )
            try:
                await self._records.save(BEHAVIOR, f"{user_id}:{event.sequence:010d}", event.model_dump(mode="json"))
            except PersistenceError:
                logger.warning("Behavior event %d for user %s was not persisted", event.sequence, user_id, exc_info=True)

            updated = profile.model_copy(update={"behavior_events": event.sequence, "updated_at": utcnow()})
            if force_recompute or self._rng.random() < self.settings.recompute_rate:
                logger.info("Recomputing personas for user %s after %s", user_id, interaction_type)
                updated = self._apply_fit(updated, sample_from_profile(updated, event.data))
            await self._save(updated)
            return event

    async def behavior_history(self, user_id: str, limit: int = 100) -> List[BehaviorEvent]:
        try:
            rows = await self._records.query(BEHAVIOR, filter={"user_id": user_id}, limit=10_000)
        except PersistenceError:
            logger.warning("Behavior history for user %s is unavailable", user_id, exc_info=True)
            return []
        events = sorted((BehaviorEvent.model_validate(r) for r in rows), key=lambda e: e.sequence)
        return events[-limit:]

    def _apply_fit(self, profile: UserProfile, sample: BehaviorSample) -> UserProfile:
        existing = {a.persona_id: a for a in profile.personas}
        assignments: Dict[str, PersonaAssignment] = dict(existing)
        for persona in self.list_personas():
            fit = persona_fit(persona, sample)
            if persona.id in existing:
                if fit >= self.settings.keep_threshold:
                    assignments[persona.id] = PersonaAssignment(
                        persona_id=persona.id, persona_name=persona.name, confidence=fit
                    )
                else:
                    del assignments[persona.id]
                    logger.info("Removed persona %s from user %s (fit=%.2f)", persona.id, profile.user_id, fit)
            elif fit >= self.settings.create_threshold:
                assignments[persona.id] = PersonaAssignment(
                    persona_id=persona.id, persona_name=persona.name, confidence=fit
                )
                logger.info("Assigned persona %s to user %s (fit=%.2f)", persona.id, profile.user_id, fit)
        ordered = tuple(sorted(assignments.values(), key=lambda a: a.confidence, reverse=True))
        return profile.model_copy(update={"personas": ordered, "updated_at": utcnow()})

    async def _load(self, user_id: str) -> Optional[UserProfile]:
        try:
            data = await self._records.load(PROFILES, user_id)
        except PersistenceError:
            logger.warning("Profile store unavailable for user %s, using in-memory copy", user_id, exc_info=True)
            return self._memory.get(user_id)
        if data is None:
            return self._memory.get(user_id)
        return UserProfile.model_validate(data)

    async def _load_or_create(self, user_id: str) -> UserProfile:
        profile = await self._load(user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id)
            logger.info("Created profile for user %s", user_id)
            await self._save(profile)
        return profile

    async def _save(self, profile: UserProfile) -> None:
        # Only profiles the store refused are held here, until a later save succeeds.
        try:
            await self._records.save(PROFILES, profile.user_id, profile.model_dump(mode="json"))
        except PersistenceError:
            logger.warning("Profile for user %s kept in memory only", profile.user_id, exc_info=True)
            self._memory[profile.user_id] = profile
        else:
            self._memory.pop(profile.user_id, None)
