import asyncio
import random

import pytest

from trip_assistant.agent import build_assistant
from trip_assistant.config import (
    CacheSettings,
    OrchestratorSettings,
    ProfilerSettings,
    Settings,
    SynthesizerSettings,
)
from trip_assistant.core.store import RecordStore
from trip_assistant.errors import PersistenceError


class RecordingCompletion:
    """Completion provider double that records every request it receives."""

    def __init__(self, replies=("Here is a helpful travel answer.",), error=None, delay=0.0):
        self.replies = list(replies)
        self.error = error
        self.delay = delay
        self.calls = []

    async def complete(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.replies[(len(self.calls) - 1) % len(self.replies)]


class BrokenRecordStore(RecordStore):
    """Record store whose every operation fails."""

    async def load(self, namespace, key):
        raise PersistenceError("store offline")

    async def save(self, namespace, key, value):
        raise PersistenceError("store offline")

    async def delete(self, namespace, key):
        raise PersistenceError("store offline")

    async def query(self, namespace, *, filter=None, limit=100):
        raise PersistenceError("store offline")


def fast_settings(**orchestrator) -> Settings:
    """Settings with no waits between retries; keyword arguments override orchestrator fields."""
    return Settings(
        model="test-model",
        cache=CacheSettings(offload_threshold=None),
        profiler=ProfilerSettings(recompute_rate=0.0),
        synthesizer=SynthesizerSettings(completion_max_attempts=1, completion_initial_delay=0.0, completion_timeout_seconds=2.0),
        orchestrator=OrchestratorSettings(**{
            "skill_initial_delay": 0.0,
            "skill_timeout_seconds": 2.0,
            "request_deadline_seconds": 5.0,
            **orchestrator,
        }),
    )


@pytest.fixture
def completion():
    return RecordingCompletion()


@pytest.fixture
def records():
    return RecordStore()


@pytest.fixture
def assistant(completion):
    return build_assistant(fast_settings(), completion=completion, skills=(), profiler_rng=random.Random(7))
