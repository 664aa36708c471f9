import random

import pytest
from fastapi.testclient import TestClient

from conftest import RecordingCompletion, fast_settings
from trip_assistant.agent import build_assistant
from trip_assistant.main import create_app


@pytest.fixture
def client():
    assistant = build_assistant(
        fast_settings(),
        completion=RecordingCompletion(),
        skills=(),
        profiler_rng=random.Random(1),
    )
    with TestClient(create_app(assistant)) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_message_reply(client):
    response = client.post("/messages", json={"participant_id": "p1", "text": "Plan a trip to Rome for 5 days"})

    assert response.status_code == 200
    body = response.json()
    assert body["participant_id"] == "p1"
    assert body["state"] == "awaiting_confirmation"
    assert body["degraded"] is False
    assert body["session_id"]
    assert body["suggested_actions"]
    assert body["debug"]["provenance"]["intent"] == "travel_planning"
    components = {event["component"] for event in body["middleware_events"]}
    assert {"intent_classifier", "context_synthesizer", "orchestrator"} <= components


def test_message_requires_participant(client):
    response = client.post("/messages", json={"participant_id": "", "text": "hello"})

    assert response.status_code == 422


def test_classify(client):
    response = client.post("/classify", json={"text": "Is it safe to walk at night in Bangkok?"})

    body = response.json()
    assert body["type"] == "safety_info"
    assert body["family"] == "safety"


def test_profile_and_behavior(client):
    assert client.get("/profiles/u9").json()["user_id"] == "u9"

    response = client.post(
        "/profiles/u9/behavior",
        json={
            "interaction_type": "search",
            "data": {"budget_focused": True, "adventure_level": "medium", "preferred_group_size": "small"},
            "force_recompute": True,
        },
    )

    body = response.json()
    assert body["event"]["sequence"] == 1
    assert body["profile"]["personas"][0]["persona_id"] == "budget_explorer"


def test_cache_stats(client):
    client.post("/messages", json={"participant_id": "p1", "text": "hello"})

    stats = client.get("/cache/stats").json()

    assert stats["size"] == 1
    assert stats["max_size"] == 100
