from trip_assistant.config import DEFAULT_MODEL, Settings, load_settings


def test_defaults():
    settings = load_settings({})

    assert settings == Settings()
    assert settings.model == DEFAULT_MODEL
    assert settings.cache.max_size == 100
    assert settings.orchestrator.inactivity_timeout_seconds == 1800.0


def test_environment_overrides():
    settings = load_settings({
        "TRIP_MODEL": "google_genai:gemini-2.5-flash",
        "TRIP_CACHE_MAX_SIZE": "50",
        "TRIP_LOOP_TURNS": "4",
        "TRIP_REQUEST_DEADLINE": "12.5",
        "TRIP_PERSONA_RECOMPUTE_RATE": "",
    })

    assert settings.model == "google_genai:gemini-2.5-flash"
    assert settings.cache.max_size == 50
    assert settings.orchestrator.loop_turns == 4
    assert settings.orchestrator.request_deadline_seconds == 12.5
    assert settings.profiler.recompute_rate == 0.1


def test_offload_can_be_disabled():
    settings = load_settings({"TRIP_CACHE_OFFLOAD_THRESHOLD": "none"})

    assert settings.cache.offload_threshold is None
