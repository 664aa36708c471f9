from trip_assistant.middleware.event_collector import emit_event, get_events, reset_events
from trip_assistant.middleware.retry import call_with_retry

__all__ = ["call_with_retry", "emit_event", "get_events", "reset_events"]
