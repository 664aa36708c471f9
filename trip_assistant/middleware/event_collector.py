"""Per-request component event collector using contextvars.

Usage:
    # In the request handler (main.py):
    reset_events()
    await assistant.handle_message(...)
    events = get_events()

    # In components:
    emit_event(component="response_cache", status="hit", message="...", details={...})

Events emitted outside a request (no ``reset_events`` call in the current
context) are dropped.
"""

import contextvars
from typing import Any, Optional

_events: contextvars.ContextVar[Optional[list[dict[str, Any]]]] = contextvars.ContextVar(
    "component_events", default=None
)


def reset_events() -> None:
    """Start a fresh event list for a new request."""
    _events.set([])


def emit_event(*, component: str, status: str, message: str, details: dict[str, Any] | None = None) -> None:
    """Append a component event for the current request."""
    events = _events.get()
    if events is None:
        return
    event = {"component": component, "status": status, "message": message}
    if details:
        event["details"] = details
    events.append(event)


def get_events() -> list[dict[str, Any]]:
    """Return all component events collected during the current request."""
    return list(_events.get() or [])
