"""Error taxonomy for the trip assistant core.

Only conditions that callers may need to tell apart get their own class.
Ambiguous classification and conversation loops are not errors: they surface
as ``intent='unclear'`` and as a ``LoopSignal`` respectively.
"""


class TripAssistantError(Exception):
    """Base class for all errors raised inside the assistant core."""


class InputValidationError(TripAssistantError):
    """Malformed input. Recovered locally by substituting defaults."""


class ProviderError(TripAssistantError):
    """An external collaborator (completion, knowledge, skill) failed."""


class ProviderTimeoutError(ProviderError):
    """An external call exceeded its deadline."""


class PersistenceError(TripAssistantError):
    """A read or write against the record store failed."""


class SkillError(TripAssistantError):
    """A skill failed in a way that retrying will not fix."""


class TransientSkillError(SkillError):
    """A skill failed in a way that is worth retrying."""
