"""Error taxonomy for the Reminder Assistant.

Every error here is caught at the conversation boundary and turned into a
chat message; none of them is meant to reach the transport layer.
"""

from typing import List, Optional


class ReminderAssistantError(Exception):
    """Base class for all assistant errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DateParseError(ReminderAssistantError):
    """A date, time or recurrence phrase could not be understood.

    The message is user-facing and tells the user how to correct the input.
    """


class ValidationError(ReminderAssistantError):
    """Reminder content or scheduling constraint violated."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class ConflictDetected(ReminderAssistantError):
    """Not a failure: the new reminder overlaps existing ones and needs a decision."""

    def __init__(self, conflicts: List, message: str):
        super().__init__(message)
        self.conflicts = conflicts


class UpstreamParseFailure(ReminderAssistantError):
    """The structured-intent payload was not valid JSON or had no usable shape."""

    def __init__(self, raw: Optional[str], message: str = "Could not parse structured intent"):
        super().__init__(message)
        self.raw = raw


class PersistenceFailure(ReminderAssistantError):
    """A store operation failed."""

    def __init__(self, operation: str, message: Optional[str] = None):
        super().__init__(message or f"Persistence operation failed: {operation}")
        self.operation = operation
