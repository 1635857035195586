"""Exception taxonomy for the booking assistant.

Only ``ModelCallError`` is fatal to a turn.  Everything else is caught at the
tool-call boundary and folded back into the conversation as a structured
tool result so the model can explain or ask a clarifying question.
"""

from __future__ import annotations

from typing import Any


class SalonAPIError(Exception):
    """Raised when a call to the salon backend fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ToolArgumentError(Exception):
    """Malformed or missing tool arguments that could not be recovered."""

    def __init__(self, message: str, *, field: str | None = None):
        self.field = field
        super().__init__(message)


class ToolExecutionError(Exception):
    """A tool's downstream call failed or timed out."""


class SchedulingConflictError(Exception):
    """The backend refused a booking because the slot overlaps another one.

    Not a failure: it moves the booking attempt into the override branch.
    """

    def __init__(self, message: str, *, date: str | None = None, time: str | None = None):
        self.date = date
        self.time = time
        super().__init__(message)


class ResolutionAmbiguityError(Exception):
    """A free-text service reference matched zero or several services."""

    def __init__(self, text: str, candidates: list[Any] | None = None):
        self.text = text
        self.candidates = list(candidates or [])
        if self.candidates:
            message = f'"{text}" matches {len(self.candidates)} services'
        else:
            message = f'"{text}" does not match any service'
        super().__init__(message)


class ModelCallError(Exception):
    """The language-model invocation failed or timed out."""
