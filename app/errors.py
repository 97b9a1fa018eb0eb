"""Domain exceptions raised by the session services."""

from __future__ import annotations


class SessionServiceError(Exception):
    """Base class for errors surfaced by the matching services."""


class NotFoundError(SessionServiceError):
    """A session, join code, user or movie lookup missed."""


class ValidationError(SessionServiceError):
    """The request violates a precondition; nothing was written."""


class InvalidTransitionError(ValidationError):
    """The requested status change is not a legal edge of the state machine."""

    def __init__(self, current: str, requested: str, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move session from {current!r} to {requested!r}"
        )


class PermissionDeniedError(ValidationError):
    """The acting user is not allowed to perform the operation."""


class ConflictError(SessionServiceError):
    """Duplicate join, vote or identity. Unabsorbed ones surface as 409."""


class UpstreamError(SessionServiceError):
    """The movie catalog could not be reached or returned an error."""

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RaceLossError(SessionServiceError):
    """A compare-and-set write kept losing to concurrent writers."""
