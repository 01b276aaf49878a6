"""Typed failures raised by the collaboration store and session manager."""

from typing import Optional


class CollaborationError(Exception):
    """Base class; carries a stable ``code`` and a human readable ``message``."""

    code = "unknown"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class NotFoundError(CollaborationError):
    code = "not_found"


class ConflictError(CollaborationError):
    code = "conflict"


class ForbiddenError(CollaborationError):
    code = "forbidden"


class ExpiredError(CollaborationError):
    code = "expired"


class InvalidTransitionError(CollaborationError):
    code = "invalid_transition"


class UnknownError(CollaborationError):
    code = "unknown"
