"""
Error types raised by the Program Engine.

Every error carries the human-readable message that is reported to the
caller verbatim. The API layer maps each type to an HTTP status code.
"""

from datetime import datetime
from typing import List, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnauthorizedError(EngineError):
    """No authenticated caller."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ForbiddenError(EngineError):
    """Caller is authenticated but lacks the required capability."""

    status_code = 403


class NotFoundError(EngineError):
    status_code = 404


class ConflictError(EngineError):
    """A uniqueness constraint would be violated."""

    status_code = 409


class ValidationError(EngineError):
    """Input failed validation. ``errors`` holds every individual message."""

    status_code = 422

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class RateLimitedError(EngineError):
    status_code = 429

    def __init__(self, message: str, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at
