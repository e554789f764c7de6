"""Error taxonomy shared by the turn log, memory store, and summarizer."""

from __future__ import annotations

from typing import Any, Optional


class BackMemoryError(Exception):
    """Base class for every error raised by this package."""


class NotFoundError(BackMemoryError):
    """The referenced id does not exist."""


class ForbiddenError(BackMemoryError):
    """The id exists but belongs to another conversation or owner."""


class ValidationError(BackMemoryError, ValueError):
    """Input violates a length, ownership-of-turn, or format constraint."""


class InsufficientPointsError(ValidationError):
    """Raised by a points ledger when the reservation cannot be covered."""


class GenerationError(BackMemoryError):
    """The LLM or embedding call failed, timed out, or returned nothing."""


class ConflictError(BackMemoryError):
    """A concurrent write collided (version race, summarization in flight)."""

    def __init__(
        self,
        message: str = "Conflict detected.",
        entity: Optional[str] = None,
        entity_id: Any = None,
    ) -> None:
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self) -> str:
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"entity: {self.entity}")
        if self.entity_id:
            details.append(f"id: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


def user_message(exc: BaseException) -> str:
    """Render ``exc`` the way it is shown to the end user."""

    if isinstance(exc, (NotFoundError, ForbiddenError)):
        return "This conversation is not accessible."
    if isinstance(exc, ValidationError):
        return str(exc)
    if isinstance(exc, (GenerationError, ConflictError)):
        return "The request could not be completed. Please try again."
    return "An unexpected error occurred."


__all__ = [
    "BackMemoryError",
    "ConflictError",
    "ForbiddenError",
    "GenerationError",
    "InsufficientPointsError",
    "NotFoundError",
    "ValidationError",
    "user_message",
]
