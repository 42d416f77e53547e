"""Typed errors raised by the approval and workflow services.

Callers distinguish expected control flow (validation, authorization,
conflicts, missing entities) from infrastructure failures by type:

- ``ValidationError``: malformed input, tied to a single field
- ``NotFoundError``: referenced entity is absent
- ``AuthorizationError``: caller lacks the required relationship
- ``ConflictError``: entity is not in the state the transition needs
- ``FatalError``: datastore or notification infrastructure failure
"""

from __future__ import annotations

from typing import Any, Optional


class CollabFlowError(Exception):
    """Base exception for all collabflow errors."""

    code: str = "error"

    def __init__(self, message: str = "", **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(CollabFlowError):
    """Input failed validation."""

    code = "validation_error"

    def __init__(self, message: str = "", field: Optional[str] = None, **details: Any):
        self.field = field
        if field is not None:
            details.setdefault("field", field)
        super().__init__(message, **details)


class NotFoundError(CollabFlowError):
    """Referenced entity does not exist."""

    code = "not_found"


class AuthorizationError(CollabFlowError):
    """Caller is not allowed to act on the entity."""

    code = "forbidden"


class ConflictError(CollabFlowError):
    """Entity is not in the expected state for the requested transition."""

    code = "conflict"


class FatalError(CollabFlowError):
    """Infrastructure failure; the operation may be partially applied."""

    code = "fatal"


__all__ = [
    "CollabFlowError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "ConflictError",
    "FatalError",
]
