from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class FieldError:
    """A single field-level validation failure."""

    field: str
    message: str


# PUBLIC_INTERFACE
class TodoBackendError(Exception):
    """Base class for every error the service raises on purpose."""

    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TodoBackendError):
    """Malformed or out-of-range input.

    Carries a list of FieldError so clients can tell which inputs were rejected.
    """

    default_message = "Validation failed"

    def __init__(self, errors: Iterable[FieldError], message: Optional[str] = None) -> None:
        self.errors: List[FieldError] = list(errors)
        super().__init__(message)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldError(field, message)])


class AuthenticationError(TodoBackendError):
    """Missing, invalid or expired credentials."""

    default_message = "Not authenticated"


class AuthorizationError(TodoBackendError):
    """Authenticated, but not allowed to perform the operation."""

    default_message = "Not permitted"


class NotFoundError(TodoBackendError):
    """Resource absent, or not visible to the caller."""

    default_message = "Not found"


class ConflictError(TodoBackendError):
    """Uniqueness violation or stale write."""

    default_message = "Conflict"


class InfrastructureError(TodoBackendError):
    """Persistence failure. Details go to the log, never to the client."""

    default_message = "Internal server error"
