from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import FieldError, ValidationError

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
DISPLAY_NAME_MAX_LENGTH = 100

PATCHABLE_FIELDS = frozenset({"title", "description", "priority", "due_date", "status"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid.uuid4().hex


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class TodoStatus(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    COMPLETED = "COMPLETED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as decoded from an access token."""

    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class UserProfile:
    """Public view of a user. Never carries the password hash."""

    id: str
    email: str
    display_name: str
    role: Role
    active: bool
    created_at: datetime


# PUBLIC_INTERFACE
@dataclass
class User:
    """
    A registered account.

    Fields:
    - id: opaque identifier
    - email: normalized to lower case; unique across users
    - password_hash: salted one-way hash, owned by the authentication service
    - display_name: 1..100 chars after trimming
    - role: USER or ADMIN; only changed through promotion
    - active: deactivated users cannot log in or refresh
    """

    id: str
    email: str
    password_hash: str
    display_name: str
    role: Role = Role.USER
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        display_name: str,
        role: Role = Role.USER,
        now: Optional[datetime] = None,
    ) -> "User":
        errors: List[FieldError] = []
        name = check_display_name(display_name, errors)
        if errors:
            raise ValidationError(errors)
        ts = now or utcnow()
        return cls(
            id=new_id(),
            email=email.strip().lower(),
            password_hash=password_hash,
            display_name=name or "",
            role=role,
            active=True,
            created_at=ts,
            updated_at=ts,
        )

    def profile(self) -> UserProfile:
        return UserProfile(
            id=self.id,
            email=self.email,
            display_name=self.display_name,
            role=self.role,
            active=self.active,
            created_at=self.created_at,
        )

    def promote(self, now: Optional[datetime] = None) -> None:
        self.role = Role.ADMIN
        self.updated_at = now or utcnow()

    def deactivate(self, now: Optional[datetime] = None) -> None:
        self.active = False
        self.updated_at = now or utcnow()

    def copy(self) -> "User":
        return replace(self)


@dataclass
class RefreshTokenRecord:
    """Server-side state of one opaque refresh token, keyed by its SHA-256 hash."""

    token_hash: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.consumed_at is None and self.revoked_at is None and now < self.expires_at

    def copy(self) -> "RefreshTokenRecord":
        return replace(self)


def check_display_name(value: Any, errors: List[FieldError]) -> Optional[str]:
    s = value.strip() if isinstance(value, str) else ""
    if not (1 <= len(s) <= DISPLAY_NAME_MAX_LENGTH):
        errors.append(
            FieldError("displayName", f"displayName length must be between 1 and {DISPLAY_NAME_MAX_LENGTH} characters")
        )
        return None
    return s


def _check_title(value: Any, errors: List[FieldError]) -> Optional[str]:
    if not isinstance(value, str):
        errors.append(FieldError("title", "title is required"))
        return None
    s = value.strip()
    if not (1 <= len(s) <= TITLE_MAX_LENGTH):
        errors.append(FieldError("title", f"title length must be between 1 and {TITLE_MAX_LENGTH} characters"))
        return None
    return s


def _check_description(value: Any, errors: List[FieldError]) -> Optional[str]:
    if value is None:
        return None
    if len(value) > DESCRIPTION_MAX_LENGTH:
        errors.append(
            FieldError("description", f"description must be at most {DESCRIPTION_MAX_LENGTH} characters")
        )
    return value


def _check_priority(value: Any, errors: List[FieldError]) -> Optional[Priority]:
    if value is None:
        return None
    try:
        return Priority(value)
    except ValueError:
        errors.append(FieldError("priority", "priority must be one of LOW, MEDIUM, HIGH"))
        return None


def _check_due_date(value: Any, today: date, errors: List[FieldError]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    if value < today:
        errors.append(FieldError("dueDate", "dueDate must not be in the past"))
    return value


# PUBLIC_INTERFACE
@dataclass
class Todo:
    """
    A task owned by exactly one user.

    owner_id is a lookup-only reference; the owning User is resolved through
    the user repository when needed. deleted_at marks a soft delete. version is
    bumped by the repository on every save.
    """

    id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    status: TodoStatus = TodoStatus.INCOMPLETE
    priority: Optional[Priority] = None
    due_date: Optional[date] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def new(
        cls,
        owner_id: str,
        title: Any,
        description: Optional[str] = None,
        priority: Any = None,
        due_date: Optional[date] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> "Todo":
        """Validate inputs and build an INCOMPLETE todo. Raises ValidationError."""
        ts = now or utcnow()
        errors: List[FieldError] = []
        clean_title = _check_title(title, errors)
        clean_description = _check_description(description, errors)
        clean_priority = _check_priority(priority, errors)
        clean_due = _check_due_date(due_date, today or ts.date(), errors)
        if errors:
            raise ValidationError(errors)
        return cls(
            id=new_id(),
            owner_id=owner_id,
            title=clean_title or "",
            description=clean_description,
            status=TodoStatus.INCOMPLETE,
            priority=clean_priority,
            due_date=clean_due,
            created_at=ts,
            updated_at=ts,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def mark_complete(self, now: Optional[datetime] = None) -> None:
        self.status = TodoStatus.COMPLETED
        self.updated_at = now or utcnow()

    def mark_incomplete(self, now: Optional[datetime] = None) -> None:
        self.status = TodoStatus.INCOMPLETE
        self.updated_at = now or utcnow()

    def toggle(self, now: Optional[datetime] = None) -> None:
        if self.status == TodoStatus.COMPLETED:
            self.mark_incomplete(now)
        else:
            self.mark_complete(now)

    def is_overdue(self, today: date) -> bool:
        return self.due_date is not None and self.due_date < today and self.status != TodoStatus.COMPLETED

    def apply_patch(
        self,
        changes: Mapping[str, Any],
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Apply a partial update. Keys absent from `changes` are left alone;
        an explicit None clears description, priority or due_date.

        Raises ValidationError without modifying the todo if any field is invalid.
        """
        ts = now or utcnow()
        errors: List[FieldError] = []
        updates: Dict[str, Any] = {}

        unknown = set(changes) - PATCHABLE_FIELDS
        for name in sorted(unknown):
            errors.append(FieldError(name, "field cannot be updated"))

        if "title" in changes:
            updates["title"] = _check_title(changes["title"], errors)
        if "description" in changes:
            updates["description"] = _check_description(changes["description"], errors)
        if "priority" in changes:
            updates["priority"] = _check_priority(changes["priority"], errors)
        if "due_date" in changes:
            due = changes["due_date"]
            if due is not None and isinstance(due, datetime):
                due = due.date()
            # Re-saving an already stored past date is allowed.
            if due is not None and due == self.due_date:
                updates["due_date"] = due
            else:
                updates["due_date"] = _check_due_date(due, today or ts.date(), errors)
        if "status" in changes:
            try:
                updates["status"] = TodoStatus(changes["status"])
            except ValueError:
                errors.append(FieldError("status", "status must be INCOMPLETE or COMPLETED"))

        if errors:
            raise ValidationError(errors)

        new_status = updates.pop("status", None)
        for name, value in updates.items():
            setattr(self, name, value)
        if new_status == TodoStatus.COMPLETED:
            self.mark_complete(ts)
        elif new_status == TodoStatus.INCOMPLETE:
            self.mark_incomplete(ts)
        self.updated_at = ts

    def copy(self) -> "Todo":
        return replace(self)
