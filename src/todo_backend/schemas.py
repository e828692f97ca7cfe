from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import Priority, Role, Todo, TodoStatus, UserProfile

# Shared type for incoming due_date which can be a date, datetime, or ISO8601 string
DueDateInput = Union[date, datetime, str]


def _parse_due_date(value: Optional[DueDateInput]) -> Optional[date]:
    """
    Internal helper to normalize due_date input into a calendar date.
    - If value is a string, accept an ISO date or an ISO datetime (the time part is dropped).
    - If value is a datetime, keep its date.
    - If value is a date, return as-is.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return value.date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        s = value.strip()
        try:
            return date.fromisoformat(s)
        except ValueError:
            try:
                return datetime.fromisoformat(s).date()
            except ValueError as e:
                raise ValueError(
                    "Invalid dueDate format. Use an ISO8601 date string (e.g., '2025-01-31')."
                ) from e

    # Any other type is invalid
    raise ValueError("Invalid type for dueDate; expected an ISO8601 date string.")


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorDetail(ApiModel):
    field: str
    message: str


class ErrorResponse(ApiModel):
    """Body of every non-2xx response."""

    error: str = Field(..., description="Error kind, e.g. ValidationError")
    message: str = Field(..., description="Human readable summary")
    detail: Optional[List[ErrorDetail]] = Field(default=None, description="Field-level validation failures")


# PUBLIC_INTERFACE
class RegisterRequest(ApiModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {"email": "alice@example.com", "password": "Passw0rd!", "displayName": "Alice"}
        }
    )

    email: str = Field(..., description="Login email; must be unique")
    password: str = Field(..., description="At least 8 chars with lower case, upper case and a digit")
    display_name: str = Field(..., description="Name shown in the UI")


class LoginRequest(ApiModel):
    email: str
    password: str


class RefreshRequest(ApiModel):
    refresh_token: str = Field(..., description="Refresh token returned by login or a previous refresh")


# PUBLIC_INTERFACE
class TokenResponse(ApiModel):
    access_token: str = Field(..., description="Short-lived bearer token")
    refresh_token: str = Field(..., description="Single-use token for obtaining a new pair")
    token_type: str = Field(default="bearer")
    expires_in: int = Field(..., description="Access token lifetime in seconds")


# PUBLIC_INTERFACE
class UserOut(ApiModel):
    id: str
    email: str
    display_name: str
    role: Role
    active: bool
    created_at: datetime

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserOut":
        return cls(
            id=profile.id,
            email=profile.email,
            display_name=profile.display_name,
            role=profile.role,
            active=profile.active,
            created_at=profile.created_at,
        )


# PUBLIC_INTERFACE
class TodoCreate(ApiModel):
    """
    Schema for creating a new Todo item.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "priority": "MEDIUM",
                "dueDate": "2030-02-01",
            }
        }
    )

    title: str = Field(..., description="Short title for the todo item (1..200 chars after trimming)")
    description: Optional[str] = Field(default=None, description="Optional detailed description (max 2000 chars)")
    priority: Optional[Priority] = Field(default=None, description="LOW, MEDIUM or HIGH")
    due_date: Optional[date] = Field(default=None, description="Due date as an ISO8601 date; must not be in the past")

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[date]:
        """
        Normalize due_date from str/date/datetime to date.
        """
        return _parse_due_date(v)


# PUBLIC_INTERFACE
class TodoUpdate(ApiModel):
    """
    Schema for updating an existing Todo item.
    All fields are optional; only provided fields will be updated, and an
    explicit null clears description, priority or dueDate.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Buy groceries and supplies",
                "priority": "HIGH",
                "dueDate": None,
                "version": 2,
            }
        }
    )

    title: Optional[str] = Field(default=None, description="Short title for the todo item")
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    priority: Optional[Priority] = Field(default=None, description="LOW, MEDIUM or HIGH")
    due_date: Optional[date] = Field(default=None, description="Due date as an ISO8601 date")
    status: Optional[TodoStatus] = Field(default=None, description="INCOMPLETE or COMPLETED")
    version: Optional[int] = Field(
        default=None, description="Version the client last saw; a mismatch is rejected with 409"
    )

    @field_validator("priority", "status", mode="before")
    @classmethod
    def normalize_enums(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[date]:
        return _parse_due_date(v)

    def changes(self) -> Dict[str, Any]:
        """The fields the client actually sent, keyed by domain attribute name."""
        return self.model_dump(exclude_unset=True, exclude={"version"})


# PUBLIC_INTERFACE
class TodoOut(ApiModel):
    """
    Schema returned by the API for a Todo item.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "5f0c8e8e4b3a4f51a0e0b8c1d2e3f4a5",
                "ownerId": "0a1b2c3d4e5f40718293a4b5c6d7e8f9",
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "status": "INCOMPLETE",
                "priority": "MEDIUM",
                "dueDate": "2030-02-01",
                "overdue": False,
                "createdAt": "2025-01-25T10:15:30.123456Z",
                "updatedAt": "2025-01-26T09:00:00.000001Z",
                "deletedAt": None,
                "version": 1,
            }
        }
    )

    id: str = Field(..., description="Unique identifier of the todo item")
    owner_id: str = Field(..., description="Id of the owning user")
    title: str
    description: Optional[str] = None
    status: TodoStatus
    priority: Optional[Priority] = None
    due_date: Optional[date] = None
    overdue: bool = Field(..., description="True when the due date has passed and the todo is not completed")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    deleted_at: Optional[datetime] = Field(default=None, description="Soft-delete timestamp, if deleted")
    version: int = Field(..., description="Optimistic concurrency version")

    @classmethod
    def from_domain(cls, todo: Todo, today: date) -> "TodoOut":
        return cls(
            id=todo.id,
            owner_id=todo.owner_id,
            title=todo.title,
            description=todo.description,
            status=todo.status,
            priority=todo.priority,
            due_date=todo.due_date,
            overdue=todo.is_overdue(today),
            created_at=todo.created_at,
            updated_at=todo.updated_at,
            deleted_at=todo.deleted_at,
            version=todo.version,
        )


class TodoPage(ApiModel):
    """
    Envelope for paginated list responses.
    """

    content: List[TodoOut] = Field(..., description="Todos on this page")
    total_elements: int = Field(..., description="Total number of todos matching the query")
    total_pages: int = Field(..., description="Number of pages at the requested size")
    page: int = Field(..., description="0-based page number")
    size: int = Field(..., description="Requested page size")
