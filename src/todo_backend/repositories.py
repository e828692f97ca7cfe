from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from threading import RLock
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional

from .errors import ConflictError, ValidationError
from .models import Priority, RefreshTokenRecord, Todo, TodoStatus, User

if TYPE_CHECKING:
    from .settings import Settings

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
# Offsets must fit a signed 64-bit SQLite INTEGER
MAX_OFFSET = 2**63 - 1 - MAX_PAGE_SIZE
SORT_FIELDS = ("createdAt", "dueDate", "title")
SORT_DIRECTIONS = ("asc", "desc")


@dataclass(frozen=True)
class TodoFilter:
    """
    Filters for searching todos. All fields are optional and combine with AND.
    Due bounds are exclusive; todos without a due date never match a bound.
    """
    status: Optional[TodoStatus] = None
    priority_in: Optional[FrozenSet[Priority]] = None
    query: Optional[str] = None
    due_before: Optional[date] = None
    due_after: Optional[date] = None
    include_deleted: bool = False


@dataclass(frozen=True)
class PageRequest:
    """
    Offset/limit window plus ordering for a search.
    """
    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: str = "createdAt"  # allowed: createdAt, dueDate, title
    sort_direction: str = "desc"

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValidationError.for_field("page", "page must be >= 0")
        if self.offset > MAX_OFFSET:
            raise ValidationError.for_field("page", "page is too large")
        if not (1 <= self.limit <= MAX_PAGE_SIZE):
            raise ValidationError.for_field("size", f"size must be between 1 and {MAX_PAGE_SIZE}")
        if self.sort_by not in SORT_FIELDS:
            raise ValidationError.for_field("sortBy", "sortBy must be one of createdAt, dueDate, title")
        if self.sort_direction not in SORT_DIRECTIONS:
            raise ValidationError.for_field("sortDir", "sortDir must be 'asc' or 'desc'")


@dataclass
class SearchResult:
    items: List[Todo] = field(default_factory=list)
    total: int = 0


# PUBLIC_INTERFACE
class UserRepository(ABC):
    """Persistence contract for users. Lookups return None rather than raising."""

    @abstractmethod
    def find_by_email(self, email: str) -> Optional[User]:
        """Return the user with this email (case-insensitive), or None."""

    @abstractmethod
    def find_by_id(self, user_id: str) -> Optional[User]:
        """Return the user with this id, or None."""

    @abstractmethod
    def save(self, user: User) -> User:
        """Insert or update a user. Raises ConflictError if the email belongs to another user."""

    @abstractmethod
    def exists_by_email(self, email: str) -> bool:
        """Return True if a user is registered under this email."""


# PUBLIC_INTERFACE
class TodoRepository(ABC):
    """Persistence contract for todos. All lookups are scoped to an owner."""

    @abstractmethod
    def find_by_id(self, todo_id: str, owner_id: str, include_deleted: bool = False) -> Optional[Todo]:
        """
        Return the todo if it exists and belongs to owner_id, else None.
        A todo owned by someone else is indistinguishable from a missing one.
        """

    @abstractmethod
    def save(self, todo: Todo, expected_version: Optional[int] = None) -> Todo:
        """
        Insert or update a todo and return the stored copy with its version bumped.
        When expected_version is given, raise ConflictError unless the stored,
        non-deleted row still carries that version.
        """

    @abstractmethod
    def soft_delete(self, todo_id: str, deleted_at: datetime) -> bool:
        """Mark a live todo as deleted. Return True if a row was marked."""

    @abstractmethod
    def search(self, owner_id: Optional[str], flt: TodoFilter, page: PageRequest) -> SearchResult:
        """
        Return one page of todos matching the filter plus the total match count.
        - owner_id=None searches across all owners
        - Soft-deleted rows are excluded unless flt.include_deleted is set
        - Ordering follows page.sort_by/sort_direction, ties on created_at then id
        """


# PUBLIC_INTERFACE
class RefreshTokenRepository(ABC):
    """Persistence contract for refresh token rotation state."""

    @abstractmethod
    def save(self, record: RefreshTokenRecord) -> None:
        """Store a newly issued token record."""

    @abstractmethod
    def find(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        """Return the record regardless of state, or None."""

    @abstractmethod
    def consume(self, token_hash: str, now: datetime) -> Optional[RefreshTokenRecord]:
        """
        Atomically mark an active record consumed and return it.
        Return None if the token is unknown, expired, consumed or revoked.
        """

    @abstractmethod
    def revoke(self, token_hash: str, now: datetime) -> bool:
        """Revoke one token. Return True if an active token was revoked."""

    @abstractmethod
    def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        """Revoke every active token of a user. Return how many were revoked."""


def matches_filter(todo: Todo, flt: TodoFilter) -> bool:
    if todo.is_deleted and not flt.include_deleted:
        return False
    if flt.status is not None and todo.status != flt.status:
        return False
    if flt.priority_in and todo.priority not in flt.priority_in:
        return False
    if flt.query:
        s = flt.query.lower()
        title_ok = s in todo.title.lower()
        desc_ok = s in todo.description.lower() if todo.description else False
        if not (title_ok or desc_ok):
            return False
    if flt.due_before is not None and (todo.due_date is None or not todo.due_date < flt.due_before):
        return False
    if flt.due_after is not None and (todo.due_date is None or not todo.due_date > flt.due_after):
        return False
    return True


def sort_todos(items: List[Todo], page: PageRequest) -> List[Todo]:
    """Order todos the same way the SQLite backend does."""
    reverse = page.sort_direction == "desc"

    def tie(t: Todo):
        return (t.created_at, t.id)

    if page.sort_by == "title":
        return sorted(items, key=lambda t: (t.title.lower(), *tie(t)), reverse=reverse)
    if page.sort_by == "dueDate":
        # Undated todos go last in both directions
        dated = [t for t in items if t.due_date is not None]
        undated = [t for t in items if t.due_date is None]
        return sorted(dated, key=lambda t: (t.due_date, *tie(t)), reverse=reverse) + sorted(
            undated, key=tie, reverse=reverse
        )
    return sorted(items, key=tie, reverse=reverse)


class InMemoryUserRepository(UserRepository):
    """
    Thread-safe in-memory user store suitable for testing and default runtime.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}

    def find_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            user_id = self._by_email.get(email.strip().lower())
            return None if user_id is None else self._items[user_id].copy()

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._lock:
            item = self._items.get(user_id)
            return None if item is None else item.copy()

    def save(self, user: User) -> User:
        email = user.email.strip().lower()
        with self._lock:
            owner = self._by_email.get(email)
            if owner is not None and owner != user.id:
                raise ConflictError("Email already registered")
            previous = self._items.get(user.id)
            if previous is not None and previous.email != email:
                self._by_email.pop(previous.email, None)
            stored = user.copy()
            stored.email = email
            self._items[user.id] = stored
            self._by_email[email] = user.id
            return stored.copy()

    def exists_by_email(self, email: str) -> bool:
        with self._lock:
            return email.strip().lower() in self._by_email


class InMemoryTodoRepository(TodoRepository):
    """
    Thread-safe in-memory todo store suitable for testing and default runtime.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[str, Todo] = {}

    def find_by_id(self, todo_id: str, owner_id: str, include_deleted: bool = False) -> Optional[Todo]:
        with self._lock:
            item = self._items.get(todo_id)
            if item is None or item.owner_id != owner_id:
                return None
            if item.is_deleted and not include_deleted:
                return None
            return item.copy()

    def save(self, todo: Todo, expected_version: Optional[int] = None) -> Todo:
        with self._lock:
            existing = self._items.get(todo.id)
            if expected_version is not None:
                if existing is None or existing.is_deleted or existing.version != expected_version:
                    raise ConflictError("Todo was modified concurrently")
            stored = todo.copy()
            stored.version = (existing.version if existing else 0) + 1
            self._items[todo.id] = stored
            return stored.copy()

    def soft_delete(self, todo_id: str, deleted_at: datetime) -> bool:
        with self._lock:
            existing = self._items.get(todo_id)
            if existing is None or existing.is_deleted:
                return False
            existing.deleted_at = deleted_at
            existing.version += 1
            return True

    def search(self, owner_id: Optional[str], flt: TodoFilter, page: PageRequest) -> SearchResult:
        with self._lock:
            items = [
                t for t in self._items.values()
                if (owner_id is None or t.owner_id == owner_id) and matches_filter(t, flt)
            ]
            ordered = sort_todos(items, page)
            window = ordered[page.offset:page.offset + page.limit]
            # Return copies to avoid external mutation
            return SearchResult(items=[t.copy() for t in window], total=len(items))


class InMemoryRefreshTokenRepository(RefreshTokenRepository):
    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[str, RefreshTokenRecord] = {}

    def save(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            self._items[record.token_hash] = record.copy()

    def find(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            item = self._items.get(token_hash)
            return None if item is None else item.copy()

    def consume(self, token_hash: str, now: datetime) -> Optional[RefreshTokenRecord]:
        with self._lock:
            item = self._items.get(token_hash)
            if item is None or not item.is_active(now):
                return None
            item.consumed_at = now
            return item.copy()

    def revoke(self, token_hash: str, now: datetime) -> bool:
        with self._lock:
            item = self._items.get(token_hash)
            if item is None or item.consumed_at is not None or item.revoked_at is not None:
                return False
            item.revoked_at = now
            return True

    def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        count = 0
        with self._lock:
            for item in self._items.values():
                if item.user_id == user_id and item.consumed_at is None and item.revoked_at is None:
                    item.revoked_at = now
                    count += 1
        return count


@dataclass
class Repositories:
    """The set of stores one application instance works against."""

    users: UserRepository
    todos: TodoRepository
    refresh_tokens: RefreshTokenRepository


def in_memory_repositories() -> Repositories:
    return Repositories(
        users=InMemoryUserRepository(),
        todos=InMemoryTodoRepository(),
        refresh_tokens=InMemoryRefreshTokenRepository(),
    )


# PUBLIC_INTERFACE
def build_repositories(settings: "Settings") -> Repositories:
    """
    Factory to return the configured repositories based on settings.
    - memory: InMemory*Repository
    - sqlite: SQLite*Repository sharing one database file
    """
    if settings.persistence_backend == "sqlite":
        from .db import sqlite_repositories

        return sqlite_repositories(settings.sqlite_db_path)
    return in_memory_repositories()
