from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Mapping, Optional

from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .models import Principal, Priority, Todo, utcnow
from .repositories import PageRequest, SearchResult, TodoFilter, TodoRepository

logger = logging.getLogger(__name__)

TODO_NOT_FOUND = "Todo not found"


@dataclass(frozen=True)
class NewTodo:
    """Input for creating a todo."""

    title: str
    description: Optional[str] = None
    priority: Optional[Priority] = None
    due_date: Optional[date] = None


# PUBLIC_INTERFACE
class TodoService:
    """
    Todo operations on behalf of an authenticated principal.

    Every lookup is scoped to the principal's own todos, so another user's todo
    surfaces as NotFoundError. AuthorizationError is reserved for admin-only
    options. Nothing is retried here; repository errors propagate unchanged.
    """

    def __init__(self, todos: TodoRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self._todos = todos
        self._clock = clock

    def create(self, data: NewTodo, principal: Principal) -> Todo:
        now = self._clock()
        todo = Todo.new(
            owner_id=principal.user_id,
            title=data.title,
            description=data.description,
            priority=data.priority,
            due_date=data.due_date,
            today=now.date(),
            now=now,
        )
        created = self._todos.save(todo)
        logger.debug("User %s created todo %s", principal.user_id, created.id)
        return created

    def list(
        self,
        flt: TodoFilter,
        page: PageRequest,
        principal: Principal,
        all_users: bool = False,
    ) -> SearchResult:
        """
        Search the principal's todos. `all_users` and `flt.include_deleted` are
        admin-only and raise AuthorizationError for anyone else.
        """
        if (all_users or flt.include_deleted) and not principal.is_admin:
            raise AuthorizationError("Admin role required")
        owner_id = None if all_users else principal.user_id
        return self._todos.search(owner_id, flt, page)

    def get(self, todo_id: str, principal: Principal) -> Todo:
        return self._load(todo_id, principal)

    def update(
        self,
        todo_id: str,
        changes: Mapping[str, Any],
        principal: Principal,
        expected_version: Optional[int] = None,
    ) -> Todo:
        """
        Apply a partial update. At least one field is required.
        A stale expected_version raises ConflictError.
        """
        if not changes:
            raise ValidationError.for_field("body", "at least one field must be provided")
        todo = self._load(todo_id, principal)
        if expected_version is not None and expected_version != todo.version:
            raise ConflictError("Todo has been modified by another request")
        loaded_version = todo.version
        now = self._clock()
        todo.apply_patch(changes, today=now.date(), now=now)
        return self._todos.save(todo, expected_version=loaded_version)

    def toggle(self, todo_id: str, principal: Principal) -> Todo:
        todo = self._load(todo_id, principal)
        loaded_version = todo.version
        todo.toggle(self._clock())
        return self._todos.save(todo, expected_version=loaded_version)

    def delete(self, todo_id: str, principal: Principal) -> None:
        todo = self._load(todo_id, principal)
        if not self._todos.soft_delete(todo.id, self._clock()):
            # Deleted by a concurrent request between load and delete
            raise NotFoundError(TODO_NOT_FOUND)
        logger.info("User %s deleted todo %s", principal.user_id, todo.id)

    def _load(self, todo_id: str, principal: Principal) -> Todo:
        todo = self._todos.find_by_id(todo_id, principal.user_id)
        if todo is None:
            raise NotFoundError(TODO_NOT_FOUND)
        return todo
