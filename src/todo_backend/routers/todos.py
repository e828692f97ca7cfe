from __future__ import annotations

from datetime import date
from typing import FrozenSet, List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..auth import get_current_principal, get_todo_service
from ..errors import ValidationError
from ..models import Principal, Priority, TodoStatus, utcnow
from ..repositories import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PageRequest, TodoFilter
from ..schemas import ErrorResponse, TodoCreate, TodoOut, TodoPage, TodoUpdate
from ..use_cases import NewTodo, TodoService
from ..utils import pagination_envelope

router = APIRouter(
    prefix="/todos",
    tags=["todos"],
    responses={401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"}},
)


def _parse_status(value: Optional[str]) -> Optional[TodoStatus]:
    if value is None or not value.strip():
        return None
    try:
        return TodoStatus(value.strip().upper())
    except ValueError:
        raise ValidationError.for_field("status", "status must be INCOMPLETE or COMPLETED")


def _parse_priorities(values: Optional[List[str]]) -> Optional[FrozenSet[Priority]]:
    """Accept repeated and/or comma-separated priority params."""
    if not values:
        return None
    parsed = set()
    for raw in values:
        for part in raw.split(","):
            if not part.strip():
                continue
            try:
                parsed.add(Priority(part.strip().upper()))
            except ValueError:
                raise ValidationError.for_field("priority", "priority must be one of LOW, MEDIUM, HIGH")
    return frozenset(parsed) or None


def _out(todo) -> TodoOut:
    return TodoOut.from_domain(todo, utcnow().date())


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=TodoOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create Todo",
    description="Create a new Todo item owned by the caller and return the created resource.",
    responses={
        201: {"description": "Todo created successfully"},
        400: {"model": ErrorResponse, "description": "Validation error"},
    },
)
def create_todo(
    payload: TodoCreate,
    principal: Principal = Depends(get_current_principal),
    service: TodoService = Depends(get_todo_service),
) -> TodoOut:
    """
    Create a new Todo.
    """
    created = service.create(
        NewTodo(
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            due_date=payload.due_date,
        ),
        principal,
    )
    return _out(created)


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=TodoPage,
    summary="List Todos",
    description=(
        "List the caller's todos with optional filters and pagination.\n\n"
        "Query parameters:\n"
        "- page: 0-based page number\n"
        f"- size: page size (1..{MAX_PAGE_SIZE}, default {DEFAULT_PAGE_SIZE})\n"
        "- status: INCOMPLETE or COMPLETED\n"
        "- priority: LOW, MEDIUM, HIGH; repeat or comma-separate for several\n"
        "- search: substring match over title and description\n"
        "- sortBy: createdAt, dueDate or title\n"
        "- sortDir: asc or desc\n"
        "- dueBefore / dueAfter: exclusive due date bounds\n"
        "- includeDeleted, allUsers: admin only\n\n"
        "Returns a page envelope with content and totals."
    ),
    responses={
        200: {"description": "List retrieved successfully"},
        400: {"model": ErrorResponse, "description": "Invalid query parameters"},
        403: {"model": ErrorResponse, "description": "Admin-only option used by a non-admin"},
    },
)
def list_todos(
    page: int = Query(0, ge=0, description="0-based page number"),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Page size"),
    status_: Optional[str] = Query(None, alias="status", description="Filter by status"),
    priority: Optional[List[str]] = Query(None, description="Filter by one or more priorities"),
    search: Optional[str] = Query(None, description="Search text for title/description"),
    sort_by: str = Query("createdAt", alias="sortBy", description="createdAt, dueDate or title"),
    sort_dir: str = Query("desc", alias="sortDir", description="asc or desc"),
    due_before: Optional[date] = Query(None, alias="dueBefore", description="Only todos due before this date"),
    due_after: Optional[date] = Query(None, alias="dueAfter", description="Only todos due after this date"),
    include_deleted: bool = Query(False, alias="includeDeleted", description="Admin only: include soft-deleted"),
    all_users: bool = Query(False, alias="allUsers", description="Admin only: list every user's todos"),
    principal: Principal = Depends(get_current_principal),
    service: TodoService = Depends(get_todo_service),
) -> TodoPage:
    """
    List todos with pagination and filters.
    """
    flt = TodoFilter(
        status=_parse_status(status_),
        priority_in=_parse_priorities(priority),
        query=search.strip() if search and search.strip() else None,
        due_before=due_before,
        due_after=due_after,
        include_deleted=include_deleted,
    )
    window = PageRequest(
        offset=page * size,
        limit=size,
        sort_by=sort_by.strip(),
        sort_direction=sort_dir.strip().lower(),
    )
    result = service.list(flt, window, principal, all_users=all_users)
    envelope = pagination_envelope(
        items=[_out(t) for t in result.items],
        total=result.total,
        page=page,
        size=size,
    )
    return TodoPage(**envelope)


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Get Todo",
    description="Get a single Todo item owned by the caller.",
    responses={
        200: {"description": "Todo found"},
        404: {"model": ErrorResponse, "description": "Todo not found"},
    },
)
def get_todo(
    todo_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TodoService = Depends(get_todo_service),
) -> TodoOut:
    """
    Retrieve a single Todo item by its ID.
    """
    return _out(service.get(todo_id, principal))


# PUBLIC_INTERFACE
@router.put(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Update Todo",
    description=(
        "Partially update fields of a Todo item. At least one field is required; "
        "send `version` to reject the update if someone else changed the todo first."
    ),
    responses={
        200: {"description": "Todo updated"},
        400: {"model": ErrorResponse, "description": "Validation error"},
        403: {"model": ErrorResponse, "description": "Not permitted"},
        404: {"model": ErrorResponse, "description": "Todo not found"},
        409: {"model": ErrorResponse, "description": "Version conflict"},
    },
)
def update_todo(
    todo_id: str,
    payload: TodoUpdate,
    principal: Principal = Depends(get_current_principal),
    service: TodoService = Depends(get_todo_service),
) -> TodoOut:
    """
    Partial update of a Todo item.
    """
    updated = service.update(todo_id, payload.changes(), principal, expected_version=payload.version)
    return _out(updated)


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}/toggle",
    response_model=TodoOut,
    summary="Toggle Todo",
    description="Flip a Todo between INCOMPLETE and COMPLETED.",
    responses={
        200: {"description": "Todo toggled"},
        403: {"model": ErrorResponse, "description": "Not permitted"},
        404: {"model": ErrorResponse, "description": "Todo not found"},
    },
)
def toggle_todo(
    todo_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TodoService = Depends(get_todo_service),
) -> TodoOut:
    return _out(service.toggle(todo_id, principal))


# PUBLIC_INTERFACE
@router.delete(
    "/{todo_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Todo",
    description="Soft-delete a Todo item. It disappears from listings but is kept for audit.",
    responses={
        204: {"description": "Todo deleted"},
        403: {"model": ErrorResponse, "description": "Not permitted"},
        404: {"model": ErrorResponse, "description": "Todo not found"},
    },
)
def delete_todo(
    todo_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TodoService = Depends(get_todo_service),
) -> None:
    """
    Delete a Todo. Returns 204 on success, 404 if not found.
    """
    service.delete(todo_id, principal)
    return None
