from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .auth_service import AuthService
from .errors import AuthenticationError
from .models import Principal
from .use_cases import TodoService

_security = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_todo_service(request: Request) -> TodoService:
    return request.app.state.todo_service


# PUBLIC_INTERFACE
async def get_current_principal(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_security),
    auth: AuthService = Depends(get_auth_service),
) -> Principal:
    """
    Resolve the caller from an `Authorization: Bearer <accessToken>` header.

    Usage:
        @router.get("/todos")
        def list_todos(principal: Principal = Depends(get_current_principal)): ...

    Raises:
        AuthenticationError (401) if the header is missing or the token is
        expired, tampered with or malformed.
    """
    # HTTPBearer yields None when the header is absent or not a Bearer scheme
    if creds is None or not creds.credentials:
        raise AuthenticationError()
    return auth.verify_token(creds.credentials)
