from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import get_auth_service, get_current_principal
from ..auth_service import AuthService
from ..models import Principal
from ..schemas import ErrorResponse, UserOut

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
        403: {"model": ErrorResponse, "description": "Admin role required"},
        404: {"model": ErrorResponse, "description": "User not found"},
    },
)


# PUBLIC_INTERFACE
@router.post(
    "/users/{user_id}/promote",
    response_model=UserOut,
    summary="Promote user",
    description="Grant the ADMIN role. Takes effect on the user's next login or refresh.",
)
def promote_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    auth: AuthService = Depends(get_auth_service),
) -> UserOut:
    return UserOut.from_profile(auth.promote(user_id, principal))


# PUBLIC_INTERFACE
@router.post(
    "/users/{user_id}/deactivate",
    response_model=UserOut,
    summary="Deactivate user",
    description="Block logins and refreshes for a user and revoke their refresh tokens.",
)
def deactivate_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    auth: AuthService = Depends(get_auth_service),
) -> UserOut:
    return UserOut.from_profile(auth.deactivate(user_id, principal))
