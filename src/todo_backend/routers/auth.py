from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..auth import get_auth_service, get_current_principal
from ..auth_service import AuthService, TokenPair
from ..models import Principal
from ..schemas import ErrorResponse, LoginRequest, RefreshRequest, RegisterRequest, TokenResponse, UserOut

router = APIRouter(
    prefix="/auth",
    tags=["auth"],
)


def _tokens(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )


# PUBLIC_INTERFACE
@router.post(
    "/register",
    response_model=UserOut,
    status_code=status.HTTP_201_CREATED,
    summary="Register",
    description="Create a user account with the USER role.",
    responses={
        400: {"model": ErrorResponse, "description": "Malformed email, weak password or missing fields"},
        409: {"model": ErrorResponse, "description": "Email already registered"},
    },
)
def register(payload: RegisterRequest, auth: AuthService = Depends(get_auth_service)) -> UserOut:
    profile = auth.register(payload.email, payload.password, payload.display_name)
    return UserOut.from_profile(profile)


# PUBLIC_INTERFACE
@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login",
    description="Exchange email and password for an access token and a refresh token.",
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}},
)
def login(payload: LoginRequest, auth: AuthService = Depends(get_auth_service)) -> TokenResponse:
    return _tokens(auth.login(payload.email, payload.password))


# PUBLIC_INTERFACE
@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Refresh",
    description="Trade a refresh token for a new token pair. Each refresh token works once.",
    responses={401: {"model": ErrorResponse, "description": "Unknown, expired or already used refresh token"}},
)
def refresh(payload: RefreshRequest, auth: AuthService = Depends(get_auth_service)) -> TokenResponse:
    return _tokens(auth.refresh(payload.refresh_token))


# PUBLIC_INTERFACE
@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Logout",
    description="Revoke a refresh token. Already revoked or unknown tokens are accepted silently.",
)
def logout(payload: RefreshRequest, auth: AuthService = Depends(get_auth_service)) -> None:
    auth.logout(payload.refresh_token)
    return None


# PUBLIC_INTERFACE
@router.get(
    "/me",
    response_model=UserOut,
    summary="Current user",
    description="Return the profile of the authenticated caller.",
    responses={401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"}},
)
def me(
    principal: Principal = Depends(get_current_principal),
    auth: AuthService = Depends(get_auth_service),
) -> UserOut:
    return UserOut.from_profile(auth.get_profile(principal))
