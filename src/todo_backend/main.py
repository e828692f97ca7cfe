import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth_service import AuthService
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    TodoBackendError,
    ValidationError,
)
from .repositories import Repositories, build_repositories
from .routers import admin as admin_router
from .routers import auth as auth_router
from .routers import todos as todos_router
from .security import PasswordHasher, TokenSigner
from .settings import Settings, get_settings
from .use_cases import TodoService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

STATUS_BY_ERROR = {
    ValidationError: 400,
    AuthenticationError: 401,
    AuthorizationError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    InfrastructureError: 500,
}

# Request-location prefixes FastAPI puts in front of field names
_LOCATION_PARTS = {"body", "query", "path", "header", "cookie"}

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "auth", "description": "Registration, login and token refresh."},
    {
        "name": "todos",
        "description": "CRUD operations for the caller's Todo items with filtering, sorting, and pagination.",
    },
    {"name": "admin", "description": "Account administration; requires the ADMIN role."},
]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def _status_for(exc: TodoBackendError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 500


def _field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    out = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in _LOCATION_PARTS]
        out.append({"field": ".".join(loc) or "body", "message": str(err.get("msg", "Invalid value"))})
    return out


async def todo_backend_error_handler(request: Request, exc: TodoBackendError) -> JSONResponse:
    """
    The single translation point from error kinds to HTTP responses.

    Response format:
        {
            "error": "<error kind>",
            "message": "<summary>",
            "detail": [{"field": ..., "message": ...}]   # validation errors only
        }
    """
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(
            "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message, exc_info=exc
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": "InfrastructureError", "message": InfrastructureError.default_message},
        )

    content: Dict[str, Any] = {"error": type(exc).__name__, "message": exc.message}
    headers = None
    if isinstance(exc, ValidationError):
        content["detail"] = [{"field": e.field, "message": e.message} for e in exc.errors]
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Return structural request validation errors in the same shape and status
    as domain validation errors.
    """
    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "detail": _field_errors(exc.errors()),
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "InfrastructureError", "message": InfrastructureError.default_message},
    )


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None, repositories: Optional[Repositories] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: configuration; read from the environment when omitted.
        repositories: storage to use; built from settings when omitted.

    Returns:
        A FastAPI app with services wired onto app.state.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    repos = repositories or build_repositories(settings)

    auth_service = AuthService(
        users=repos.users,
        refresh_tokens=repos.refresh_tokens,
        hasher=PasswordHasher(settings.password_hash_rounds),
        signer=TokenSigner(settings.jwt_secret, settings.jwt_algorithm, settings.access_token_ttl_seconds),
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )
    if settings.bootstrap_admin_email and settings.bootstrap_admin_password:
        auth_service.ensure_admin(settings.bootstrap_admin_email, settings.bootstrap_admin_password)

    app = FastAPI(
        title="Todo Backend",
        description="Multi-user todo service with JWT authentication and pluggable storage backends.",
        version="0.2.0",
        openapi_tags=openapi_tags,
    )
    app.state.settings = settings
    app.state.auth_service = auth_service
    app.state.todo_service = TodoService(repos.todos)

    # Configure CORS based on settings (.env -> CORS_ALLOW_ORIGINS), with '*' fallback
    allow_all = (settings.cors_allow_origins == ["*"]) or (len(settings.cors_allow_origins) == 0)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TodoBackendError, todo_backend_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # PUBLIC_INTERFACE
    @app.get("/", summary="Health Check", tags=["health"])
    @app.get("/health", summary="Health Check", tags=["health"])
    def health_check():
        """
        Health check endpoint.

        Returns:
            A JSON object indicating service health.
        """
        return {"message": "Healthy", "backend": settings.persistence_backend}

    # PUBLIC_INTERFACE
    @app.get("/api/health", summary="Service Status", tags=["health"])
    def api_health():
        """
        Status endpoint polled by the web frontend under its /api base URL.

        Returns:
            {"status": "UP", "message": ..., "backend": ...}
        """
        return {
            "status": "UP",
            "message": "Todo Backend is running",
            "backend": settings.persistence_backend,
        }

    # Include routers
    app.include_router(auth_router.router)
    app.include_router(todos_router.router)
    app.include_router(admin_router.router)

    logger.info("Todo backend ready (backend=%s)", settings.persistence_backend)
    return app


app = create_app()
