from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

BACKENDS = ("memory", "sqlite")


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration. get_settings() fills it from the environment;
    tests construct it directly.

    Env vars:
    - PERSISTENCE_BACKEND: memory (default) or sqlite
    - SQLITE_DB_PATH: database file for the sqlite backend (default: ./data/todos.db)
    - CORS_ALLOW_ORIGINS: comma-separated origins, or * for any (default: *)
    - JWT_SECRET: HMAC secret for access tokens; a random one is generated when unset
    - JWT_ALGORITHM: signing algorithm (default: HS256)
    - ACCESS_TOKEN_TTL_SECONDS: access token lifetime (default: 900)
    - REFRESH_TOKEN_TTL_SECONDS: refresh token lifetime (default: 604800, 7 days)
    - PASSWORD_HASH_ROUNDS: pbkdf2_sha256 rounds (default: 29000)
    - LOG_LEVEL: root log level (default: INFO)
    - BOOTSTRAP_ADMIN_EMAIL / BOOTSTRAP_ADMIN_PASSWORD: seed an admin account at startup
    """

    persistence_backend: str = "memory"
    sqlite_db_path: str = "./data/todos.db"
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])
    jwt_secret: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    password_hash_rounds: int = 29000
    log_level: str = "INFO"
    bootstrap_admin_email: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None


def _get_env(name: str, default: str) -> str:
    # Set-but-empty counts as unset
    return os.getenv(name) or default


def _parse_int(name: str, default: int) -> int:
    raw = _get_env(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %d", name, raw, default)
        return default
    return value if value > 0 else default


def _parse_origins(raw: str) -> List[str]:
    """Split a comma-separated origin list. A lone '*' means any origin."""
    origins = [part.strip() for part in raw.split(",")]
    origins = [o for o in origins if o]
    return ["*"] if origins == ["*"] or not origins else origins


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Read Settings from the process environment. Bad values fall back to defaults with a warning."""
    backend = _get_env("PERSISTENCE_BACKEND", "memory").strip().lower()
    if backend not in BACKENDS:
        logger.warning("Unsupported PERSISTENCE_BACKEND=%r; using memory", backend)
        backend = "memory"

    secret = os.getenv("JWT_SECRET")
    if not secret:
        logger.warning("JWT_SECRET not set; using a random per-process secret (tokens will not survive restarts)")
        secret = secrets.token_urlsafe(32)

    return Settings(
        persistence_backend=backend,
        sqlite_db_path=_get_env("SQLITE_DB_PATH", "./data/todos.db").strip(),
        cors_allow_origins=_parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*")),
        jwt_secret=secret,
        jwt_algorithm=_get_env("JWT_ALGORITHM", "HS256").strip(),
        access_token_ttl_seconds=_parse_int("ACCESS_TOKEN_TTL_SECONDS", 900),
        refresh_token_ttl_seconds=_parse_int("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 3600),
        password_hash_rounds=_parse_int("PASSWORD_HASH_ROUNDS", 29000),
        log_level=_get_env("LOG_LEVEL", "INFO").strip().upper(),
        bootstrap_admin_email=os.getenv("BOOTSTRAP_ADMIN_EMAIL") or None,
        bootstrap_admin_password=os.getenv("BOOTSTRAP_ADMIN_PASSWORD") or None,
    )
