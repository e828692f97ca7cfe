from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict

import jwt
from passlib.context import CryptContext

from .errors import AuthenticationError
from .models import Role

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
INVALID_TOKEN = "Invalid or expired token"
REFRESH_TOKEN_BYTES = 32


class PasswordHasher:
    """Salted one-way password hashing (pbkdf2_sha256); the rounds set the cost."""

    def __init__(self, rounds: int) -> None:
        self._context = CryptContext(
            schemes=["pbkdf2_sha256"],
            deprecated="auto",
            pbkdf2_sha256__rounds=rounds,
        )

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        try:
            return self._context.verify(password, hashed)
        except (ValueError, TypeError):
            # Unrecognized or corrupt hash
            return False

    def dummy_verify(self) -> None:
        """Spend about as long as a real verify, for lookups that found no user."""
        self._context.dummy_verify()


class TokenSigner:
    """Issues and checks signed access tokens."""

    def __init__(self, secret: str, algorithm: str, access_ttl_seconds: int) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self.access_ttl_seconds = access_ttl_seconds

    def issue_access_token(self, user_id: str, role: Role, now: datetime) -> str:
        payload: Dict[str, Any] = {
            "sub": user_id,
            "role": role.value,
            "type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.access_ttl_seconds)).timestamp()),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        """
        Validate signature, expiry and token type and return the claims.

        Raises:
            AuthenticationError for expired, tampered, malformed or non-access tokens.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.InvalidTokenError as exc:
            # ExpiredSignatureError included; the reason stays in the log
            logger.debug("Rejected access token: %s", exc)
            raise AuthenticationError(INVALID_TOKEN) from exc
        if claims.get("type") != ACCESS_TOKEN_TYPE:
            raise AuthenticationError(INVALID_TOKEN)
        return claims


def new_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
