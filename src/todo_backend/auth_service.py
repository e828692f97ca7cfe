"""
Registration, login, token refresh and the admin-only account operations.

Access tokens are stateless JWTs. Refresh tokens are opaque random strings
whose SHA-256 digest is stored server-side so each one can be used once.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from email_validator import EmailNotValidError, validate_email

from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    FieldError,
    NotFoundError,
    ValidationError,
)
from .models import Principal, RefreshTokenRecord, Role, User, UserProfile, check_display_name, utcnow
from .repositories import RefreshTokenRepository, UserRepository
from .security import INVALID_TOKEN, PasswordHasher, TokenSigner, hash_refresh_token, new_refresh_token

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_REFRESH_TOKEN = "Invalid refresh token"
PASSWORD_MIN_LENGTH = 8

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


def _check_email(email: object, errors: List[FieldError]) -> Optional[str]:
    if not isinstance(email, str) or not email.strip():
        errors.append(FieldError("email", "email is required"))
        return None
    try:
        result = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        errors.append(FieldError("email", str(exc)))
        return None
    return result.normalized.lower()


def _check_password(password: object, errors: List[FieldError]) -> None:
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
        errors.append(FieldError("password", f"password must be at least {PASSWORD_MIN_LENGTH} characters"))
        return
    if not (_LOWER.search(password) and _UPPER.search(password) and _DIGIT.search(password)):
        errors.append(
            FieldError("password", "password must contain a lower case letter, an upper case letter and a digit")
        )


# PUBLIC_INTERFACE
class AuthService:
    """Credential checks and token lifecycle on top of the user and refresh token stores."""

    def __init__(
        self,
        users: UserRepository,
        refresh_tokens: RefreshTokenRepository,
        hasher: PasswordHasher,
        signer: TokenSigner,
        refresh_ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._users = users
        self._refresh_tokens = refresh_tokens
        self._hasher = hasher
        self._signer = signer
        self._refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self._clock = clock

    def register(self, email: str, password: str, display_name: str) -> UserProfile:
        """
        Create a USER account.

        Raises:
            ValidationError: malformed email, weak password or bad display name.
            ConflictError: the email is already registered.
        """
        errors: List[FieldError] = []
        normalized = _check_email(email, errors)
        _check_password(password, errors)
        check_display_name(display_name, errors)
        if errors or normalized is None:
            raise ValidationError(errors)

        if self._users.exists_by_email(normalized):
            raise ConflictError("Email already registered")

        user = User.new(normalized, self._hasher.hash(password), display_name, now=self._clock())
        # The store's unique constraint is authoritative; a concurrent insert still ends in ConflictError.
        saved = self._users.save(user)
        logger.info("Registered user %s", saved.id)
        return saved.profile()

    def login(self, email: str, password: str) -> TokenPair:
        """
        Check credentials and issue a token pair.

        Raises:
            AuthenticationError with the same message for every failure cause.
        """
        user = self._users.find_by_email(email) if isinstance(email, str) and email.strip() else None
        if user is None:
            self._hasher.dummy_verify()
            logger.info("Login failed")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self._hasher.verify(password or "", user.password_hash) or not user.active:
            logger.info("Login failed")
            raise AuthenticationError(INVALID_CREDENTIALS)
        logger.info("User %s logged in", user.id)
        return self._issue_pair(user)

    def verify_token(self, token: str) -> Principal:
        """Return the principal embedded in a valid access token. Raises AuthenticationError."""
        claims = self._signer.decode_access_token(token)
        try:
            role = Role(claims.get("role"))
        except ValueError as exc:
            raise AuthenticationError(INVALID_TOKEN) from exc
        return Principal(user_id=str(claims["sub"]), role=role)

    def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new pair. The presented token is consumed.

        Presenting an already consumed token revokes every outstanding refresh
        token of that user.

        Raises:
            AuthenticationError: unknown, expired, consumed or revoked token, or inactive user.
        """
        now = self._clock()
        token_hash = hash_refresh_token(refresh_token or "")
        record = self._refresh_tokens.consume(token_hash, now)
        if record is None:
            previous = self._refresh_tokens.find(token_hash)
            if previous is not None and previous.consumed_at is not None:
                revoked = self._refresh_tokens.revoke_all_for_user(previous.user_id, now)
                logger.warning(
                    "Refresh token reuse for user %s; revoked %d outstanding token(s)", previous.user_id, revoked
                )
            raise AuthenticationError(INVALID_REFRESH_TOKEN)

        user = self._users.find_by_id(record.user_id)
        if user is None or not user.active:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        return self._issue_pair(user)

    def logout(self, refresh_token: str) -> None:
        """Revoke a refresh token. Unknown or already finished tokens are ignored."""
        if self._refresh_tokens.revoke(hash_refresh_token(refresh_token or ""), self._clock()):
            logger.info("Refresh token revoked by logout")

    def get_profile(self, principal: Principal) -> UserProfile:
        user = self._users.find_by_id(principal.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.profile()

    def promote(self, user_id: str, principal: Principal) -> UserProfile:
        """Give a user the ADMIN role. Only admins may do this."""
        user = self._load_for_admin(user_id, principal)
        if user.role != Role.ADMIN:
            user.promote(self._clock())
            user = self._users.save(user)
            logger.info("Admin %s promoted user %s", principal.user_id, user.id)
        return user.profile()

    def deactivate(self, user_id: str, principal: Principal) -> UserProfile:
        """Disable an account and revoke its refresh tokens. Only admins may do this."""
        user = self._load_for_admin(user_id, principal)
        now = self._clock()
        if user.active:
            user.deactivate(now)
            user = self._users.save(user)
            logger.info("Admin %s deactivated user %s", principal.user_id, user.id)
        self._refresh_tokens.revoke_all_for_user(user.id, now)
        return user.profile()

    def ensure_admin(self, email: str, password: str, display_name: str = "Administrator") -> UserProfile:
        """Make sure an admin account exists for `email`, creating it if needed."""
        user = self._users.find_by_email(email)
        if user is None:
            profile = self.register(email, password, display_name)
            user = self._users.find_by_id(profile.id)
            assert user is not None
        if user.role != Role.ADMIN:
            user.promote(self._clock())
            user = self._users.save(user)
            logger.info("Bootstrap admin %s ready", user.id)
        return user.profile()

    def _load_for_admin(self, user_id: str, principal: Principal) -> User:
        if not principal.is_admin:
            raise AuthorizationError("Admin role required")
        user = self._users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _issue_pair(self, user: User) -> TokenPair:
        now = self._clock()
        access = self._signer.issue_access_token(user.id, user.role, now)
        raw = new_refresh_token()
        self._refresh_tokens.save(
            RefreshTokenRecord(
                token_hash=hash_refresh_token(raw),
                user_id=user.id,
                issued_at=now,
                expires_at=now + self._refresh_ttl,
            )
        )
        return TokenPair(access_token=access, refresh_token=raw, expires_in=self._signer.access_ttl_seconds)
