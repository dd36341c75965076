from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sevr.config import AuthConfig
from sevr.logging import get_logger
from sevr.service.errors import NotFoundError, ValidationError
from sevr.service.otp import OTPManager, normalize_email
from sevr.service.tokens import AccessClaims, TokenService
from sevr.storage.errors import ConstraintViolation
from sevr.storage.models import User, utcnow

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 254


class AuthStore(Protocol):
    def create_user(self, email: str, *, is_admin: bool = False) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_admin(self, user_id: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def delete_vault_blob(self, user_id: str) -> bool: ...


class ActivityNotifier(Protocol):
    """Port for announcing account activity to whoever is listening."""

    def user_signed_up(self, email: str, timestamp: datetime) -> None: ...


class LoggingNotifier:
    def user_signed_up(self, email: str, timestamp: datetime) -> None:
        logger.info("user_signed_up", email=email, timestamp=timestamp.isoformat())


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    user: User
    is_new_user: bool


def validate_email_address(email: Optional[str]) -> str:
    """Return the normalized address or raise ``ValidationError``."""
    if email is None or not email.strip():
        raise ValidationError("Email is required")
    normalized = normalize_email(email)
    if len(normalized) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format")
    return normalized


class AuthService:
    """Login, refresh, logout and account deletion on top of OTPs and tokens."""

    def __init__(
        self,
        store: AuthStore,
        otp: OTPManager,
        tokens: TokenService,
        config: AuthConfig,
        *,
        notifier: Optional[ActivityNotifier] = None,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.config = config
        self.notifier: ActivityNotifier = notifier or LoggingNotifier()

    def request_code(self, email: Optional[str]) -> None:
        self.otp.request_code(validate_email_address(email))

    def verify_code(self, email: str, code: str) -> LoginResult:
        verified_email = self.otp.verify_code(email, code)
        user, is_new_user = self._get_or_create_user(verified_email)

        if self.config.is_admin_email(user.email) and not user.is_admin:
            user = self.store.set_user_admin(user.id) or user
            logger.info("admin_escalated", user_id=user.id)

        access_token = self.tokens.issue_access_token(user)
        refresh_token, _ = self.tokens.issue_refresh_token(user)
        logger.info("login_succeeded", user_id=user.id, is_new_user=is_new_user)
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            is_new_user=is_new_user,
        )

    def _get_or_create_user(self, email: str) -> tuple[User, bool]:
        existing = self.store.get_user_by_email(email)
        if existing is not None:
            return existing, False
        try:
            user = self.store.create_user(email)
        except ConstraintViolation:
            # A concurrent verification created the row first
            user = self.store.get_user_by_email(email)
            if user is None:
                raise
            return user, False
        logger.info("user_created", user_id=user.id)
        self._notify_signup(user)
        return user, True

    def _notify_signup(self, user: User) -> None:
        try:
            self.notifier.user_signed_up(user.email, utcnow())
        except Exception as exc:
            logger.error(
                "signup_notification_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def refresh(self, refresh_token: str) -> tuple[str, User]:
        return self.tokens.refresh_access(refresh_token)

    def logout(self, refresh_token: str) -> None:
        """Revoke the refresh token; unknown tokens are not an error."""
        self.tokens.revoke(refresh_token)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(self, authorization: Optional[str]) -> AccessClaims:
        return self.tokens.verify_access_token(self._extract_bearer(authorization))

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def delete_account(self, user_id: str) -> None:
        """Revoke every refresh token, then remove the vault and the user."""
        if self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")
        revoked = self.tokens.revoke_all(user_id)
        self.store.delete_vault_blob(user_id)
        self.store.delete_user(user_id)
        logger.info("account_deleted", user_id=user_id, revoked_tokens=revoked)
