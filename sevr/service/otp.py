from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sevr.logging import get_logger, redact_email
from sevr.service.errors import CodeMismatch, CodeNotFound, TooManyAttempts
from sevr.storage.models import OneTimeCode, utcnow

logger = get_logger(__name__)

OTP_TTL = timedelta(minutes=10)
MAX_ATTEMPTS = 5


class OtpStore(Protocol):
    def create_otp(self, email: str, code: str, expires_at: datetime) -> OneTimeCode: ...

    def get_latest_otp(
        self, email: str, now: Optional[datetime] = None
    ) -> Optional[OneTimeCode]: ...

    def increment_otp_attempts(self, otp_id: str) -> Optional[OneTimeCode]: ...

    def mark_otp_used(self, otp_id: str, *, max_attempts: Optional[int] = None) -> bool: ...

    def cleanup_expired_otps(self, now: Optional[datetime] = None) -> int: ...


class DeliveryChannel(Protocol):
    @property
    def is_configured(self) -> bool: ...

    def send_login_code(self, email: str, code: str) -> bool: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_code() -> str:
    """Uniform six-digit code in 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


class OTPManager:
    """Issues and checks one-time login codes.

    Codes live for ten minutes and allow five attempts each. A fresh
    ``request_code`` creates a new row, which becomes the one checked because
    lookups always take the newest-expiring live code.
    """

    def __init__(self, store: OtpStore, delivery: Optional[DeliveryChannel] = None) -> None:
        self.store = store
        self.delivery = delivery

    def _now(self) -> datetime:
        return utcnow()

    def request_code(self, email: str) -> OneTimeCode:
        normalized = normalize_email(email)
        now = self._now()
        reaped = self.store.cleanup_expired_otps(now)
        if reaped:
            logger.debug("otp_reaped", count=reaped)
        otp = self.store.create_otp(normalized, generate_code(), now + OTP_TTL)
        logger.info("otp_issued", email=normalized, expires_at=otp.expires_at.isoformat())
        self._deliver(normalized, otp.code)
        return otp

    def _deliver(self, email: str, code: str) -> None:
        delivered = False
        if self.delivery is not None and self.delivery.is_configured:
            try:
                delivered = self.delivery.send_login_code(email, code)
            except Exception as exc:
                logger.error(
                    "otp_delivery_error",
                    email=email,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if not delivered:
            # Operators relay the code by hand when no channel is available
            logger.warning(
                "otp_delivery_fallback",
                recipient=redact_email(email),
                login_code=code,
            )

    def verify_code(self, email: str, submitted: str) -> str:
        """Consume the live code for ``email``; returns the normalized email.

        Raises ``CodeNotFound``, ``TooManyAttempts`` or ``CodeMismatch``.
        """
        normalized = normalize_email(email)
        otp = self.store.get_latest_otp(normalized, self._now())
        if otp is None:
            logger.info("otp_verify_failed", email=normalized, reason="not_found")
            raise CodeNotFound()

        if otp.attempts >= MAX_ATTEMPTS:
            self.store.mark_otp_used(otp.id)
            logger.warning("otp_verify_failed", email=normalized, reason="too_many_attempts")
            raise TooManyAttempts()

        if not secrets.compare_digest(otp.code.encode(), submitted.strip().encode()):
            updated = self.store.increment_otp_attempts(otp.id)
            attempts = updated.attempts if updated else otp.attempts + 1
            logger.info(
                "otp_verify_failed", email=normalized, reason="mismatch", attempts=attempts
            )
            if attempts >= MAX_ATTEMPTS:
                raise TooManyAttempts()
            raise CodeMismatch()

        # The row read above may be stale; the conditional update decides the winner
        if not self.store.mark_otp_used(otp.id, max_attempts=MAX_ATTEMPTS):
            if self.store.mark_otp_used(otp.id):
                logger.warning(
                    "otp_verify_failed", email=normalized, reason="too_many_attempts"
                )
                raise TooManyAttempts()
            logger.info("otp_verify_failed", email=normalized, reason="already_used")
            raise CodeNotFound()
        logger.info("otp_verified", email=normalized)
        return normalized
