from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from sevr.config import AuthConfig
from sevr.logging import get_logger
from sevr.service.errors import InvalidToken
from sevr.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AccessClaims:
    user_id: str
    email: str
    is_admin: bool
    expires_at: int


def hash_refresh_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenService:
    """Signs access tokens and manages opaque refresh tokens.

    Access tokens are compact HS256 JWTs verified by signature and expiry only.
    Refresh tokens are random UUIDs; only their SHA-256 digest is stored. They
    are not rotated on use, so one token keeps minting access tokens until it
    is revoked or expires.
    """

    def __init__(self, store: TokenStore, config: AuthConfig) -> None:
        self.store = store
        self.config = config

    def _now(self) -> datetime:
        return utcnow()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.config.signing_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-formed, correctly signed, unexpired token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            return None
        # Reject "none" and any other algorithm swap
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.config.issuer or payload.get("aud") != self.config.audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def issue_access_token(self, user: User) -> str:
        now = self._now()
        payload = {
            "userId": user.id,
            "email": user.email,
            "isAdmin": user.is_admin,
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self.config.access_token_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: Optional[str]) -> AccessClaims:
        payload = self._decode_jwt(token) if token else None
        if not payload:
            raise InvalidToken()
        user_id = payload.get("userId")
        email = payload.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise InvalidToken()
        return AccessClaims(
            user_id=user_id,
            email=email,
            is_admin=bool(payload.get("isAdmin", False)),
            expires_at=int(payload["exp"]),
        )

    def issue_refresh_token(self, user: User) -> tuple[str, str]:
        """Persist a new refresh token; returns ``(raw_token, token_hash)``.

        Callers hand only the raw token to the client.
        """
        raw_token = str(uuid.uuid4())
        token_hash = hash_refresh_token(raw_token)
        expires_at = self._now() + self.config.refresh_token_ttl
        self.store.create_refresh_token(user.id, token_hash, expires_at)
        return raw_token, token_hash

    def refresh_access(self, raw_refresh_token: str) -> tuple[str, User]:
        record = self.store.get_refresh_token(
            hash_refresh_token(raw_refresh_token), self._now()
        )
        if record is None:
            raise InvalidToken("Invalid or expired refresh token")
        user = self.store.get_user(record.user_id)
        if user is None:
            raise InvalidToken("User not found")
        return self.issue_access_token(user), user

    def revoke(self, raw_refresh_token: str) -> None:
        if self.store.revoke_refresh_token(hash_refresh_token(raw_refresh_token)):
            logger.info("refresh_token_revoked")

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=revoked)
        return revoked
