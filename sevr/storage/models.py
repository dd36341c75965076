from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    is_admin: bool = False
    country_code: Optional[str] = None
    encryption_salt: Optional[str] = None
    encryption_verifier: Optional[str] = None
    recovery_verifier: Optional[str] = None


@dataclass
class OneTimeCode:
    id: str
    email: str
    code: str
    expires_at: datetime
    attempts: int = 0
    used: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now


@dataclass
class RefreshToken:
    """Server-side record of a refresh token; only the hash is ever stored."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class VaultBlob:
    user_id: str
    ciphertext: str
    iv: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EncryptionMetadata:
    salt: Optional[str] = None
    verifier: Optional[str] = None
    recovery_verifier: Optional[str] = None

    @property
    def is_set_up(self) -> bool:
        return bool(self.salt and self.verifier)

    @classmethod
    def from_user(cls, user: User) -> "EncryptionMetadata":
        return cls(
            salt=user.encryption_salt,
            verifier=user.encryption_verifier,
            recovery_verifier=user.recovery_verifier,
        )
