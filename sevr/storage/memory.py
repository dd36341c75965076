from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sevr.logging import get_logger
from sevr.storage.errors import ConstraintViolation, StatePersistenceError
from sevr.storage.models import (
    EncryptionMetadata,
    OneTimeCode,
    RefreshToken,
    User,
    VaultBlob,
    utcnow,
)


class MemoryStore:
    """In-process store used for development and tests.

    Every table is a plain dict guarded by a single re-entrant lock. When an
    ``fs_root`` is given the whole state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after each mutation and reloaded on
    start, so a dev server keeps its users across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otps: Dict[str, OneTimeCode] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.vault_blobs: Dict[str, VaultBlob] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info("memory_store_state_loaded", users=len(self.users))

    # -- users -----------------------------------------------------------

    def create_user(self, email: str, *, is_admin: bool = False) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, is_admin=is_admin)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_user_admin(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_admin = True
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed is None:
                return False
            self.vault_blobs.pop(user_id, None)
            self._persist_state()
            return True

    # -- one-time codes --------------------------------------------------

    def create_otp(self, email: str, code: str, expires_at: datetime) -> OneTimeCode:
        with self._data_lock:
            otp = OneTimeCode(
                id=str(uuid.uuid4()), email=email, code=code, expires_at=expires_at
            )
            self.otps[otp.id] = otp
            self._persist_state()
            return otp

    def get_latest_otp(self, email: str, now: Optional[datetime] = None) -> Optional[OneTimeCode]:
        """Newest-expiring unused, unexpired code for ``email``."""
        now = now or utcnow()
        with self._data_lock:
            live = [o for o in self.otps.values() if o.email == email and o.is_live(now)]
            if not live:
                return None
            return max(live, key=lambda o: o.expires_at)

    def increment_otp_attempts(self, otp_id: str) -> Optional[OneTimeCode]:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if not otp:
                return None
            otp.attempts += 1
            self._persist_state()
            return otp

    def mark_otp_used(self, otp_id: str, *, max_attempts: Optional[int] = None) -> bool:
        """Flip ``used`` if still unused (and under ``max_attempts`` when given)."""
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if not otp or otp.used:
                return False
            if max_attempts is not None and otp.attempts >= max_attempts:
                return False
            otp.used = True
            self._persist_state()
            return True

    def cleanup_expired_otps(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                otp_id
                for otp_id, otp in self.otps.items()
                if otp.used or otp.expires_at < now
            ]
            for otp_id in stale:
                del self.otps[otp_id]
            if stale:
                self._persist_state()
            return len(stale)

    # -- refresh tokens --------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            record = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return record

    def get_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Return the unrevoked, unexpired record matching ``token_hash``."""
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.refresh_tokens.values()
                    if t.token_hash == token_hash and not t.revoked and t.expires_at > now
                ),
                None,
            )

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            changed = False
            for record in self.refresh_tokens.values():
                if record.token_hash == token_hash and not record.revoked:
                    record.revoked = True
                    changed = True
            if changed:
                self._persist_state()
            return changed

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # -- encryption metadata and vault -----------------------------------

    def get_encryption_metadata(self, user_id: str) -> Optional[EncryptionMetadata]:
        with self._data_lock:
            user = self.users.get(user_id)
            return EncryptionMetadata.from_user(user) if user else None

    def set_encryption_metadata(
        self,
        user_id: str,
        salt: str,
        verifier: str,
        recovery_verifier: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.encryption_salt = salt
            user.encryption_verifier = verifier
            user.recovery_verifier = recovery_verifier
            self._persist_state()
            return True

    def clear_encryption_metadata(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.encryption_salt = None
            user.encryption_verifier = None
            user.recovery_verifier = None
            self._persist_state()

    def reset_encryption(self, user_id: str) -> None:
        """Drop the vault blob and key metadata together."""
        with self._data_lock:
            self.vault_blobs.pop(user_id, None)
            self.clear_encryption_metadata(user_id)
            self._persist_state()

    def get_vault_blob(self, user_id: str) -> Optional[VaultBlob]:
        with self._data_lock:
            return self.vault_blobs.get(user_id)

    def put_vault_blob(self, user_id: str, ciphertext: str, iv: str) -> VaultBlob:
        with self._data_lock:
            blob = VaultBlob(user_id=user_id, ciphertext=ciphertext, iv=iv)
            self.vault_blobs[user_id] = blob
            self._persist_state()
            return blob

    def delete_vault_blob(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.vault_blobs.pop(user_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def change_password(
        self,
        user_id: str,
        salt: str,
        verifier: str,
        recovery_verifier: Optional[str] = None,
        *,
        ciphertext: Optional[str] = None,
        iv: Optional[str] = None,
    ) -> Optional[VaultBlob]:
        """Overwrite key metadata and, when given, the vault blob in one step."""
        with self._data_lock:
            self.set_encryption_metadata(user_id, salt, verifier, recovery_verifier)
            blob = None
            if ciphertext and iv:
                blob = self.put_vault_blob(user_id, ciphertext, iv)
            return blob

    # -- snapshot persistence --------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
            "is_admin": user.is_admin,
            "country_code": user.country_code,
            "encryption_salt": user.encryption_salt,
            "encryption_verifier": user.encryption_verifier,
            "recovery_verifier": user.recovery_verifier,
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
            is_admin=bool(data.get("is_admin", False)),
            country_code=data.get("country_code"),
            encryption_salt=data.get("encryption_salt"),
            encryption_verifier=data.get("encryption_verifier"),
            recovery_verifier=data.get("recovery_verifier"),
        )

    def _serialize_otp(self, otp: OneTimeCode) -> Dict[str, Any]:
        return {
            "id": otp.id,
            "email": otp.email,
            "code": otp.code,
            "expires_at": self._serialize_datetime(otp.expires_at),
            "attempts": otp.attempts,
            "used": otp.used,
        }

    def _deserialize_otp(self, data: Dict[str, Any]) -> OneTimeCode:
        return OneTimeCode(
            id=data["id"],
            email=data["email"],
            code=data["code"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            used=bool(data.get("used", False)),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> Dict[str, Any]:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_vault_blob(self, blob: VaultBlob) -> Dict[str, Any]:
        return {
            "user_id": blob.user_id,
            "ciphertext": blob.ciphertext,
            "iv": blob.iv,
            "updated_at": self._serialize_datetime(blob.updated_at),
        }

    def _deserialize_vault_blob(self, data: Dict[str, Any]) -> VaultBlob:
        return VaultBlob(
            user_id=data["user_id"],
            ciphertext=data["ciphertext"],
            iv=data["iv"],
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state: Dict[str, List[Dict[str, Any]]] = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "otps": [self._serialize_otp(o) for o in self.otps.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "vault_blobs": [
                self._serialize_vault_blob(b) for b in self.vault_blobs.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StatePersistenceError(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.otps = {o["id"]: self._deserialize_otp(o) for o in data.get("otps", [])}
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.vault_blobs = {
            b["user_id"]: self._deserialize_vault_blob(b)
            for b in data.get("vault_blobs", [])
        }
        return True
