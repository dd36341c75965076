from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sevr.logging import get_logger
from sevr.service.errors import AlreadySetUp, NotFoundError, ValidationError
from sevr.storage.models import EncryptionMetadata, VaultBlob

logger = get_logger(__name__)


class VaultStore(Protocol):
    def get_encryption_metadata(self, user_id: str) -> Optional[EncryptionMetadata]: ...

    def set_encryption_metadata(
        self,
        user_id: str,
        salt: str,
        verifier: str,
        recovery_verifier: Optional[str] = None,
    ) -> bool: ...

    def reset_encryption(self, user_id: str) -> None: ...

    def get_vault_blob(self, user_id: str) -> Optional[VaultBlob]: ...

    def put_vault_blob(self, user_id: str, ciphertext: str, iv: str) -> VaultBlob: ...

    def change_password(
        self,
        user_id: str,
        salt: str,
        verifier: str,
        recovery_verifier: Optional[str] = None,
        *,
        ciphertext: Optional[str] = None,
        iv: Optional[str] = None,
    ) -> Optional[VaultBlob]: ...


@dataclass
class VaultStatus:
    is_set_up: bool
    salt: Optional[str]
    verifier: Optional[str]
    recovery_verifier: Optional[str]


class VaultService:
    """Stores key metadata and one opaque ciphertext per user.

    Nothing here decrypts. Saves replace the blob wholesale; there is no
    version check, so the last writer wins.
    """

    def __init__(self, store: VaultStore) -> None:
        self.store = store

    def _metadata(self, user_id: str) -> EncryptionMetadata:
        metadata = self.store.get_encryption_metadata(user_id)
        if metadata is None:
            raise NotFoundError("User not found")
        return metadata

    def get_status(self, user_id: str) -> VaultStatus:
        metadata = self._metadata(user_id)
        return VaultStatus(
            is_set_up=metadata.is_set_up,
            salt=metadata.salt,
            verifier=metadata.verifier,
            recovery_verifier=metadata.recovery_verifier,
        )

    @staticmethod
    def _require_key_fields(salt: Optional[str], verifier: Optional[str]) -> None:
        if not salt or not verifier:
            raise ValidationError("Salt and verifier are required")

    def setup(
        self,
        user_id: str,
        salt: Optional[str],
        verifier: Optional[str],
        recovery_verifier: Optional[str] = None,
        *,
        allow_overwrite: bool = False,
    ) -> None:
        self._require_key_fields(salt, verifier)
        metadata = self._metadata(user_id)
        if metadata.salt and not allow_overwrite:
            raise AlreadySetUp()
        self.store.set_encryption_metadata(user_id, salt, verifier, recovery_verifier)
        logger.info("vault_setup", user_id=user_id, overwrite=bool(metadata.salt))

    def change_password(
        self,
        user_id: str,
        salt: Optional[str],
        verifier: Optional[str],
        recovery_verifier: Optional[str] = None,
        *,
        ciphertext: Optional[str] = None,
        iv: Optional[str] = None,
    ) -> Optional[VaultBlob]:
        self._require_key_fields(salt, verifier)
        self._metadata(user_id)
        blob = self.store.change_password(
            user_id, salt, verifier, recovery_verifier, ciphertext=ciphertext, iv=iv
        )
        logger.info("vault_password_changed", user_id=user_id, data_replaced=blob is not None)
        return blob

    def reset(self, user_id: str) -> None:
        self._metadata(user_id)
        self.store.reset_encryption(user_id)
        logger.warning("vault_reset", user_id=user_id)

    def get_data(self, user_id: str) -> Optional[VaultBlob]:
        return self.store.get_vault_blob(user_id)

    def put_data(self, user_id: str, ciphertext: Optional[str], iv: Optional[str]) -> datetime:
        if not ciphertext or not iv:
            raise ValidationError("Data and IV are required")
        self._metadata(user_id)
        blob = self.store.put_vault_blob(user_id, ciphertext, iv)
        logger.debug("vault_data_saved", user_id=user_id, size=len(ciphertext))
        return blob.updated_at
