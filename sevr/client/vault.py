from __future__ import annotations

from typing import Any, Optional

from sevr.client import keys
from sevr.client.api import SevrClient
from sevr.client.keys import CryptoMismatch, EncryptedPayload, VaultKey
from sevr.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class VaultNotSetUp(Exception):
    pass


class VaultLocked(Exception):
    pass


class VaultSession:
    """Client flows for the end-to-end encrypted vault.

    The session keeps the derived key in memory once unlocked; the password is
    discarded as soon as the key has been derived.
    """

    def __init__(self, client: SevrClient) -> None:
        self.client = client
        self._key: Optional[VaultKey] = None

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    def lock(self) -> None:
        self._key = None

    def status(self) -> dict[str, Any]:
        return self.client.request("GET", "/encrypted/status")

    @staticmethod
    def _check_new_password(password: str, confirm: Optional[str]) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if confirm is not None and confirm != password:
            raise ValueError("Passwords do not match")

    def setup(self, password: str, data: Any = None, *, confirm: Optional[str] = None) -> str:
        """Create (or replace) the vault keys and return the new recovery key.

        The recovery key is only ever available from this return value.
        """
        self._check_new_password(password, confirm)
        salt = keys.generate_salt()
        key = keys.derive_key(password, salt)
        recovery_key = keys.generate_recovery_key()
        self.client.request(
            "POST",
            "/encrypted/setup",
            {
                "salt": keys.b64encode(salt),
                "verifier": keys.create_verifier(key),
                "recoveryVerifier": keys.wrap_key_for_recovery(recovery_key),
                "allowOverwrite": True,
            },
        )
        self._key = key
        if data is not None:
            self.save(data)
        logger.info("client_vault_setup")
        return recovery_key

    def _key_for_password(self, password: str, status: dict[str, Any]) -> VaultKey:
        if not status.get("isSetUp"):
            raise VaultNotSetUp("Encryption is not set up")
        key = keys.derive_key(password, keys.b64decode(status["salt"]))
        if not keys.verify_password(key, status["verifier"]):
            raise CryptoMismatch("Incorrect password")
        return key

    def unlock(self, password: str) -> Any:
        """Verify the password locally, then fetch and decrypt the vault."""
        self._key = self._key_for_password(password, self.status())
        return self.load()

    def verify_recovery_key(self, recovery_key: str) -> bool:
        recovery_verifier = self.status().get("recoveryVerifier")
        if not recovery_verifier:
            return False
        return keys.verify_recovery_key(recovery_key, recovery_verifier)

    def unlock_with_recovery(self, recovery_key: str) -> None:
        """Prove possession of the recovery key.

        This does not unlock the stored data; the caller has to pick a new
        password and run ``setup`` afterwards.
        """
        if not self.verify_recovery_key(recovery_key):
            raise CryptoMismatch("Invalid recovery key")
        logger.info("client_recovery_key_verified")

    def recover(self, recovery_key: str, new_password: str, data: Any = None) -> str:
        """Prove the recovery key, then set up fresh keys under ``new_password``.

        ``data`` (if any) becomes the new vault contents. Returns the
        replacement recovery key.
        """
        self.unlock_with_recovery(recovery_key)
        return self.setup(new_password, data)

    def change_password(self, current_password: str, new_password: str) -> None:
        """Re-key the vault and upload the re-encrypted data in one request."""
        self._check_new_password(new_password, None)
        status = self.status()
        old_key = self._key_for_password(current_password, status)
        data = self._load_with(old_key)

        salt = keys.generate_salt()
        new_key = keys.derive_key(new_password, salt)
        body: dict[str, Any] = {
            "salt": keys.b64encode(salt),
            "verifier": keys.create_verifier(new_key),
            "recoveryVerifier": status.get("recoveryVerifier"),
        }
        if data is not None:
            payload = keys.encrypt(new_key, data)
            body["encryptedData"] = payload.data
            body["iv"] = payload.iv
        self.client.request("POST", "/encrypted/change-password", body)
        self._key = new_key

    def reset(self) -> None:
        """Wipe keys and data on the server. Irreversible."""
        self.client.request("POST", "/encrypted/reset")
        self._key = None

    def _require_key(self) -> VaultKey:
        if self._key is None:
            raise VaultLocked("Vault is locked")
        return self._key

    def _load_with(self, key: VaultKey) -> Any:
        stored = self.client.request("GET", "/encrypted/data")
        if stored.get("data") is None:
            return None
        return keys.decrypt(key, EncryptedPayload(iv=stored["iv"], data=stored["data"]))

    def load(self) -> Any:
        return self._load_with(self._require_key())

    def save(self, data: Any) -> str:
        """Encrypt and upload ``data``; returns the server's ``updatedAt``."""
        payload = keys.encrypt(self._require_key(), data)
        response = self.client.request(
            "PUT", "/encrypted/data", {"data": payload.data, "iv": payload.iv}
        )
        return response["updatedAt"]
