"""Client-side vault key protocol.

Keys are derived from a password with PBKDF2-HMAC-SHA256 (100,000 rounds) and
used for AES-256-GCM. The wire format matches the browser client: base64
salts, IVs and ciphertexts, ciphertext carrying the 16-byte GCM tag at its end,
and UTF-8 JSON as the plaintext of vault data.

Passwords and derived keys never leave this module's callers; the server sees
only the salt, the two verifier blobs and the encrypted payload.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
RECOVERY_KEY_BYTES = 24

PASSWORD_MARKER = b"sevr-verify"
PASSWORD_PURPOSE = "sevr-password-verifier"
RECOVERY_MARKER = b"KEY_RECOVERY_MARKER"
RECOVERY_PURPOSE = "sevr-recovery-wrap"


class CryptoMismatch(Exception):
    """Wrong password, wrong recovery key or a corrupted blob.

    The message is deliberately the same in every case.
    """


@dataclass(frozen=True)
class VaultKey:
    material: bytes

    def __repr__(self) -> str:
        return "VaultKey(<redacted>)"

    @property
    def cipher(self) -> AESGCM:
        return AESGCM(self.material)


@dataclass(frozen=True)
class EncryptedPayload:
    iv: str
    data: str


def b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def generate_salt() -> bytes:
    return os.urandom(SALT_LENGTH)


def _pbkdf2(secret: bytes, salt: bytes) -> VaultKey:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return VaultKey(kdf.derive(secret))


def derive_key(password: str, salt: bytes) -> VaultKey:
    return _pbkdf2(password.encode("utf-8"), salt)


def encrypt(key: VaultKey, data: Any) -> EncryptedPayload:
    """Encrypt a JSON-serialisable value under a fresh random IV."""
    iv = os.urandom(IV_LENGTH)
    plaintext = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return EncryptedPayload(iv=b64encode(iv), data=b64encode(key.cipher.encrypt(iv, plaintext, None)))


def decrypt(key: VaultKey, payload: EncryptedPayload) -> Any:
    try:
        plaintext = key.cipher.decrypt(b64decode(payload.iv), b64decode(payload.data), None)
    except (InvalidTag, ValueError, binascii.Error) as exc:
        raise CryptoMismatch("Unable to decrypt vault data") from exc
    return json.loads(plaintext.decode("utf-8"))


# Fixed-IV sealing. Only for the two verifier markers, whose plaintext never
# changes; vault data must always go through ``encrypt``.


def purpose_iv(purpose: str) -> bytes:
    return hashlib.sha256(purpose.encode("utf-8")).digest()[:IV_LENGTH]


def seal_marker_with_fixed_iv(key: VaultKey, marker: bytes, purpose: str) -> str:
    return b64encode(key.cipher.encrypt(purpose_iv(purpose), marker, None))


def open_marker_with_fixed_iv(key: VaultKey, blob: str, marker: bytes, purpose: str) -> bool:
    try:
        opened = key.cipher.decrypt(purpose_iv(purpose), b64decode(blob), None)
    except (InvalidTag, ValueError, binascii.Error):
        return False
    return opened == marker


def create_verifier(key: VaultKey) -> str:
    return seal_marker_with_fixed_iv(key, PASSWORD_MARKER, PASSWORD_PURPOSE)


def verify_password(key: VaultKey, verifier: str) -> bool:
    return open_marker_with_fixed_iv(key, verifier, PASSWORD_MARKER, PASSWORD_PURPOSE)


def generate_recovery_key() -> str:
    """24 random bytes as base64, i.e. a 32-character token shown once."""
    return b64encode(os.urandom(RECOVERY_KEY_BYTES))


def derive_key_from_recovery(recovery_key: str) -> VaultKey:
    """The token's text is the PBKDF2 secret; its first 16 decoded bytes are the salt."""
    try:
        salt = b64decode(recovery_key)[:SALT_LENGTH]
    except (ValueError, binascii.Error) as exc:
        raise CryptoMismatch("Invalid recovery key") from exc
    return _pbkdf2(recovery_key.encode("utf-8"), salt)


def wrap_key_for_recovery(recovery_key: str) -> str:
    """Build the recovery verifier stored next to the password verifier.

    It seals a distinct marker under a distinct purpose IV, so the two blobs
    cannot stand in for each other.
    """
    return seal_marker_with_fixed_iv(
        derive_key_from_recovery(recovery_key), RECOVERY_MARKER, RECOVERY_PURPOSE
    )


def verify_recovery_key(recovery_key: str, recovery_verifier: str) -> bool:
    try:
        key = derive_key_from_recovery(recovery_key.strip())
    except CryptoMismatch:
        return False
    return open_marker_with_fixed_iv(key, recovery_verifier, RECOVERY_MARKER, RECOVERY_PURPOSE)
