from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sevr.logging import get_logger
from sevr.storage.errors import ConstraintViolation
from sevr.storage.models import (
    EncryptionMetadata,
    OneTimeCode,
    RefreshToken,
    User,
    VaultBlob,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        country_code TEXT,
        encryption_salt TEXT,
        encryption_verifier TEXT,
        recovery_verifier TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_code_email_idx ON otp_code (email, expires_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_hash_idx ON refresh_token (token_hash)",
    """
    CREATE TABLE IF NOT EXISTS vault_blob (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        ciphertext TEXT NOT NULL,
        iv TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store exposing the same operations as ``MemoryStore``."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            created_at=row["created_at"],
            is_admin=bool(row["is_admin"]),
            country_code=row.get("country_code"),
            encryption_salt=row.get("encryption_salt"),
            encryption_verifier=row.get("encryption_verifier"),
            recovery_verifier=row.get("recovery_verifier"),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OneTimeCode:
        return OneTimeCode(
            id=row["id"],
            email=row["email"],
            code=row["code"],
            expires_at=row["expires_at"],
            attempts=row["attempts"],
            used=bool(row["used"]),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _blob_from_row(row: Dict[str, Any]) -> VaultBlob:
        return VaultBlob(
            user_id=row["user_id"],
            ciphertext=row["ciphertext"],
            iv=row["iv"],
            updated_at=row["updated_at"],
        )

    # -- users -----------------------------------------------------------

    def create_user(self, email: str, *, is_admin: bool = False) -> User:
        user = User(id=str(uuid.uuid4()), email=email.strip().lower(), is_admin=is_admin)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, created_at, is_admin)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user.id, user.email, user.created_at, user.is_admin),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_admin(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_admin = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # -- one-time codes --------------------------------------------------

    def create_otp(self, email: str, code: str, expires_at: datetime) -> OneTimeCode:
        otp = OneTimeCode(id=str(uuid.uuid4()), email=email, code=code, expires_at=expires_at)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_code (id, email, code, expires_at, attempts, used)
                VALUES (%s, %s, %s, %s, 0, FALSE)
                """,
                (otp.id, otp.email, otp.code, otp.expires_at),
            )
        return otp

    def get_latest_otp(self, email: str, now: Optional[datetime] = None) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE email = %s AND used = FALSE AND expires_at > %s
                ORDER BY expires_at DESC
                LIMIT 1
                """,
                (email, now or utcnow()),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempts(self, otp_id: str) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_code SET attempts = attempts + 1 WHERE id = %s RETURNING *",
                (otp_id,),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def mark_otp_used(self, otp_id: str, *, max_attempts: Optional[int] = None) -> bool:
        """Conditional flip so only one concurrent caller consumes the code."""
        sql = "UPDATE otp_code SET used = TRUE WHERE id = %s AND used = FALSE"
        params: tuple = (otp_id,)
        if max_attempts is not None:
            sql += " AND attempts < %s"
            params = (otp_id, max_attempts)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def cleanup_expired_otps(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_code WHERE expires_at < %s OR used = TRUE",
                (now or utcnow(),),
            )
            return cur.rowcount

    # -- refresh tokens --------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        record = RefreshToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (id, user_id, token_hash, expires_at, revoked, created_at)
                VALUES (%s, %s, %s, %s, FALSE, %s)
                """,
                (record.id, user_id, token_hash, expires_at, record.created_at),
            )
        return record

    def get_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE token_hash = %s AND revoked = FALSE AND expires_at > %s
                LIMIT 1
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token_hash = %s AND revoked = FALSE",
                (token_hash,),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return cur.rowcount

    # -- encryption metadata and vault -----------------------------------

    def get_encryption_metadata(self, user_id: str) -> Optional[EncryptionMetadata]:
        user = self.get_user(user_id)
        return EncryptionMetadata.from_user(user) if user else None

    def _write_metadata(self, conn, user_id: str, salt, verifier, recovery_verifier) -> int:
        cur = conn.execute(
            """
            UPDATE app_user
            SET encryption_salt = %s, encryption_verifier = %s, recovery_verifier = %s
            WHERE id = %s
            """,
            (salt, verifier, recovery_verifier, user_id),
        )
        return cur.rowcount

    def set_encryption_metadata(
        self,
        user_id: str,
        salt: str,
        verifier: str,
        recovery_verifier: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            return self._write_metadata(conn, user_id, salt, verifier, recovery_verifier) > 0

    def clear_encryption_metadata(self, user_id: str) -> None:
        with self._connect() as conn:
            self._write_metadata(conn, user_id, None, None, None)

    def reset_encryption(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM vault_blob WHERE user_id = %s", (user_id,))
            self._write_metadata(conn, user_id, None, None, None)

    def get_vault_blob(self, user_id: str) -> Optional[VaultBlob]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM vault_blob WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._blob_from_row(row) if row else None

    def _upsert_blob(self, conn, user_id: str, ciphertext: str, iv: str) -> VaultBlob:
        row = conn.execute(
            """
            INSERT INTO vault_blob (user_id, ciphertext, iv, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE
            SET ciphertext = EXCLUDED.ciphertext,
                iv = EXCLUDED.iv,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            (user_id, ciphertext, iv, utcnow()),
        ).fetchone()
        return self._blob_from_row(row)

    def put_vault_blob(self, user_id: str, ciphertext: str, iv: str) -> VaultBlob:
        with self._connect() as conn:
            return self._upsert_blob(conn, user_id, ciphertext, iv)

    def delete_vault_blob(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM vault_blob WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

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
        # One pooled connection == one transaction; both writes commit together
        with self._connect() as conn:
            self._write_metadata(conn, user_id, salt, verifier, recovery_verifier)
            if ciphertext and iv:
                return self._upsert_blob(conn, user_id, ciphertext, iv)
        return None
