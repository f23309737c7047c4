from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger, mask_identity
from sessionguard.storage.common import SecretCipher, hash_token
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import ApiKey, ApiToken, RefreshToken, TwoFactorAuth

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        lineage_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_by TEXT,
        parent_id TEXT,
        replaced_by_id TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_by TEXT,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_lineage_idx ON refresh_token (lineage_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS api_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        refresh_token_id TEXT NOT NULL REFERENCES refresh_token (id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        scopes TEXT[] NOT NULL DEFAULT '{}',
        issued_at TIMESTAMPTZ NOT NULL,
        access_expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        last_used_at TIMESTAMPTZ,
        last_used_by TEXT,
        revoked_at TIMESTAMPTZ,
        usage_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS api_token_refresh_idx ON api_token (refresh_token_id)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_auth (
        user_id TEXT PRIMARY KEY,
        secret TEXT NOT NULL,
        setup_at TIMESTAMPTZ NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        enabled_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ,
        secret_hash TEXT NOT NULL DEFAULT ''
    )
    """,
    "ALTER TABLE two_factor_auth ADD COLUMN IF NOT EXISTS secret_hash TEXT NOT NULL DEFAULT ''",
    """
    CREATE TABLE IF NOT EXISTS two_factor_backup_code (
        user_id TEXT NOT NULL REFERENCES two_factor_auth (user_id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ,
        PRIMARY KEY (user_id, code_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_key (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        key_hash TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed token store.

    Rotation and backup-code consumption are single conditional UPDATEs;
    the database row lock decides the winner between concurrent callers.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- refresh tokens -------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token exists", {"id": token.id})
        return token

    @staticmethod
    def _insert_refresh(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, lineage_id, issued_at, expires_at, created_by, parent_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token_hash,
                token.lineage_id,
                token.issued_at,
                token.expires_at,
                token.created_by,
                token.parent_id,
            ),
        )

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_id: str,
        successor: RefreshToken,
        now: datetime,
        context: Optional[str] = None,
    ) -> bool:
        try:
            with self._connect() as conn, conn.transaction():
                claimed = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked_at = %s, revoked_by = %s, revoked_reason = 'rotated', replaced_by_id = %s
                    WHERE id = %s AND revoked_at IS NULL
                    RETURNING id
                    """,
                    (now, context, successor.id, old_id),
                ).fetchone()
                if not claimed:
                    return False
                self._insert_refresh(conn, successor)
                conn.execute(
                    "UPDATE api_token SET revoked_at = %s WHERE refresh_token_id = %s AND revoked_at IS NULL",
                    (now, old_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("successor refresh token exists", {"id": successor.id})
        return True

    def revoke_refresh_token(
        self,
        token_id: str,
        now: datetime,
        context: Optional[str] = None,
        reason: str = "revoked",
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, context, reason, token_id),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                "UPDATE api_token SET revoked_at = %s WHERE refresh_token_id = %s AND revoked_at IS NULL",
                (now, token_id),
            )
        return True

    def list_refresh_lineage(self, lineage_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE lineage_id = %s ORDER BY issued_at",
                (lineage_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def revoke_lineage(
        self,
        lineage_id: str,
        now: datetime,
        context: Optional[str] = None,
        reason: str = "reuse_detected",
    ) -> int:
        with self._connect() as conn, conn.transaction():
            rows = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by = %s, revoked_reason = %s
                WHERE lineage_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, context, reason, lineage_id),
            ).fetchall()
            conn.execute(
                """
                UPDATE api_token SET revoked_at = %s
                WHERE revoked_at IS NULL
                  AND refresh_token_id IN (SELECT id FROM refresh_token WHERE lineage_id = %s)
                """,
                (now, lineage_id),
            )
        return len(rows)

    def revoke_user_refresh_tokens(
        self, user_id: str, now: datetime, context: Optional[str] = None
    ) -> int:
        with self._connect() as conn, conn.transaction():
            rows = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by = %s, revoked_reason = 'revoke_all'
                WHERE user_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, context, user_id),
            ).fetchall()
            conn.execute(
                "UPDATE api_token SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
        return len(rows)

    # -- access token records -------------------------------------------

    def insert_api_token(self, record: ApiToken) -> ApiToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_token (id, user_id, token_hash, refresh_token_id, refresh_token_hash, scopes,
                                           issued_at, access_expires_at, refresh_expires_at, description)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_hash,
                        record.refresh_token_id,
                        record.refresh_token_hash,
                        list(record.scopes),
                        record.issued_at,
                        record.access_expires_at,
                        record.refresh_expires_at,
                        record.description,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("api token exists", {"id": record.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "api token must reference a refresh token",
                {"refresh_token_id": record.refresh_token_id},
            )
        return record

    def get_api_token(self, token_id: str) -> Optional[ApiToken]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_token WHERE id = %s", (token_id,)).fetchone()
        return self._api_token_from_row(row) if row else None

    def get_api_token_for_refresh(self, refresh_token_id: str) -> Optional[ApiToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_token WHERE refresh_token_id = %s ORDER BY issued_at DESC LIMIT 1",
                (refresh_token_id,),
            ).fetchone()
        return self._api_token_from_row(row) if row else None

    def revoke_api_tokens_for_refresh(self, refresh_token_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE api_token SET revoked_at = %s WHERE refresh_token_id = %s AND revoked_at IS NULL",
                (now, refresh_token_id),
            )
            return result.rowcount

    def touch_api_token(
        self, token_id: str, now: datetime, context: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE api_token
                SET usage_count = usage_count + 1, last_used_at = %s, last_used_by = %s
                WHERE id = %s
                """,
                (now, context, token_id),
            )

    def list_api_tokens(self, user_id: str) -> List[ApiToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_token WHERE user_id = %s ORDER BY issued_at DESC",
                (user_id,),
            ).fetchall()
        return [self._api_token_from_row(row) for row in rows]

    # -- two-factor -----------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_auth WHERE user_id = %s", (user_id,)
            ).fetchone()
            if not row:
                return None
            codes = conn.execute(
                "SELECT code_hash, used_at FROM two_factor_backup_code WHERE user_id = %s",
                (user_id,),
            ).fetchall()
        return TwoFactorAuth(
            user_id=row["user_id"],
            secret=self._cipher.decrypt(row["secret"]),
            setup_at=row["setup_at"],
            is_verified=bool(row.get("is_verified", False)),
            backup_codes={c["code_hash"] for c in codes if c["used_at"] is None},
            used_backup_codes={c["code_hash"] for c in codes if c["used_at"] is not None},
            enabled_at=row.get("enabled_at"),
            last_used_at=row.get("last_used_at"),
        )

    def save_two_factor(self, record: TwoFactorAuth) -> TwoFactorAuth:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO two_factor_auth
                    (user_id, secret, setup_at, is_verified, enabled_at, last_used_at, secret_hash)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET secret = EXCLUDED.secret,
                    setup_at = EXCLUDED.setup_at,
                    is_verified = EXCLUDED.is_verified,
                    enabled_at = EXCLUDED.enabled_at,
                    last_used_at = EXCLUDED.last_used_at,
                    secret_hash = EXCLUDED.secret_hash
                """,
                (
                    record.user_id,
                    self._cipher.encrypt(record.secret),
                    record.setup_at,
                    record.is_verified,
                    record.enabled_at,
                    record.last_used_at,
                    hash_token(record.secret),
                ),
            )
            conn.execute(
                "DELETE FROM two_factor_backup_code WHERE user_id = %s", (record.user_id,)
            )
            for code_hash in record.used_backup_codes:
                conn.execute(
                    "INSERT INTO two_factor_backup_code (user_id, code_hash, used_at) VALUES (%s, %s, %s)",
                    (record.user_id, code_hash, record.setup_at),
                )
            for code_hash in record.backup_codes - record.used_backup_codes:
                conn.execute(
                    "INSERT INTO two_factor_backup_code (user_id, code_hash) VALUES (%s, %s)",
                    (record.user_id, code_hash),
                )
        return record

    def set_two_factor_verified(self, user_id: str, secret: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_auth
                SET is_verified = TRUE, enabled_at = COALESCE(enabled_at, %s)
                WHERE user_id = %s AND secret_hash = %s AND is_verified = FALSE
                RETURNING user_id
                """,
                (now, user_id, hash_token(secret)),
            ).fetchone()
        return row is not None

    def mark_two_factor_used(self, user_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE two_factor_auth SET last_used_at = %s WHERE user_id = %s",
                (now, user_id),
            )

    def delete_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM two_factor_auth WHERE user_id = %s RETURNING user_id", (user_id,)
            ).fetchone()
        return row is not None

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "DELETE FROM two_factor_backup_code WHERE user_id = %s AND used_at IS NULL",
                    (user_id,),
                )
                for code_hash in code_hashes:
                    # A collision with an already-used hash stays used
                    conn.execute(
                        """
                        INSERT INTO two_factor_backup_code (user_id, code_hash)
                        VALUES (%s, %s)
                        ON CONFLICT (user_id, code_hash) DO NOTHING
                        """,
                        (user_id, code_hash),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "two-factor not configured", {"user_id": mask_identity(user_id)}
            )

    def consume_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_backup_code
                SET used_at = %s
                WHERE user_id = %s AND code_hash = %s AND used_at IS NULL
                RETURNING code_hash
                """,
                (now, user_id, code_hash),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE two_factor_auth SET last_used_at = %s WHERE user_id = %s",
                    (now, user_id),
                )
        return row is not None

    # -- legacy api keys ------------------------------------------------

    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_key (id, user_id, key_hash, description, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        api_key.id,
                        api_key.user_id,
                        api_key.key_hash,
                        api_key.description,
                        api_key.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("api key exists", {"id": api_key.id})
        return api_key

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_key WHERE key_hash = %s", (key_hash,)
            ).fetchone()
        if not row:
            return None
        return ApiKey(
            id=row["id"],
            user_id=row["user_id"],
            key_hash=row["key_hash"],
            description=row.get("description", ""),
            created_at=row["created_at"],
        )

    # -- housekeeping ---------------------------------------------------

    def purge_expired(self, before: datetime) -> int:
        with self._connect() as conn, conn.transaction():
            access = conn.execute(
                "DELETE FROM api_token WHERE refresh_expires_at < %s RETURNING id", (before,)
            ).fetchall()
            # Remaining access rows of purged refresh tokens go by ON DELETE CASCADE
            refresh = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s RETURNING id", (before,)
            ).fetchall()
        purged = len(access) + len(refresh)
        self.logger.info("token_store_purged", purged=purged)
        return purged

    # -- row mapping ----------------------------------------------------

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            lineage_id=str(row.get("lineage_id") or row["id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            created_by=row.get("created_by"),
            parent_id=row.get("parent_id"),
            replaced_by_id=row.get("replaced_by_id"),
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _api_token_from_row(row: Dict[str, Any]) -> ApiToken:
        return ApiToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            refresh_token_id=str(row["refresh_token_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            scopes=list(row.get("scopes") or []),
            issued_at=row["issued_at"],
            access_expires_at=row["access_expires_at"],
            refresh_expires_at=row["refresh_expires_at"],
            description=row.get("description") or "",
            last_used_at=row.get("last_used_at"),
            last_used_by=row.get("last_used_by"),
            revoked_at=row.get("revoked_at"),
            usage_count=int(row.get("usage_count") or 0),
        )
