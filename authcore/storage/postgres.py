from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, normalize_email
from authcore.storage.errors import DuplicateKeyError, MissingReferenceError
from authcore.storage.models import (
    PasswordResetToken,
    Permission,
    RefreshToken,
    Role,
    TwoFactorConfig,
    User,
    new_security_stamp,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        full_name TEXT NOT NULL DEFAULT '',
        avatar_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        security_stamp TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_two_factor (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT,
        pending_secret TEXT,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        last_used_step BIGINT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recovery_code (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        PRIMARY KEY (user_id, code_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        consumed_at TIMESTAMPTZ
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store.

    Conditional state changes (refresh rotation, TOTP step and recovery
    code consumption, reset token redemption) are single guarded UPDATEs,
    so concurrent callers race on the row instead of in application code.
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
        self._mfa_cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            avatar_url=row.get("avatar_url"),
            is_active=bool(row.get("is_active", True)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            security_stamp=row["security_stamp"],
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _token_from_row(row: dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked=bool(row["revoked"]),
            revoked_at=row.get("revoked_at"),
            replaced_by=row.get("replaced_by"),
        )

    def _role_from_row(self, conn: Any, row: dict[str, Any]) -> Role:
        perm_rows = conn.execute(
            """
            SELECT p.name FROM role_permission rp
            JOIN permission p ON p.id = rp.permission_id
            WHERE rp.role_id = %s ORDER BY p.name
            """,
            (row["id"],),
        ).fetchall()
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            permissions=[r["name"] for r in perm_rows],
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            full_name=full_name,
            avatar_url=avatar_url,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, avatar_url, is_active, security_stamp, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.full_name,
                        user.avatar_url,
                        user.is_active,
                        user.security_stamp,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateKeyError("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def update_user(
        self,
        user_id: str,
        *,
        full_name: str,
        avatar_url: Optional[str],
        is_active: bool,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET full_name = %s, avatar_url = %s, is_active = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (full_name, avatar_url, is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise MissingReferenceError("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return (row["password_hash"], row["password_algo"]) if row else None

    def change_credentials(self, user_id: str, password_hash: str, password_algo: str) -> int:
        with self._connect() as conn, conn.transaction():
            updated = conn.execute(
                "UPDATE app_user SET security_stamp = %s, updated_at = now() WHERE id = %s RETURNING id",
                (new_security_stamp(), user_id),
            ).fetchone()
            if not updated:
                raise MissingReferenceError("user not found for credentials", {"user_id": user_id})
            conn.execute(
                """
                INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )
            revoked = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = now() WHERE user_id = %s AND NOT revoked",
                (user_id,),
            ).rowcount
        return revoked or 0

    # roles / permissions
    def ensure_permission(self, name: str, description: Optional[str] = None) -> Permission:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO permission (id, name, description) VALUES (%s, %s, %s) ON CONFLICT (name) DO NOTHING",
                (str(uuid.uuid4()), name, description),
            )
            row = conn.execute("SELECT * FROM permission WHERE name = %s", (name,)).fetchone()
        return Permission(id=str(row["id"]), name=row["name"], description=row.get("description"))

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY name").fetchall()
        return [
            Permission(id=str(r["id"]), name=r["name"], description=r.get("description"))
            for r in rows
        ]

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
            return [self._role_from_row(conn, r) for r in rows]

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
            return self._role_from_row(conn, row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
            return self._role_from_row(conn, row) if row else None

    def _replace_role_permissions(
        self, conn: Any, role_id: str, permission_names: Sequence[str]
    ) -> None:
        names = sorted(set(permission_names))
        rows = conn.execute(
            "SELECT id, name FROM permission WHERE name = ANY(%s)", (names,)
        ).fetchall()
        found = {r["name"]: r["id"] for r in rows}
        unknown = [n for n in names if n not in found]
        if unknown:
            raise MissingReferenceError("unknown permission", {"permissions": unknown})
        conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
        for name in names:
            conn.execute(
                "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                (role_id, found[name]),
            )

    def create_role(
        self, name: str, description: Optional[str], permission_names: Sequence[str]
    ) -> Role:
        role_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "INSERT INTO role (id, name, description) VALUES (%s, %s, %s)",
                    (role_id, name, description),
                )
                self._replace_role_permissions(conn, role_id, permission_names)
                row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
                return self._role_from_row(conn, row)
        except errors.UniqueViolation:
            raise DuplicateKeyError("role name already exists", {"field": "name"})

    def update_role(
        self,
        role_id: str,
        name: str,
        description: Optional[str],
        permission_names: Sequence[str],
    ) -> Optional[Role]:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "UPDATE role SET name = %s, description = %s WHERE id = %s RETURNING *",
                    (name, description, role_id),
                ).fetchone()
                if not row:
                    return None
                self._replace_role_permissions(conn, role_id, permission_names)
                return self._role_from_row(conn, row)
        except errors.UniqueViolation:
            raise DuplicateKeyError("role name already exists", {"field": "name"})

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM role WHERE id = %s", (role_id,)).rowcount
        return bool(deleted)

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
                for role_id in dict.fromkeys(role_ids):
                    conn.execute(
                        "INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)",
                        (user_id, role_id),
                    )
        except errors.ForeignKeyViolation:
            raise MissingReferenceError("user or role not found", {"user_id": user_id})

    def get_user_role_names(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.name FROM user_role ur JOIN role r ON r.id = ur.role_id
                WHERE ur.user_id = %s ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [r["name"] for r in rows]

    def get_role_permission_names(self, role_name: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.name FROM role r
                JOIN role_permission rp ON rp.role_id = r.id
                JOIN permission p ON p.id = rp.permission_id
                WHERE r.name = %s ORDER BY p.name
                """,
                (role_name,),
            ).fetchall()
        return [r["name"] for r in rows]

    # refresh tokens
    def _insert_refresh_token(self, conn: Any, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at, revoked)
            VALUES (%s, %s, %s, %s, %s, FALSE)
            """,
            (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
        )

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.ForeignKeyViolation:
            raise MissingReferenceError("user not found for token", {"user_id": token.user_id})
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_hash: str,
        user_id: str,
        security_stamp: str,
        replacement: RefreshToken,
        now: datetime,
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            # Blocks a concurrent credential change until this rotation commits
            user_row = conn.execute(
                "SELECT security_stamp, is_active FROM app_user WHERE id = %s FOR SHARE",
                (user_id,),
            ).fetchone()
            if (
                not user_row
                or not user_row["is_active"]
                or user_row["security_stamp"] != security_stamp
            ):
                return False
            consumed = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, replaced_by = %s
                WHERE token_hash = %s AND user_id = %s AND NOT revoked AND expires_at > %s
                RETURNING id
                """,
                (now, replacement.id, old_hash, user_id, now),
            ).fetchone()
            if not consumed:
                return False
            self._insert_refresh_token(conn, replacement)
        return True

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> bool:
        with self._connect() as conn:
            revoked = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now()
                WHERE token_hash = %s AND user_id = %s AND NOT revoked
                """,
                (token_hash, user_id),
            ).rowcount
        return bool(revoked)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            revoked = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = now() WHERE user_id = %s AND NOT revoked",
                (user_id,),
            ).rowcount
        return revoked or 0

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_two_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorConfig(
            user_id=str(row["user_id"]),
            secret=self._mfa_cipher.decrypt(row.get("secret")),
            pending_secret=self._mfa_cipher.decrypt(row.get("pending_secret")),
            enabled=bool(row["enabled"]),
            last_used_step=row.get("last_used_step"),
            updated_at=row["updated_at"],
        )

    def set_pending_two_factor_secret(self, user_id: str, secret: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_two_factor (user_id, pending_secret, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET pending_secret = EXCLUDED.pending_secret, updated_at = now()
                    """,
                    (user_id, self._mfa_cipher.encrypt(secret)),
                )
        except errors.ForeignKeyViolation:
            raise MissingReferenceError("user not found for mfa", {"user_id": user_id})

    def enable_two_factor(
        self,
        user_id: str,
        secret: str,
        step: int,
        recovery_code_hashes: Sequence[str],
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT pending_secret FROM user_two_factor WHERE user_id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row or self._mfa_cipher.decrypt(row.get("pending_secret")) != secret:
                return False
            conn.execute(
                """
                UPDATE user_two_factor
                SET secret = pending_secret, pending_secret = NULL, enabled = TRUE,
                    last_used_step = %s, updated_at = now()
                WHERE user_id = %s
                """,
                (step, user_id),
            )
            conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
            for code_hash in set(recovery_code_hashes):
                conn.execute(
                    "INSERT INTO recovery_code (user_id, code_hash) VALUES (%s, %s)",
                    (user_id, code_hash),
                )
            conn.execute(
                "UPDATE app_user SET two_factor_enabled = TRUE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
        return True

    def disable_two_factor(self, user_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM user_two_factor WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
            conn.execute(
                "UPDATE app_user SET two_factor_enabled = FALSE, updated_at = now() WHERE id = %s",
                (user_id,),
            )

    def consume_totp_step(self, user_id: str, step: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_two_factor SET last_used_step = %s
                WHERE user_id = %s AND enabled
                  AND (last_used_step IS NULL OR last_used_step < %s)
                RETURNING user_id
                """,
                (step, user_id, step),
            ).fetchone()
        return row is not None

    def consume_recovery_code(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM recovery_code WHERE user_id = %s AND code_hash = %s",
                (user_id, code_hash),
            ).rowcount
        return bool(deleted)

    def count_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM recovery_code WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["c"]) if row else 0

    # password reset
    def create_password_reset_token(self, record: PasswordResetToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_token (token_hash, user_id, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (record.token_hash, record.user_id, record.expires_at, record.created_at),
            )

    def consume_password_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET consumed_at = %s
                WHERE token_hash = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING user_id
                """,
                (now, token_hash, now),
            ).fetchone()
        return str(row["user_id"]) if row else None
