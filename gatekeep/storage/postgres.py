from __future__ import annotations

import uuid
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Otp, Permission, RefreshToken, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        otp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        otp_secret TEXT,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS permission_resource_idx ON permission (resource)",
)


class PostgresStore:
    """Postgres-backed implementation of the user, OTP, token and permission stores."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this store reads and writes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, email: str, *, is_active: bool = True) -> User:
        user = User(id=str(uuid.uuid4()), email=email, is_active=is_active)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, is_active, otp_enabled, created_at, updated_at)
                    VALUES (%s, %s, %s, FALSE, %s, %s)
                    """,
                    (user.id, user.email, user.is_active, user.created_at, user.updated_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_user(self, user: User) -> User:
        user.updated_at = utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_active = %s, otp_enabled = %s, otp_secret = %s,
                    last_login_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    user.is_active,
                    user.otp_enabled,
                    user.otp_secret,
                    user.last_login_at,
                    user.updated_at,
                    user.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return self._row_to_user(row)

    # otp challenges
    def create_otp(self, otp: Otp) -> Otp:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_challenge (id, user_id, secret, created_at, expires_at, verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET id = EXCLUDED.id,
                        secret = EXCLUDED.secret,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at,
                        verified = EXCLUDED.verified
                    """,
                    (
                        otp.id,
                        otp.user_id,
                        otp.secret,
                        otp.created_at,
                        otp.expires_at,
                        otp.verified,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for otp", {"user_id": otp.user_id})
        return otp

    def get_otp_for_user(self, user_id: str) -> Optional[Otp]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_otp(row)

    def mark_otp_verified(self, otp: Otp) -> Optional[Otp]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET verified = TRUE
                WHERE id = %s AND verified = FALSE
                RETURNING *
                """,
                (otp.id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_otp(row)

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_refresh_token(row)

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = %s, expires_at = %s WHERE id = %s RETURNING *",
                (token.revoked, token.expires_at, token.id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("refresh token not found", {"token_id": token.id})
        return self._row_to_refresh_token(row)

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    def replace_refresh_tokens(self, token: RefreshToken) -> RefreshToken:
        """Delete the user's tokens and insert ``token`` in one transaction.

        The advisory lock serializes concurrent replacements for the same user
        across connections and processes; it is released at commit.
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))", (token.user_id,)
                )
                conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s", (token.user_id,)
                )
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return token

    @staticmethod
    def _insert_refresh_token(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token, expires_at, revoked, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token,
                token.expires_at,
                token.revoked,
                token.created_at,
            ),
        )

    # permissions
    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._row_to_permission(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (name,)
            ).fetchone()
        return self._row_to_permission(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY name").fetchall()
        return [self._row_to_permission(row) for row in rows]

    def list_permissions_by_resource(self, resource: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission WHERE resource = %s ORDER BY name", (resource,)
            ).fetchall()
        return [self._row_to_permission(row) for row in rows]

    def create_permission(self, permission: Permission) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (id, name, description, resource, action, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        permission.id,
                        permission.name,
                        permission.description,
                        permission.resource,
                        permission.action,
                        permission.created_at,
                        permission.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        return self._row_to_permission(row)

    def update_permission(self, permission: Permission) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE permission
                    SET name = %s, description = %s, resource = %s, action = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        permission.name,
                        permission.description,
                        permission.resource,
                        permission.action,
                        permission.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        if not row:
            raise ConstraintViolation(
                "permission not found", {"permission_id": permission.id}
            )
        return self._row_to_permission(row)

    def delete_permission(self, permission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM permission WHERE id = %s", (permission_id,))
            return bool(cur.rowcount)

    # row mapping
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            is_active=bool(row.get("is_active", True)),
            otp_enabled=bool(row.get("otp_enabled", False)),
            otp_secret=row.get("otp_secret"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_otp(row: dict) -> Otp:
        return Otp(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            secret=row["secret"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            verified=bool(row.get("verified", False)),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_permission(row: dict) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description") or "",
            resource=row["resource"],
            action=row["action"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )
