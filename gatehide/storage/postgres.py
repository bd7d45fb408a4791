from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehide.logging import get_logger
from gatehide.storage.errors import ConstraintViolation
from gatehide.storage.models import (
    EmailVerificationCode,
    Identity,
    Namespace,
    PasswordResetToken,
    UserSession,
    utcnow,
)

# Each namespace lives in its own physical table; never UNION these.
_IDENTITY_TABLES = {
    Namespace.USER: "app_user",
    Namespace.ADMIN: "app_admin",
}

_IDENTITY_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGSERIAL PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    mobile TEXT,
    password_hash TEXT,
    password_algo TEXT,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_AUTH_TABLES_DDL = (
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id BIGSERIAL PRIMARY KEY,
        identity_id BIGINT NOT NULL,
        namespace TEXT NOT NULL,
        session_token TEXT NOT NULL UNIQUE,
        device_info TEXT,
        ip_address TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_identity_idx ON user_session (namespace, identity_id)",
    "CREATE INDEX IF NOT EXISTS user_session_expires_idx ON user_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id BIGSERIAL PRIMARY KEY,
        identity_id BIGINT NOT NULL,
        namespace TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_verification_code (
        id BIGSERIAL PRIMARY KEY,
        identity_id BIGINT NOT NULL,
        namespace TEXT NOT NULL,
        email TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_verification_lookup_idx ON email_verification_code (namespace, identity_id, email)",
)


class PostgresStore:
    """Postgres-backed store for identities, sessions, reset tokens and codes."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_auth_tables()

    def _connect(self):
        return self.pool.connection()

    def _ensure_auth_tables(self) -> None:
        """Create the identity and auth tables if they are missing."""

        with self._connect() as conn:
            for table in _IDENTITY_TABLES.values():
                conn.execute(_IDENTITY_TABLE_DDL.format(table=table))
            for statement in _AUTH_TABLES_DDL:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _table(namespace: Namespace) -> str:
        return _IDENTITY_TABLES[Namespace(namespace)]

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return None

    def _identity_from_row(self, namespace: Namespace, row: dict) -> Identity:
        return Identity(
            id=int(row["id"]),
            namespace=namespace,
            email=row["email"],
            name=row.get("name") or "",
            mobile=row.get("mobile"),
            last_login_at=self._parse_ts(row.get("last_login_at")),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            updated_at=self._parse_ts(row.get("updated_at")) or utcnow(),
        )

    def _session_from_row(self, row: dict) -> UserSession:
        return UserSession(
            id=int(row["id"]),
            identity_id=int(row["identity_id"]),
            namespace=Namespace(row["namespace"]),
            session_token=row["session_token"],
            expires_at=self._parse_ts(row["expires_at"]),
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=bool(row.get("is_active", True)),
            last_activity_at=self._parse_ts(row.get("last_activity_at")) or utcnow(),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    def _reset_token_from_row(self, row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=int(row["id"]),
            identity_id=int(row["identity_id"]),
            namespace=Namespace(row["namespace"]),
            token=row["token_hash"],
            expires_at=self._parse_ts(row["expires_at"]),
            used_at=self._parse_ts(row.get("used_at")),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    def _code_from_row(self, row: dict) -> EmailVerificationCode:
        return EmailVerificationCode(
            id=int(row["id"]),
            identity_id=int(row["identity_id"]),
            namespace=Namespace(row["namespace"]),
            email=row["email"],
            code_hash=row["code_hash"],
            expires_at=self._parse_ts(row["expires_at"]),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    # identities
    def create_identity(
        self,
        namespace: Namespace,
        email: str,
        name: str,
        *,
        mobile: Optional[str] = None,
    ) -> Identity:
        table = self._table(namespace)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO {table} (email, name, mobile)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (email, name, mobile),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "namespace": namespace.value}
            )
        return self._identity_from_row(namespace, row)

    def get_identity(self, namespace: Namespace, identity_id: int) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._table(namespace)} WHERE id = %s", (identity_id,)
            ).fetchone()
        if not row:
            return None
        return self._identity_from_row(namespace, row)

    def get_identity_by_email(self, namespace: Namespace, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._table(namespace)} WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._identity_from_row(namespace, row)

    def update_last_login(
        self, namespace: Namespace, identity_id: int, at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {self._table(namespace)} SET last_login_at = %s WHERE id = %s",
                (at, identity_id),
            )

    def update_email(
        self, namespace: Namespace, identity_id: int, email: str
    ) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE {self._table(namespace)}
                    SET email = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (email, identity_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "namespace": namespace.value}
            )
        if not row:
            return None
        return self._identity_from_row(namespace, row)

    def save_password(
        self, namespace: Namespace, identity_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                f"""
                UPDATE {self._table(namespace)}
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, identity_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "identity not found for credentials",
                    {"identity_id": identity_id, "namespace": namespace.value},
                )

    def get_password_record(
        self, namespace: Namespace, identity_id: int
    ) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT password_hash, password_algo FROM {self._table(namespace)} WHERE id = %s",
                (identity_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row.get("password_algo") or "")

    # sessions
    def create_session(
        self,
        identity_id: int,
        namespace: Namespace,
        session_token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_session (identity_id, namespace, session_token, device_info, ip_address, user_agent, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity_id,
                        namespace.value,
                        session_token,
                        device_info,
                        ip_address,
                        user_agent,
                        expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already registered")
        return self._session_from_row(row)

    def get_session(self, session_id: int) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def get_session_by_token(self, session_token: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def list_active_sessions(
        self, namespace: Namespace, identity_id: int, now: datetime
    ) -> List[UserSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_session
                WHERE namespace = %s AND identity_id = %s AND is_active AND expires_at > %s
                ORDER BY last_activity_at DESC, id DESC
                """,
                (namespace.value, identity_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_session SET last_activity_at = %s WHERE id = %s AND is_active",
                (at, session_id),
            )

    def rotate_session_token(
        self, session_id: int, session_token: str, expires_at: datetime
    ) -> Optional[UserSession]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE user_session
                    SET session_token = %s, expires_at = %s, last_activity_at = now()
                    WHERE id = %s AND is_active
                    RETURNING *
                    """,
                    (session_token, expires_at, session_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already registered")
        if not row:
            return None
        return self._session_from_row(row)

    def deactivate_session(self, session_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return result.rowcount > 0

    def deactivate_identity_sessions(
        self,
        namespace: Namespace,
        identity_id: int,
        *,
        except_token: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            if except_token is None:
                result = conn.execute(
                    """
                    UPDATE user_session SET is_active = FALSE
                    WHERE namespace = %s AND identity_id = %s AND is_active
                    """,
                    (namespace.value, identity_id),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE user_session SET is_active = FALSE
                    WHERE namespace = %s AND identity_id = %s AND is_active AND session_token <> %s
                    """,
                    (namespace.value, identity_id, except_token),
                )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_session WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # password reset tokens
    def create_reset_token(
        self,
        namespace: Namespace,
        identity_id: int,
        token_hash: str,
        expires_at: datetime,
    ) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_token (identity_id, namespace, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (identity_id, namespace.value, token_hash, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token already exists")
        return self._reset_token_from_row(row)

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return self._reset_token_from_row(row)

    def mark_reset_token_used(self, token_hash: str, at: datetime) -> bool:
        # The used_at guard makes concurrent consumers race on one row update
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL
                """,
                (at, token_hash),
            )
            return result.rowcount > 0

    def invalidate_reset_tokens(
        self, namespace: Namespace, identity_id: int, at: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE namespace = %s AND identity_id = %s AND used_at IS NULL
                """,
                (at, namespace.value, identity_id),
            )
            return result.rowcount

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # email verification codes
    def store_verification_code(
        self,
        namespace: Namespace,
        identity_id: int,
        email: str,
        code_hash: str,
        expires_at: datetime,
    ) -> EmailVerificationCode:
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM email_verification_code
                WHERE namespace = %s AND identity_id = %s AND email = %s
                """,
                (namespace.value, identity_id, email),
            )
            row = conn.execute(
                """
                INSERT INTO email_verification_code (identity_id, namespace, email, code_hash, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (identity_id, namespace.value, email, code_hash, expires_at),
            ).fetchone()
        return self._code_from_row(row)

    def find_verification_code(
        self, namespace: Namespace, identity_id: int, email: str, code_hash: str
    ) -> Optional[EmailVerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM email_verification_code
                WHERE namespace = %s AND identity_id = %s AND email = %s AND code_hash = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (namespace.value, identity_id, email, code_hash),
            ).fetchone()
        if not row:
            return None
        return self._code_from_row(row)

    def delete_verification_code(self, code_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verification_code WHERE id = %s", (code_id,)
            )
            return result.rowcount > 0

    def delete_expired_verification_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verification_code WHERE expires_at < %s", (now,)
            )
            return result.rowcount
