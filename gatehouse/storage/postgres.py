from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ActiveSession, User, utcnow

_UPDATABLE_USER_FIELDS = ("email", "unconfirmed_email", "password_hash", "confirmed_at")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        unconfirmed_email TEXT,
        confirmed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS active_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        remember_token TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS active_session_user_idx ON active_session (user_id)",
)


class PostgresStore:
    """Postgres-backed users and active sessions.

    Email uniqueness is enforced by the ``app_user.email`` unique index, so
    confirming a pending address is a single UPDATE that either wins or
    raises :class:`ConstraintViolation`.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            unconfirmed_email=row.get("unconfirmed_email"),
            confirmed_at=row.get("confirmed_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> ActiveSession:
        return ActiveSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            remember_token=row["remember_token"],
            created_at=row.get("created_at") or utcnow(),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        confirmed_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, confirmed_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, password_hash, confirmed_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_FIELDS)
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        for key in ("email", "unconfirmed_email"):
            if isinstance(fields.get(key), str):
                fields[key] = fields[key].strip().lower()
        # Column names come from the allowlist above, never from callers
        columns = [name for name in _UPDATABLE_USER_FIELDS if name in fields]
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params = [fields[name] for name in columns] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def confirm_user(self, user_id: str, confirmed_at: datetime) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = COALESCE(unconfirmed_email, email),
                        unconfirmed_email = NULL,
                        confirmed_at = %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (confirmed_at, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # active sessions
    def create_active_session(
        self,
        user_id: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> ActiveSession:
        sess = ActiveSession.new(
            user_id=user_id, user_agent=user_agent, ip_address=ip_address
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO active_session (id, user_id, remember_token, user_agent, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.remember_token,
                        sess.user_agent,
                        sess.ip_address,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return sess

    def get_active_session(self, session_id: str) -> Optional[ActiveSession]:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM active_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_active_session_by_remember_token(
        self, remember_token: str
    ) -> Optional[ActiveSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM active_session WHERE remember_token = %s",
                (remember_token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str) -> List[ActiveSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM active_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_active_session(self, session_id: str) -> bool:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM active_session WHERE id = %s", (session_id,)
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM active_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount
