from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from pilotlog.logging import get_logger
from pilotlog.storage.errors import ConstraintViolation, StorageError
from pilotlog.storage.models import (
    AuditEvent,
    AuthToken,
    Session,
    TokenPurpose,
    User,
    UserRole,
    UserStatus,
)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'active', 'disabled')),
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL
            CHECK (purpose IN ('approval', 'password_reset', 'email_verification')),
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id UUID PRIMARY KEY,
        action TEXT NOT NULL,
        user_id UUID REFERENCES app_user(id) ON DELETE SET NULL,
        entity_type TEXT,
        entity_id TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_user_idx ON audit_event (user_id)",
)


class PostgresStore:
    """Postgres-backed store for users, sessions, tokens and audit events.

    Connectivity failures surface as :class:`StorageError`; a query that
    matches nothing returns ``None``.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if ensure_schema:
            self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageError("database unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            phone=row.get("phone"),
            role=UserRole(row.get("role") or UserRole.USER),
            status=UserStatus(row.get("status") or UserStatus.PENDING),
            email_verified_at=row.get("email_verified_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=row["id"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _row_to_token(row: dict) -> AuthToken:
        return AuthToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=TokenPurpose(row["purpose"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    @staticmethod
    def _row_to_audit_event(row: dict) -> AuditEvent:
        metadata: Any = row.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = None
        return AuditEvent(
            id=str(row["id"]),
            action=row["action"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            entity_type=row.get("entity_type"),
            entity_id=row.get("entity_id"),
            metadata=metadata,
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.PENDING,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, phone, role, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        name,
                        phone,
                        UserRole(role).value,
                        UserStatus(status).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, status: Optional[UserStatus] = None, limit: int = 100
    ) -> List[User]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE status = %s ORDER BY created_at LIMIT %s",
                    (UserStatus(status).value, limit),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (UserRole(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET email_verified_at = COALESCE(email_verified_at, now())
                WHERE id = %s RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"field": "id"})
        return session

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s",
                (expires_at, session_id),
            )
            return result.rowcount > 0

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # one-time tokens
    def create_token(self, token: AuthToken) -> AuthToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (id, user_id, purpose, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        TokenPurpose(token.purpose).value,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "token_hash"})
        return token

    def find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[AuthToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE purpose = %s AND token_hash = %s",
                (TokenPurpose(purpose).value, token_hash),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def mark_token_used(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token SET used_at = now()
                WHERE id = %s AND used_at IS NULL
                RETURNING id
                """,
                (token_id,),
            ).fetchone()
        return row is not None

    def delete_user_tokens(self, user_id: str, purpose: TokenPurpose) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_token WHERE user_id = %s AND purpose = %s",
                (user_id, TokenPurpose(purpose).value),
            )
            return result.rowcount

    # audit
    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_event (id, action, user_id, entity_type, entity_id, metadata)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    action,
                    user_id,
                    entity_type,
                    entity_id,
                    json.dumps(metadata) if metadata else None,
                ),
            ).fetchone()
        return self._row_to_audit_event(row)

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} "
                "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_audit_event(row) for row in rows]
