from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, NotFound
from warden.storage.models import Session, User, UserStatus, UserUpdate, utcnow

_IDENTIFIER_COLUMNS = ("email", "username")

# Column names come from UserUpdate fields; nothing caller-supplied reaches SQL text
_UPDATABLE_COLUMNS = frozenset(
    {
        "password_hash",
        "activation_hash",
        "password_reset_hash",
        "temp_password",
        "activated",
        "status",
        "last_login",
        "ip_address",
    }
)


class PostgresStore:
    """Postgres-backed user and session store."""

    def __init__(self, dsn: str, *, identifier_field: str = "email") -> None:
        if identifier_field not in _IDENTIFIER_COLUMNS:
            raise ValueError(f"unsupported identifier field: {identifier_field}")
        self.dsn = dsn
        self.identifier_field = identifier_field
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
        """Create the user and session tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS warden_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    username TEXT UNIQUE,
                    password_hash TEXT,
                    activated BOOLEAN NOT NULL DEFAULT FALSE,
                    status TEXT NOT NULL DEFAULT 'enabled',
                    activation_hash TEXT,
                    password_reset_hash TEXT,
                    temp_password TEXT,
                    last_login TIMESTAMPTZ,
                    ip_address TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS warden_session (
                    id UUID PRIMARY KEY,
                    user_id UUID NOT NULL REFERENCES warden_user(id),
                    remember BOOLEAN NOT NULL DEFAULT FALSE,
                    provenance TEXT NOT NULL,
                    origin TEXT,
                    remember_hash TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS warden_session_remember_idx ON warden_session (remember_hash)"
            )

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            password_hash=row.get("password_hash"),
            activated=bool(row.get("activated", False)),
            status=UserStatus(row.get("status") or UserStatus.ENABLED.value),
            activation_hash=row.get("activation_hash"),
            password_reset_hash=row.get("password_reset_hash"),
            temp_password=row.get("temp_password"),
            last_login=row.get("last_login"),
            ip_address=row.get("ip_address"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            remember=bool(row.get("remember", False)),
            provenance=row.get("provenance") or "credential",
            origin=row.get("origin"),
            remember_hash=row.get("remember_hash"),
        )

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        activated: bool = False,
        status: UserStatus = UserStatus.ENABLED,
        activation_hash: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO warden_user (id, email, username, password_hash, activated, status, activation_hash)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        username,
                        password_hash,
                        activated,
                        UserStatus(status).value,
                        activation_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identifier already exists",
                {"constraint": exc.diag.constraint_name},
            )
        return self._row_to_user(row)

    @staticmethod
    def _is_uuid(value: Any) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    def find_by_id(self, user_id: str) -> User:
        if not self._is_uuid(user_id):
            raise NotFound("user not found", {"user_id": user_id})
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM warden_user WHERE id = %s", (str(user_id),)
            ).fetchone()
        if not row:
            raise NotFound("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def find_by_identifier(self, value: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM warden_user WHERE {self.identifier_field} = %s",
                (value,),
            ).fetchone()
        if not row:
            raise NotFound("user not found", {"field": self.identifier_field})
        return self._row_to_user(row)

    def exists(self, identifier: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT 1 FROM warden_user WHERE {self.identifier_field} = %s",
                (identifier,),
            ).fetchone()
        return row is not None

    def update(
        self, user_id: str, fields: UserUpdate, touch_timestamp: bool = True
    ) -> User:
        changes = fields.changes()
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if isinstance(changes.get("status"), UserStatus):
            changes["status"] = changes["status"].value
        assignments = [f"{column} = %s" for column in changes]
        params: list[Any] = list(changes.values())
        if touch_timestamp:
            assignments.append("updated_at = now()")
        if not assignments:
            return self.find_by_id(user_id)
        params.append(str(user_id))
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE warden_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        if not row:
            raise NotFound("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        *,
        remember: bool = False,
        remember_ttl_days: int = 30,
        provenance: str = "credential",
        origin: Optional[str] = None,
    ) -> tuple[Session, Optional[str]]:
        sess, remember_token = Session.new(
            str(user_id),
            ttl_minutes,
            remember=remember,
            remember_ttl_days=remember_ttl_days,
            provenance=provenance,
            origin=origin,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO warden_session (id, user_id, remember, provenance, origin, remember_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.remember,
                        sess.provenance,
                        sess.origin,
                        sess.remember_hash,
                        sess.created_at,
                        sess.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess, remember_token

    def get_session(self, session_id: str) -> Optional[Session]:
        if not self._is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM warden_session WHERE id = %s AND expires_at > %s",
                (session_id, utcnow()),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_remember_hash(self, remember_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM warden_session WHERE remember_hash = %s AND expires_at > %s",
                (remember_hash, utcnow()),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str) -> None:
        if not self._is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM warden_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM warden_session WHERE user_id = %s AND id <> %s",
                    (str(user_id), except_session_id),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM warden_session WHERE user_id = %s", (str(user_id),)
                )
        return cur.rowcount

    def prune_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM warden_session WHERE expires_at <= %s", (now or utcnow(),)
            )
        removed = cur.rowcount
        if removed:
            self.logger.info("expired_sessions_pruned", count=removed)
        return removed
