from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, NotFound
from warden.storage.models import (
    AttemptRecord,
    Session,
    User,
    UserStatus,
    UserUpdate,
    utcnow,
)

_IDENTIFIER_FIELDS = ("email", "username")


class MemoryStore:
    """In-memory user and session store persisted as JSON under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/warden", *, identifier_field: str = "email") -> None:
        if identifier_field not in _IDENTIFIER_FIELDS:
            raise ValueError(f"unsupported identifier field: {identifier_field}")
        self.logger = get_logger(__name__)
        self.identifier_field = identifier_field
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so nested helpers can re-enter while a public call holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users -----------------------------------------------------------

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
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if username and existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                activated=activated,
                status=UserStatus(status),
                activation_hash=activation_hash,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def find_by_id(self, user_id: str) -> User:
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                raise NotFound("user not found", {"user_id": user_id})
            return replace(user)

    def find_by_identifier(self, value: str) -> User:
        with self._data_lock:
            user = self._lookup(value)
            if not user:
                raise NotFound("user not found", {"field": self.identifier_field})
            return replace(user)

    def exists(self, identifier: str) -> bool:
        with self._data_lock:
            return self._lookup(identifier) is not None

    def _lookup(self, value: str) -> Optional[User]:
        return next(
            (
                u
                for u in self.users.values()
                if getattr(u, self.identifier_field) == value
            ),
            None,
        )

    def update(
        self, user_id: str, fields: UserUpdate, touch_timestamp: bool = True
    ) -> User:
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                raise NotFound("user not found", {"user_id": user_id})
            fields.apply(user)
            if touch_timestamp:
                user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # -- sessions --------------------------------------------------------

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
        with self._data_lock:
            if str(user_id) not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess, remember_token = Session.new(
                str(user_id),
                ttl_minutes,
                remember=remember,
                remember_ttl_days=remember_ttl_days,
                provenance=provenance,
                origin=origin,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess), remember_token

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            if sess.is_expired():
                self.sessions.pop(session_id, None)
                self._persist_state()
                return None
            return replace(sess)

    def get_session_by_remember_hash(self, remember_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.remember_hash == remember_hash),
                None,
            )
            if sess is None or sess.is_expired():
                return None
            return replace(sess)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == str(user_id) and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -----------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "activated": user.activated,
            "status": UserStatus(user.status).value,
            "activation_hash": user.activation_hash,
            "password_reset_hash": user.password_reset_hash,
            "temp_password": user.temp_password,
            "last_login": self._serialize_datetime(user.last_login),
            "ip_address": user.ip_address,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            username=data.get("username"),
            password_hash=data.get("password_hash"),
            activated=bool(data.get("activated", False)),
            status=UserStatus(data.get("status", UserStatus.ENABLED.value)),
            activation_hash=data.get("activation_hash"),
            password_reset_hash=data.get("password_reset_hash"),
            temp_password=data.get("temp_password"),
            last_login=self._deserialize_datetime(data.get("last_login")),
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "remember": sess.remember,
            "provenance": sess.provenance,
            "origin": sess.origin,
            "remember_hash": sess.remember_hash,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            remember=bool(data.get("remember", False)),
            provenance=data.get("provenance", "credential"),
            origin=data.get("origin"),
            remember_hash=data.get("remember_hash"),
        )


class MemoryAttemptStore:
    """Process-local attempt records; every read-modify-write holds ``_lock``.

    A record whose last failure is older than the decay window counts as
    absent. Stale and lapsed records are swept every ``prune_every`` increments
    so sprayed identifiers cannot grow the table without bound.
    """

    def __init__(self, *, prune_every: int = 256) -> None:
        self._lock = threading.Lock()
        self._records: Dict[tuple[str, str], AttemptRecord] = {}
        self._prune_every = max(1, prune_every)
        self._increments = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    async def get_attempt(self, identifier: str, origin: str) -> Optional[AttemptRecord]:
        with self._lock:
            record = self._records.get((identifier, origin))
            return replace(record) if record else None

    async def increment_attempt(
        self,
        identifier: str,
        origin: str,
        *,
        now: datetime,
        limit: Optional[int],
        suspend_for: timedelta,
    ) -> AttemptRecord:
        with self._lock:
            self._increments += 1
            if self._increments % self._prune_every == 0:
                self._prune_locked(now, suspend_for)
            key = (identifier, origin)
            record = self._records.get(key)
            if record is None or record.is_expired(now) or record.is_stale(now, suspend_for):
                record = AttemptRecord(identifier=identifier, origin=origin)
                self._records[key] = record
            record.count += 1
            record.last_attempt_at = now
            if limit is not None and record.count >= limit and not record.is_suspended(now):
                record.suspended_until = now + suspend_for
            return replace(record)

    async def suspend_attempt(
        self,
        identifier: str,
        origin: str,
        *,
        now: datetime,
        until: datetime,
        min_count: int,
    ) -> bool:
        with self._lock:
            key = (identifier, origin)
            record = self._records.get(key)
            if record is not None and record.is_suspended(now):
                return False
            if record is None or record.is_expired(now):
                record = AttemptRecord(identifier=identifier, origin=origin)
                self._records[key] = record
            record.count = max(record.count, min_count)
            record.suspended_until = until
            record.last_attempt_at = now
            return True

    async def clear_attempt(self, identifier: str, origin: str) -> None:
        with self._lock:
            self._records.pop((identifier, origin), None)

    async def clear_expired_attempt(
        self, identifier: str, origin: str, *, now: datetime
    ) -> bool:
        with self._lock:
            record = self._records.get((identifier, origin))
            if record is None or not record.is_expired(now):
                return False
            self._records.pop((identifier, origin), None)
            return True

    async def prune(self, *, now: datetime, window: timedelta) -> int:
        """Drop lapsed suspensions and failures older than ``window``."""
        with self._lock:
            return self._prune_locked(now, window)

    def _prune_locked(self, now: datetime, window: timedelta) -> int:
        dead = [
            key
            for key, record in self._records.items()
            if record.is_expired(now) or record.is_stale(now, window)
        ]
        for key in dead:
            del self._records[key]
        return len(dead)
