from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class Provenance(str, Enum):
    """Mechanisms that create sessions; external providers use their own name."""

    CREDENTIAL = "credential"
    FORCED = "forced"
    REMEMBER = "remember"


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    activated: bool = False
    status: UserStatus = UserStatus.ENABLED
    activation_hash: Optional[str] = None
    password_reset_hash: Optional[str] = None
    temp_password: Optional[str] = None
    last_login: Optional[datetime] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_enabled(self) -> bool:
        return self.status == UserStatus.ENABLED


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class UserUpdate:
    """Explicit set of mutable user fields.

    Fields left as ``UNSET`` are not touched; ``None`` clears a nullable field.
    """

    password_hash: Optional[str] | _Unset = UNSET
    activation_hash: Optional[str] | _Unset = UNSET
    password_reset_hash: Optional[str] | _Unset = UNSET
    temp_password: Optional[str] | _Unset = UNSET
    activated: bool | _Unset = UNSET
    status: UserStatus | _Unset = UNSET
    last_login: Optional[datetime] | _Unset = UNSET
    ip_address: Optional[str] | _Unset = UNSET

    def changes(self) -> Dict[str, object]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def apply(self, user: User) -> User:
        for name, value in self.changes().items():
            setattr(user, name, value)
        return user

    def __bool__(self) -> bool:
        return bool(self.changes())


@dataclass
class AttemptRecord:
    identifier: str
    origin: str
    count: int = 0
    suspended_until: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None

    def is_suspended(self, now: datetime) -> bool:
        return self.suspended_until is not None and self.suspended_until > now

    def is_expired(self, now: datetime) -> bool:
        return self.suspended_until is not None and self.suspended_until <= now

    def is_stale(self, now: datetime, window: timedelta) -> bool:
        """Unsuspended failures older than ``window`` no longer count."""
        return (
            self.suspended_until is None
            and self.last_attempt_at is not None
            and self.last_attempt_at + window <= now
        )


def hash_remember_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    remember: bool = False
    provenance: str = Provenance.CREDENTIAL.value
    origin: Optional[str] = None
    remember_hash: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        *,
        remember: bool = False,
        remember_ttl_days: int = 30,
        provenance: str = Provenance.CREDENTIAL.value,
        origin: str | None = None,
    ) -> tuple["Session", Optional[str]]:
        """Build a session and, when ``remember`` is set, its raw remember token."""
        now = utcnow()
        remember_token = secrets.token_urlsafe(32) if remember else None
        ttl = timedelta(days=remember_ttl_days) if remember else timedelta(minutes=ttl_minutes)
        session = cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            remember=remember,
            provenance=provenance,
            origin=origin,
            remember_hash=hash_remember_token(remember_token) if remember_token else None,
        )
        return session, remember_token

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
