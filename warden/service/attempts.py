from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service.errors import AlreadySuspendedError, SuspendedError
from warden.storage.models import AttemptRecord, utcnow

logger = get_logger(__name__)


class AttemptStore(Protocol):
    async def get_attempt(self, identifier: str, origin: str) -> Optional[AttemptRecord]: ...

    async def increment_attempt(
        self,
        identifier: str,
        origin: str,
        *,
        now: datetime,
        limit: Optional[int],
        suspend_for: timedelta,
    ) -> AttemptRecord: ...

    async def suspend_attempt(
        self,
        identifier: str,
        origin: str,
        *,
        now: datetime,
        until: datetime,
        min_count: int,
    ) -> bool: ...

    async def clear_attempt(self, identifier: str, origin: str) -> None: ...

    async def clear_expired_attempt(
        self, identifier: str, origin: str, *, now: datetime
    ) -> bool: ...


class AttemptTracker:
    """Failed-login counting and suspension per (identifier, origin).

    The same identifier seen from two origins has two independent budgets, so
    an attacker hammering from one address does not lock out the account owner
    signing in from another.
    """

    def __init__(
        self,
        store: AttemptStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    @property
    def enabled(self) -> bool:
        return self.settings.suspend_enabled

    def limit(self) -> int:
        return self.settings.attempt_limit

    def window(self) -> timedelta:
        """Failures decay after the same span a suspension lasts."""
        return self.settings.suspension_duration

    async def _live_record(self, identifier: str, origin: str) -> Optional[AttemptRecord]:
        """Fetch the record, clearing it first if its suspension has lapsed."""
        record = await self.store.get_attempt(identifier, origin)
        if record is None or record.is_stale(self._now(), self.window()):
            return None
        if record.is_expired(self._now()):
            await self.store.clear_expired_attempt(identifier, origin, now=self._now())
            logger.info(
                "attempt_suspension_expired",
                identifier_hash=hash_identifier(identifier),
                origin=origin,
            )
            return None
        return record

    async def get(self, identifier: str, origin: str) -> int:
        record = await self._live_record(identifier, origin)
        return record.count if record else 0

    async def is_suspended(self, identifier: str, origin: str) -> bool:
        record = await self._live_record(identifier, origin)
        return bool(record and record.is_suspended(self._now()))

    async def remaining(self, identifier: str, origin: str) -> Optional[timedelta]:
        record = await self._live_record(identifier, origin)
        if not record or not record.suspended_until:
            return None
        return record.suspended_until - self._now()

    async def add(self, identifier: str, origin: str) -> int:
        """Record one failure; reaching the limit suspends in the same atomic step."""
        record = await self.store.increment_attempt(
            identifier,
            origin,
            now=self._now(),
            limit=self.limit() if self.enabled else None,
            suspend_for=self.settings.suspension_duration,
        )
        logger.info(
            "login_attempt_failed",
            identifier_hash=hash_identifier(identifier),
            origin=origin,
            attempts=record.count,
            limit=self.limit(),
        )
        if record.is_suspended(self._now()) and record.count == self.limit():
            logger.warning(
                "login_suspended",
                identifier_hash=hash_identifier(identifier),
                origin=origin,
                until=record.suspended_until.isoformat(),
            )
        return record.count

    async def suspend(
        self, identifier: str, origin: str, duration: Optional[timedelta] = None
    ) -> datetime:
        now = self._now()
        until = now + (duration or self.settings.suspension_duration)
        applied = await self.store.suspend_attempt(
            identifier, origin, now=now, until=until, min_count=self.limit()
        )
        if not applied:
            raise AlreadySuspendedError(
                "login is already suspended",
                detail={"origin": origin},
            )
        logger.warning(
            "login_suspended",
            identifier_hash=hash_identifier(identifier),
            origin=origin,
            until=until.isoformat(),
        )
        return until

    async def clear(self, identifier: str, origin: str) -> None:
        await self.store.clear_attempt(identifier, origin)

    async def enforce(self, identifier: str, origin: str) -> None:
        """Raise ``SuspendedError`` when this pair may not attempt a login."""
        if not self.enabled:
            return
        record = await self._live_record(identifier, origin)
        if record is None:
            return
        if not record.is_suspended(self._now()):
            if record.count < self.limit():
                return
            try:
                await self.suspend(identifier, origin)
            except AlreadySuspendedError:
                # A concurrent caller suspended first; the outcome is the same
                pass
        remaining = await self.remaining(identifier, origin)
        minutes = max(1, math.ceil(remaining.total_seconds() / 60)) if remaining else 0
        raise SuspendedError(
            f"login is suspended for {minutes} minutes",
            detail={
                "retry_after_seconds": int(remaining.total_seconds()) if remaining else 0,
            },
        )
