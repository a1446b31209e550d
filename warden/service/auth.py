from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service.attempts import AttemptTracker
from warden.service.credentials import CredentialVerifier, Purpose
from warden.service.errors import (
    DisabledError,
    NotActivatedError,
    UserNotFoundError,
    ValidationError,
)
from warden.storage.errors import NotFound, StorageError
from warden.storage.models import (
    Provenance,
    Session,
    User,
    UserUpdate,
    hash_remember_token,
    utcnow,
)

logger = get_logger(__name__)


class UserRepository(Protocol):
    def find_by_id(self, user_id: str) -> User: ...

    def find_by_identifier(self, value: str) -> User: ...

    def update(
        self, user_id: str, fields: UserUpdate, touch_timestamp: bool = True
    ) -> User: ...

    def exists(self, identifier: str) -> bool: ...


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        *,
        remember: bool = False,
        remember_ttl_days: int = 30,
        provenance: str = "credential",
        origin: Optional[str] = None,
    ) -> tuple[Session, Optional[str]]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_remember_hash(self, remember_hash: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...


@dataclass
class SessionContext:
    """Per-request session state handed to every authenticator call.

    ``origin`` is the client's network origin as resolved by the caller;
    ``data`` is the opaque key-value session bag of the web layer.
    """

    origin: str
    session_id: Optional[str] = None
    remember_token: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class SessionAuthenticator:
    """Decides whether a login is allowed and materializes sessions."""

    def __init__(
        self,
        users: UserRepository,
        sessions: SessionStore,
        tracker: AttemptTracker,
        verifier: CredentialVerifier,
        settings: Settings,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.tracker = tracker
        self.verifier = verifier
        self.settings = settings
        self.logger = logger

    @property
    def suspend_enabled(self) -> bool:
        return self.settings.suspend_enabled

    async def attempt(
        self,
        ctx: SessionContext,
        identifier: str,
        secret: str,
        remember: bool = False,
    ) -> bool:
        """Log a user in with a password.

        Returns ``False`` for bad input, unknown users and wrong passwords alike.
        Raises ``SuspendedError`` when the identifier/origin pair is over its
        limit and ``NotActivatedError``/``DisabledError`` for account-state gates.
        """
        # A new attempt always invalidates whatever session the context held
        await self.logout(ctx)

        if self.suspend_enabled:
            await self.tracker.enforce(identifier or "", ctx.origin)

        if not identifier or not secret:
            return False

        user = await self.validate_user(identifier, secret, Purpose.PASSWORD, ctx.origin)
        if user is None:
            return False

        if self.suspend_enabled:
            await self.tracker.clear(identifier, ctx.origin)

        # Logging in with the live password abandons any pending reset
        if user.password_reset_hash:
            update = UserUpdate(
                password_reset_hash=None,
                temp_password=None,
                last_login=utcnow(),
                ip_address=ctx.origin,
            )
        else:
            update = UserUpdate(last_login=utcnow(), ip_address=ctx.origin)
        try:
            self.users.update(user.id, update, touch_timestamp=False)
        except StorageError as exc:
            self.logger.warning(
                "login_metadata_update_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=exc.message,
            )

        await self.login(ctx, user, remember=remember, provenance=Provenance.CREDENTIAL.value)
        return True

    async def validate_user(
        self, identifier: str, secret: str, purpose: Purpose, origin: str
    ) -> Optional[User]:
        """Resolve ``identifier`` and check ``secret`` for ``purpose``.

        Account-state gates and unknown identifiers are counted against the
        attempt budget for password-like purposes exactly like a bad secret.
        """
        purpose = Purpose(purpose)
        try:
            user = self.users.find_by_identifier(identifier)
        except NotFound:
            self.logger.info(
                "credential_user_missing",
                identifier_hash=hash_identifier(identifier),
                purpose=purpose.value,
            )
            await self._count_failure(identifier, origin, purpose)
            return None

        if not user.activated and purpose != Purpose.ACTIVATION_CODE:
            await self._count_failure(identifier, origin, purpose)
            self.logger.info("login_rejected_not_activated", user_id=user.id)
            raise NotActivatedError(
                "account is not activated", detail={"purpose": purpose.value}
            )

        if not user.is_enabled:
            await self._count_failure(identifier, origin, purpose)
            self.logger.info("login_rejected_disabled", user_id=user.id)
            raise DisabledError("account is disabled", detail={"purpose": purpose.value})

        if not self.verifier.check(user, secret, purpose):
            await self._count_failure(identifier, origin, purpose)
            return None
        return user

    async def _count_failure(self, identifier: str, origin: str, purpose: Purpose) -> None:
        if self.suspend_enabled and purpose.counts_as_login_attempt:
            await self.tracker.add(identifier, origin)

    async def force_login(
        self,
        ctx: SessionContext,
        user_id: str,
        provider: str = Provenance.FORCED.value,
    ) -> bool:
        """Log a user in without credentials (trusted provider or admin path)."""
        if not user_id:
            raise ValidationError("user id is required")
        try:
            user = self.users.find_by_id(str(user_id))
        except NotFound:
            self.logger.warning("force_login_user_missing", user_id=str(user_id))
            raise UserNotFoundError("user not found", detail={"user_id": str(user_id)})
        await self.logout(ctx)
        await self.login(ctx, user, remember=False, provenance=provider)
        return True

    async def login(
        self,
        ctx: SessionContext,
        user: User,
        *,
        remember: bool = False,
        provenance: str = Provenance.CREDENTIAL.value,
    ) -> Session:
        """Issue a session for ``user`` and bind it to ``ctx``."""
        session, remember_token = self.sessions.create_session(
            user.id,
            self.settings.session_ttl_minutes,
            remember=remember,
            remember_ttl_days=self.settings.remember_ttl_days,
            provenance=provenance,
            origin=ctx.origin,
        )
        # One live session per user
        self.sessions.revoke_user_sessions(user.id, except_session_id=session.id)
        ctx.session_id = session.id
        ctx.remember_token = remember_token
        ctx.data[self.settings.session_provider_key] = provenance
        self.logger.info(
            "session_issued",
            user_id=user.id,
            session_id=session.id,
            provenance=provenance,
            remember=remember,
        )
        return session

    async def logout(self, ctx: SessionContext) -> None:
        """Invalidate the context's session and remember token. Idempotent."""
        if ctx.session_id:
            self.sessions.revoke_session(ctx.session_id)
            self.logger.info("session_revoked", session_id=ctx.session_id)
        ctx.session_id = None
        ctx.remember_token = None
        ctx.data.pop(self.settings.session_provider_key, None)

    async def resume(self, ctx: SessionContext, remember_token: str) -> bool:
        """Re-establish a session from a remember-me token."""
        if not remember_token:
            return False
        session = self.sessions.get_session_by_remember_hash(
            hash_remember_token(remember_token)
        )
        if session is None:
            return False
        try:
            user = self.users.find_by_id(session.user_id)
        except NotFound:
            self.sessions.revoke_session(session.id)
            return False
        if not user.activated or not user.is_enabled:
            self.sessions.revoke_session(session.id)
            return False
        ctx.session_id = session.id
        ctx.remember_token = remember_token
        ctx.data[self.settings.session_provider_key] = Provenance.REMEMBER.value
        self.logger.info("session_resumed", user_id=user.id, session_id=session.id)
        return True

    async def current_user(self, ctx: SessionContext) -> Optional[User]:
        """Return the user bound to the context's live session, if any."""
        if not ctx.session_id:
            return None
        session = self.sessions.get_session(ctx.session_id)
        if session is None:
            ctx.session_id = None
            return None
        try:
            return self.users.find_by_id(session.user_id)
        except NotFound:
            return None

    async def check(self, ctx: SessionContext) -> bool:
        return await self.current_user(ctx) is not None

    def user_exists(self, identifier: str) -> bool:
        if not identifier:
            return False
        return self.users.exists(identifier)
