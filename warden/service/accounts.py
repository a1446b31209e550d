from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Optional, Union

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service.auth import SessionAuthenticator, UserRepository
from warden.service.credentials import Purpose, SecretHasher, TokenGenerator, generate_token
from warden.storage.errors import NotFound
from warden.storage.models import User, UserStatus, UserUpdate

logger = get_logger(__name__)


@dataclass(frozen=True)
class PasswordResetTicket:
    email: str
    reset_token: str
    link: str


@dataclass(frozen=True)
class ActivationTicket:
    email: str
    activation_code: str
    link: str


def encode_identifier(identifier: str) -> str:
    return base64.urlsafe_b64encode(identifier.encode()).decode()


def decode_identifier(encoded: str) -> Optional[str]:
    try:
        return base64.urlsafe_b64decode(encoded.encode()).decode()
    except (binascii.Error, ValueError):
        return None


class AccountLifecycleManager:
    """Activation, password reset and account status transitions."""

    def __init__(
        self,
        users: UserRepository,
        authenticator: SessionAuthenticator,
        hasher: SecretHasher,
        settings: Settings,
        *,
        token_generator: TokenGenerator = generate_token,
    ) -> None:
        self.users = users
        self.authenticator = authenticator
        self.hasher = hasher
        self.settings = settings
        self.token_generator = token_generator

    def _new_token(self) -> str:
        return self.token_generator(self.settings.reset_token_length)

    @staticmethod
    def _resolve_identifier(value: str, decode: bool) -> Optional[str]:
        if not value:
            return None
        return decode_identifier(value) if decode else value

    def issue_activation_code(self, identifier: str) -> Union[ActivationTicket, bool]:
        """Generate a fresh activation code for a not-yet-activated account."""
        if not identifier:
            return False
        try:
            user = self.users.find_by_identifier(identifier)
        except NotFound:
            return False
        if user.activated:
            return False
        code = self._new_token()
        self.users.update(user.id, UserUpdate(activation_hash=self.hasher.hash(code)))
        logger.info("activation_code_issued", user_id=user.id)
        return ActivationTicket(
            email=user.email,
            activation_code=code,
            link=f"{encode_identifier(identifier)}/{code}",
        )

    async def activate(
        self, identifier: str, code: str, *, origin: str = "", decode: bool = True
    ) -> Union[User, bool]:
        """Activate an account; the code is consumed on success."""
        identifier = self._resolve_identifier(identifier, decode)
        if not identifier or not code:
            return False
        user = await self.authenticator.validate_user(
            identifier, code, Purpose.ACTIVATION_CODE, origin
        )
        if user is None:
            return False
        user = self.users.update(
            user.id, UserUpdate(activation_hash=None, activated=True), touch_timestamp=False
        )
        logger.info("account_activated", user_id=user.id)
        return user

    def start_password_reset(
        self, identifier: str, new_secret: str
    ) -> Union[PasswordResetTicket, bool]:
        """Stage ``new_secret`` behind a reset token; the live password is untouched."""
        if not identifier or not new_secret:
            return False
        try:
            user = self.users.find_by_identifier(identifier)
        except NotFound:
            logger.info(
                "password_reset_user_missing",
                identifier_hash=hash_identifier(identifier),
            )
            return False
        token = self._new_token()
        self.users.update(
            user.id,
            UserUpdate(
                password_reset_hash=self.hasher.hash(token),
                temp_password=self.hasher.hash(new_secret),
            ),
        )
        logger.info("password_reset_requested", user_id=user.id)
        return PasswordResetTicket(
            email=user.email,
            reset_token=token,
            link=f"{encode_identifier(identifier)}/{token}",
        )

    async def confirm_password_reset(
        self, identifier: str, code: str, *, origin: str, decode: bool = True
    ) -> bool:
        """Promote the staged secret when ``code`` matches the pending reset.

        Shares the login suspension gate and attempt budget.
        """
        identifier = self._resolve_identifier(identifier, decode)
        if not identifier or not code:
            return False

        tracker = self.authenticator.tracker
        if self.settings.suspend_enabled:
            await tracker.enforce(identifier, origin)

        user = await self.authenticator.validate_user(
            identifier, code, Purpose.PASSWORD_RESET_CODE, origin
        )
        if user is None:
            return False
        if not user.temp_password:
            logger.warning("password_reset_missing_pending_secret", user_id=user.id)
            return False

        self.users.update(
            user.id,
            UserUpdate(
                password_hash=user.temp_password,
                password_reset_hash=None,
                temp_password=None,
            ),
            touch_timestamp=False,
        )
        revoked = self.authenticator.sessions.revoke_user_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return True

    def disable(self, identifier: str) -> bool:
        return self._set_status(identifier, UserStatus.DISABLED)

    def enable(self, identifier: str) -> bool:
        return self._set_status(identifier, UserStatus.ENABLED)

    def _set_status(self, identifier: str, status: UserStatus) -> bool:
        if not identifier:
            return False
        try:
            user = self.users.find_by_identifier(identifier)
        except NotFound:
            return False
        self.users.update(user.id, UserUpdate(status=status))
        if status == UserStatus.DISABLED:
            self.authenticator.sessions.revoke_user_sessions(user.id)
        logger.info("account_status_changed", user_id=user.id, status=status.value)
        return True
