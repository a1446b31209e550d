from __future__ import annotations

import secrets
import string
from enum import Enum
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from warden.logging import get_logger
from warden.storage.models import User

logger = get_logger(__name__)

_TOKEN_ALPHABET = string.ascii_letters + string.digits


class Purpose(str, Enum):
    """Which stored secret a credential check validates against."""

    PASSWORD = "password"
    ACTIVATION_CODE = "activation_code"
    PASSWORD_RESET_CODE = "password_reset_code"

    @property
    def counts_as_login_attempt(self) -> bool:
        return self in (Purpose.PASSWORD, Purpose.PASSWORD_RESET_CODE)


_PURPOSE_FIELDS = {
    Purpose.PASSWORD: "password_hash",
    Purpose.ACTIVATION_CODE: "activation_hash",
    Purpose.PASSWORD_RESET_CODE: "password_reset_hash",
}


class SecretHasher(Protocol):
    def hash(self, secret: str) -> str: ...

    def verify(self, digest: str, secret: str) -> bool: ...


class TokenGenerator(Protocol):
    def __call__(self, length: int = 24) -> str: ...


def generate_token(length: int = 24) -> str:
    """Cryptographically random alphanumeric token."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


class Argon2SecretHasher:
    """argon2id hashing; every digest embeds its own random salt."""

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, digest: str, secret: str) -> bool:
        try:
            return self._hasher.verify(digest, secret)
        except (InvalidHashError, VerificationError):
            return False


class CredentialVerifier:
    """Checks a supplied secret against the digest stored for a purpose."""

    def __init__(self, hasher: SecretHasher) -> None:
        self.hasher = hasher

    @staticmethod
    def stored_digest(user: User, purpose: Purpose) -> Optional[str]:
        return getattr(user, _PURPOSE_FIELDS[Purpose(purpose)])

    def check(self, user: User, supplied_secret: str, purpose: Purpose) -> bool:
        digest = self.stored_digest(user, purpose)
        if not digest or not supplied_secret:
            return False
        try:
            matched = self.hasher.verify(digest, supplied_secret)
        except Exception as exc:
            # Pluggable hashers may raise on foreign digests; a check never does
            logger.warning(
                "credential_check_error",
                user_id=user.id,
                purpose=Purpose(purpose).value,
                error_type=type(exc).__name__,
            )
            return False
        if not matched:
            logger.info(
                "credential_mismatch", user_id=user.id, purpose=Purpose(purpose).value
            )
        return bool(matched)
