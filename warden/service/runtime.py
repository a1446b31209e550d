from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.accounts import AccountLifecycleManager
from warden.service.attempts import AttemptStore, AttemptTracker
from warden.service.auth import SessionAuthenticator
from warden.service.credentials import Argon2SecretHasher, CredentialVerifier
from warden.storage.memory import MemoryAttemptStore, MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisAttemptStore

logger = get_logger(__name__)

# Close tasks scheduled on a running loop, kept referenced until they finish
_background_tasks: set = set()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return parts._replace(netloc=f"{parts.username or ''}:***@{host}").geturl()
    except ValueError:
        return "***url_parse_error***"


def _close_attempt_store(store: RedisAttemptStore) -> None:
    """Release the async client from sync code, inside or outside an event loop."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(store.close())
        return
    task = loop.create_task(store.close())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


class Runtime:
    """Wires stores, attempt tracking and the auth services from ``Settings``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._build_store()
        self.attempt_store = self._build_attempt_store()

        self.hasher = Argon2SecretHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.verifier = CredentialVerifier(self.hasher)
        self.tracker = AttemptTracker(self.attempt_store, self.settings)
        self.auth = SessionAuthenticator(
            users=self.store,
            sessions=self.store,
            tracker=self.tracker,
            verifier=self.verifier,
            settings=self.settings,
        )
        self.accounts = AccountLifecycleManager(
            users=self.store,
            authenticator=self.auth,
            hasher=self.hasher,
            settings=self.settings,
        )
        logger.info(
            "runtime_init_completed",
            attempt_store=type(self.attempt_store).__name__,
            suspend_enabled=self.settings.suspend_enabled,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        identifier_field = self.settings.username_field.value
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    identifier_field=identifier_field,
                )
            else:
                store = PostgresStore(
                    self.settings.database_url, identifier_field=identifier_field
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_attempt_store(self) -> AttemptStore:
        """Redis when reachable; the per-process store only where fallback is allowed."""
        redis_error: Exception | None = None
        if self.settings.redis_url:
            store: RedisAttemptStore | None = None
            try:
                store = RedisAttemptStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc
                if store is not None:
                    _close_attempt_store(store)

        if self.settings.test_mode:
            mode = "TEST_MODE"
        elif self.settings.allow_redis_fallback_dev:
            mode = "ALLOW_REDIS_FALLBACK_DEV"
        else:
            raise RuntimeError(
                "Redis is required for login attempt tracking; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=mode,
            message="attempt counters are per-process and reset on restart",
        )
        return MemoryAttemptStore()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment read (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.attempt_store, RedisAttemptStore):
            _close_attempt_store(runtime.attempt_store)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
