"""Unit tests for RedisAttemptStore with the client and scripts mocked out."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from warden.storage.redis_cache import RedisAttemptStore

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    store: RedisAttemptStore = RedisAttemptStore.__new__(RedisAttemptStore)
    store.redis_url = "redis://unused"
    store.socket_timeout = RedisAttemptStore.DEFAULT_OPERATION_TIMEOUT
    store.client = MagicMock()
    store.client.hmget = AsyncMock()
    store.client.delete = AsyncMock()
    store.client.aclose = AsyncMock()
    store._increment = AsyncMock()
    store._suspend = AsyncMock()
    store._clear_expired = AsyncMock()
    return store


class TestKeys:
    def test_key_is_hashed_per_pair(self):
        key = RedisAttemptStore._attempt_key("alice", "1.2.3.4")
        assert key.startswith("auth:attempts:")
        assert "alice" not in key
        assert key != RedisAttemptStore._attempt_key("alice", "9.9.9.9")

    def test_delimiters_cannot_collide(self):
        assert RedisAttemptStore._attempt_key("a:b", "c") != RedisAttemptStore._attempt_key(
            "a", "b:c"
        )

    def test_naive_datetimes_are_treated_as_utc(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert RedisAttemptStore._to_epoch(naive) == NOW.timestamp()


class TestOperations:
    async def test_get_missing_record(self, store):
        store.client.hmget.return_value = [None, None, None]
        assert await store.get_attempt("alice", "o") is None

    async def test_get_parses_hash_fields(self, store):
        until = NOW + timedelta(minutes=15)
        store.client.hmget.return_value = ["3", str(until.timestamp()), str(NOW.timestamp())]

        record = await store.get_attempt("alice", "o")

        assert record.count == 3
        assert record.suspended_until == until
        assert record.last_attempt_at == NOW
        store.client.hmget.assert_awaited_once_with(
            RedisAttemptStore._attempt_key("alice", "o"), ["count", "until", "last"]
        )

    async def test_increment_passes_limit_and_duration(self, store):
        until = NOW + timedelta(minutes=15)
        store._increment.return_value = [3, str(until.timestamp())]

        record = await store.increment_attempt(
            "alice", "o", now=NOW, limit=3, suspend_for=timedelta(minutes=15)
        )

        assert record.count == 3
        assert record.suspended_until == until
        kwargs = store._increment.await_args.kwargs
        assert kwargs["keys"] == [RedisAttemptStore._attempt_key("alice", "o")]
        assert kwargs["args"] == [NOW.timestamp(), 3, 900.0]

    async def test_increment_without_limit(self, store):
        store._increment.return_value = [1, ""]

        record = await store.increment_attempt(
            "alice", "o", now=NOW, limit=None, suspend_for=timedelta(minutes=15)
        )

        assert record.suspended_until is None
        assert store._increment.await_args.kwargs["args"][1] == 0

    async def test_suspend_reports_script_result(self, store):
        until = NOW + timedelta(minutes=15)
        store._suspend.return_value = 1
        assert await store.suspend_attempt("a", "o", now=NOW, until=until, min_count=3) is True
        args = store._suspend.await_args.kwargs["args"]
        assert args[2:] == [3, 900]

        store._suspend.return_value = 0
        assert await store.suspend_attempt("a", "o", now=NOW, until=until, min_count=3) is False

    async def test_clear_deletes_key(self, store):
        await store.clear_attempt("a", "o")
        store.client.delete.assert_awaited_once_with(RedisAttemptStore._attempt_key("a", "o"))

    async def test_clear_expired(self, store):
        store._clear_expired.return_value = 1
        assert await store.clear_expired_attempt("a", "o", now=NOW) is True
        store._clear_expired.return_value = 0
        assert await store.clear_expired_attempt("a", "o", now=NOW) is False

    async def test_close(self, store):
        await store.close()
        store.client.aclose.assert_awaited_once()


class TestVerifyConnection:
    def test_sync_client_is_bounded_by_timeouts(self, store):
        """An unreachable host must fail the ping instead of hanging startup."""
        store.socket_timeout = 2.5
        with patch("warden.storage.redis_cache.Redis") as redis_cls:
            store.verify_connection()

        redis_cls.from_url.assert_called_once_with(
            "redis://unused",
            decode_responses=True,
            socket_timeout=2.5,
            socket_connect_timeout=2.5,
        )
        sync_client = redis_cls.from_url.return_value
        sync_client.ping.assert_called_once()
        sync_client.close.assert_called_once()

    def test_client_closed_when_ping_fails(self, store):
        with patch("warden.storage.redis_cache.Redis") as redis_cls:
            redis_cls.from_url.return_value.ping.side_effect = ConnectionError("refused")
            with pytest.raises(ConnectionError):
                store.verify_connection()

        redis_cls.from_url.return_value.close.assert_called_once()
