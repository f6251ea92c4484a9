"""
Unit tests for core.store module.

Tests:
- StoreConfig timeout validation
- LocalCacheStore factories and session timeouts
- CacheSession driver error translation
- Insert/update methods report whether they changed a row
- Row conversion back into models
"""

from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
from pydantic import ValidationError

from nostrsync.core.exceptions import ConnectionPoolError, QueryError
from nostrsync.core.store import (
    CacheSession,
    LocalCacheStore,
    StoreConfig,
    StoreTimeoutsConfig,
    _affected_rows,
)
from nostrsync.models import EventKind, RelayEntry


@pytest.fixture
def executor():
    mock = MagicMock()
    mock.fetch = AsyncMock(return_value=[])
    mock.fetchrow = AsyncMock(return_value=None)
    mock.fetchval = AsyncMock(return_value=None)
    mock.execute = AsyncMock(return_value="UPDATE 0")
    return mock


# ============================================================================
# Configuration
# ============================================================================


class TestStoreConfig:
    """StoreConfig / StoreTimeoutsConfig."""

    def test_defaults(self):
        config = StoreConfig()
        assert config.timeouts.query == 30.0
        assert config.timeouts.transaction == 60.0

    def test_none_means_infinite(self):
        assert StoreTimeoutsConfig(query=None).query is None

    def test_too_small(self):
        with pytest.raises(ValidationError, match="Timeout"):
            StoreTimeoutsConfig(query=0.01)


class TestLocalCacheStore:
    """Factories and sessions."""

    def test_from_dict_splits_pool_key(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "pw")
        store = LocalCacheStore.from_dict(
            {"pool": {"database": {"host": "cache-db"}}, "timeouts": {"query": 5.0}}
        )
        assert store.pool_config.database.host == "cache-db"
        assert store.config.timeouts.query == 5.0
        assert not store.is_connected

    async def test_session_uses_query_timeout(self):
        pool = MagicMock()
        pool.fetchval = AsyncMock(return_value=42)
        store = LocalCacheStore(pool=pool, config=StoreConfig(timeouts={"query": 3.0}))
        async with store.session() as session:
            assert await session.fetch_clock_offset() == 42
        assert pool.fetchval.call_args.kwargs["timeout"] == 3.0

    async def test_close_delegates(self):
        pool = MagicMock()
        pool.close = AsyncMock()
        await LocalCacheStore(pool=pool).close()
        pool.close.assert_awaited_once()


# ============================================================================
# CacheSession
# ============================================================================


class TestErrorTranslation:
    """asyncpg errors become nostrsync errors."""

    async def test_interface_error(self, executor):
        executor.fetch.side_effect = asyncpg.InterfaceError("closed")
        with pytest.raises(ConnectionPoolError):
            await CacheSession(executor).fetch_relays()

    async def test_postgres_error(self, executor):
        executor.execute.side_effect = asyncpg.PostgresError("boom")
        with pytest.raises(QueryError):
            await CacheSession(executor).reset_unseen("a" * 64)


class TestWrites:
    """Boolean results of writes."""

    async def test_insert_event_new_and_duplicate(self, executor, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "hi")
        session = CacheSession(executor)
        executor.fetchval.return_value = bytes.fromhex(event.id)
        assert await session.insert_event(event) is True
        executor.fetchval.return_value = None
        assert await session.insert_event(event) is False

    async def test_confirm_event_uses_row_count(self, executor):
        session = CacheSession(executor)
        executor.execute.return_value = "UPDATE 1"
        assert await session.confirm_event("a" * 64, "wss://relay.example.com", 10) is True
        executor.execute.return_value = "UPDATE 0"
        assert await session.confirm_event("a" * 64, "wss://relay.example.com", 10) is False

    async def test_upsert_relay_params(self, executor):
        entry = RelayEntry("wss://relay.example.com", write=False)
        await CacheSession(executor).upsert_relay(entry)
        args = executor.execute.call_args.args
        assert args[1:] == ("wss://relay.example.com", True, False)


class TestReads:
    """Rows come back as models."""

    async def test_fetch_relays(self, executor):
        executor.fetch.return_value = [
            {"url": "wss://relay.example.com", "read": True, "write": False}
        ]
        relays = await CacheSession(executor).fetch_relays()
        assert relays == [RelayEntry("wss://relay.example.com", write=False)]

    async def test_fetch_event_missing(self, executor):
        assert await CacheSession(executor).fetch_event("a" * 64) is None


class TestAffectedRows:
    """_affected_rows()."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [("UPDATE 3", 3), ("DELETE 0", 0), ("INSERT 0 1", 1), ("", 0), (None, 0)],
    )
    def test_parse(self, status, expected):
        assert _affected_rows(status) == expected
