"""
Unit tests for core.pool module.

Tests:
- Configuration models (DatabaseConfig, PoolLimitsConfig, PoolRetryConfig)
- Password resolution from the environment
- Factory methods (from_yaml, from_dict)
- Connection lifecycle with retry and backoff
- Query retry on lost connections
- JSON codec passthrough for pre-serialized values
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest
from pydantic import ValidationError

from nostrsync.core.exceptions import ConnectionPoolError
from nostrsync.core.pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
    _json_encode,
)


@pytest.fixture
def db_password(monkeypatch):
    monkeypatch.setenv("DB_PASSWORD", "test_pass")


def _fake_asyncpg_pool(conn):
    pool = MagicMock()

    @asynccontextmanager
    async def acquire():
        yield conn

    pool.acquire = acquire
    pool.close = AsyncMock()
    return pool


# ============================================================================
# Configuration
# ============================================================================


class TestDatabaseConfig:
    """DatabaseConfig Pydantic model."""

    def test_defaults(self, db_password):
        config = DatabaseConfig(password=None)
        assert config.host == "localhost"
        assert config.database == "nostrsync"
        assert config.password.get_secret_value() == "test_pass"

    def test_explicit_password(self):
        assert DatabaseConfig(password="secret").password.get_secret_value() == "secret"

    def test_custom_env_var(self, monkeypatch):
        monkeypatch.setenv("CACHE_PW", "from_custom")
        config = DatabaseConfig(password_env="CACHE_PW")
        assert config.password.get_secret_value() == "from_custom"

    def test_missing_password_raises(self, monkeypatch):
        monkeypatch.delenv("DB_PASSWORD", raising=False)
        with pytest.raises(ValidationError, match="DB_PASSWORD"):
            DatabaseConfig(password=None)


class TestLimitsAndRetry:
    """Cross-field validation."""

    def test_max_below_min(self):
        with pytest.raises(ValidationError, match="max_size"):
            PoolLimitsConfig(min_size=5, max_size=2)

    def test_max_delay_below_initial(self):
        with pytest.raises(ValidationError, match="max_delay"):
            PoolRetryConfig(initial_delay=5.0, max_delay=1.0)


class TestFactories:
    """Pool.from_dict() / from_yaml()."""

    def test_from_dict(self, db_password):
        pool = Pool.from_dict({"database": {"host": "db", "port": 5433}})
        assert pool.config.database.host == "db"
        assert not pool.is_connected

    def test_from_yaml(self, db_password, tmp_path):
        path = tmp_path / "pool.yaml"
        path.write_text("database:\n  database: cache\nlimits:\n  max_size: 3\n")
        pool = Pool.from_yaml(str(path))
        assert pool.config.database.database == "cache"
        assert pool.config.limits.max_size == 3


# ============================================================================
# Lifecycle
# ============================================================================


class TestConnect:
    """connect() / close()."""

    async def test_success(self, db_password):
        pool = Pool()
        with patch("asyncpg.create_pool", new_callable=AsyncMock) as create:
            create.return_value = _fake_asyncpg_pool(MagicMock())
            await pool.connect()
            await pool.connect()
        assert pool.is_connected
        create.assert_awaited_once()
        assert create.call_args.kwargs["server_settings"]["statement_timeout"] == "60000"

    async def test_retries_then_succeeds(self, db_password):
        config = PoolConfig(retry=PoolRetryConfig(max_attempts=3, initial_delay=0.01))
        pool = Pool(config)
        attempts = [OSError("refused"), _fake_asyncpg_pool(MagicMock())]

        async def create_pool(**_kwargs):
            result = attempts.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        with patch("asyncpg.create_pool", side_effect=create_pool):
            await pool.connect()
        assert pool.is_connected

    async def test_gives_up(self, db_password):
        config = PoolConfig(retry=PoolRetryConfig(max_attempts=2, initial_delay=0.01))
        pool = Pool(config)
        with (
            patch("asyncpg.create_pool", new_callable=AsyncMock, side_effect=OSError("down")),
            pytest.raises(ConnectionPoolError, match="after 2 attempts"),
        ):
            await pool.connect()
        assert not pool.is_connected

    async def test_close_is_idempotent(self, db_password):
        pool = Pool()
        fake = _fake_asyncpg_pool(MagicMock())
        with patch("asyncpg.create_pool", new_callable=AsyncMock, return_value=fake):
            async with pool:
                assert pool.is_connected
        assert not pool.is_connected
        await pool.close()
        fake.close.assert_awaited_once()

    def test_acquire_requires_connection(self, db_password):
        with pytest.raises(ConnectionPoolError, match="not connected"):
            Pool().acquire()


class TestRetryDelay:
    """_retry_delay() backoff shapes."""

    def test_exponential_capped(self, db_password):
        pool = Pool(PoolConfig(retry=PoolRetryConfig(initial_delay=1.0, max_delay=3.0)))
        assert [pool._retry_delay(n) for n in range(3)] == [1.0, 2.0, 3.0]

    def test_linear(self, db_password):
        retry = PoolRetryConfig(initial_delay=1.0, max_delay=10.0, exponential_backoff=False)
        pool = Pool(PoolConfig(retry=retry))
        assert [pool._retry_delay(n) for n in range(3)] == [1.0, 2.0, 3.0]


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    """Query helpers and their retry."""

    async def test_fetchval_passes_column(self, db_password):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=7)
        pool = Pool()
        with patch(
            "asyncpg.create_pool", new_callable=AsyncMock, return_value=_fake_asyncpg_pool(conn)
        ):
            await pool.connect()
        assert await pool.fetchval("SELECT 7", column=0) == 7
        conn.fetchval.assert_awaited_once_with("SELECT 7", timeout=None, column=0)

    async def test_retries_lost_connection(self, db_password):
        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=[asyncpg.InterfaceError("lost"), "UPDATE 1"])
        pool = Pool(PoolConfig(retry=PoolRetryConfig(initial_delay=0.01)))
        with patch(
            "asyncpg.create_pool", new_callable=AsyncMock, return_value=_fake_asyncpg_pool(conn)
        ):
            await pool.connect()
        assert await pool.execute("UPDATE x SET y = 1") == "UPDATE 1"

    async def test_other_errors_propagate(self, db_password):
        conn = MagicMock()
        conn.fetch = AsyncMock(side_effect=asyncpg.PostgresError("syntax"))
        pool = Pool()
        with patch(
            "asyncpg.create_pool", new_callable=AsyncMock, return_value=_fake_asyncpg_pool(conn)
        ):
            await pool.connect()
        with pytest.raises(asyncpg.PostgresError):
            await pool.fetch("SELEC 1")
        assert conn.fetch.await_count == 1


class TestJsonEncode:
    """_json_encode()."""

    def test_strings_pass_through(self):
        assert _json_encode('{"a": 1}') == '{"a": 1}'

    def test_objects_are_encoded(self):
        assert _json_encode({"a": 1}) == '{"a": 1}'
