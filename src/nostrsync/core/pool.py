"""
Async PostgreSQL connection pool for the local cache.

Thin layer over ``asyncpg.Pool`` that adds configuration via Pydantic,
connection retry with backoff, JSON/JSONB codecs, and retry of individual
queries when the connection (not the query) fails.

Query-level errors (syntax, constraint violations) are never retried: the
[LocalCacheStore][nostrsync.core.store.LocalCacheStore] relies on them
surfacing immediately so that the affected command can be reported failed.

Examples:
    ```python
    pool = Pool.from_dict({"database": {"host": "localhost"}})

    async with pool:
        count = await pool.fetchval("SELECT count(*) FROM event")

        async with pool.transaction() as conn:
            await conn.execute("DELETE FROM contact WHERE status = 'unknown'")
    ```

See Also:
    [LocalCacheStore][nostrsync.core.store.LocalCacheStore]: Domain facade
        built on top of this pool.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator  # noqa: TC003
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Literal, cast

import asyncpg
from pydantic import BaseModel, Field, SecretStr, ValidationInfo, field_validator, model_validator

from .exceptions import ConnectionPoolError
from .logger import Logger
from .yaml import load_yaml


_DEFAULT_PASSWORD_ENV = "DB_PASSWORD"  # pragma: allowlist secret


def _json_encode(value: Any) -> str:
    """Encode for JSON/JSONB columns, passing pre-serialized strings through.

    Models serialize their metadata to JSON strings in ``to_db_params()``;
    encoding those again would store a JSON string instead of an object.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value)


async def _init_connection(conn: asyncpg.Connection[asyncpg.Record]) -> None:
    """Register JSON codecs on every new pooled connection."""
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_encode,
            decoder=json.loads,
            schema="pg_catalog",
        )


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Where the cache database lives and who connects to it.

    The password never comes from a file: it is read from the environment
    variable named by ``password_env`` when not given explicitly.
    """

    host: str = Field(default="localhost", min_length=1, description="Database hostname")
    port: int = Field(default=5432, ge=1, le=65535, description="Database port")
    database: str = Field(default="nostrsync", min_length=1, description="Database name")
    user: str = Field(default="nostrsync", min_length=1, description="Database user")
    password_env: str = Field(
        default=_DEFAULT_PASSWORD_ENV,
        min_length=1,
        description="Environment variable holding the database password",
    )
    password: SecretStr = Field(description="Database password (resolved from password_env)")

    @model_validator(mode="before")
    @classmethod
    def resolve_password(cls, data: Any) -> Any:
        """Fill ``password`` from the environment when it is not provided."""
        if isinstance(data, dict) and data.get("password") is None:
            env_var = data.get("password_env", _DEFAULT_PASSWORD_ENV)
            value = os.getenv(env_var)
            if not value:
                raise ValueError(f"{env_var} environment variable not set")
            data = {**data, "password": SecretStr(value)}
        return data


class PoolLimitsConfig(BaseModel):
    """Pool size and connection recycling.

    The engine is a single writer, so a small pool is enough; the extra
    connections serve read-only commands issued while a transaction is open.
    """

    min_size: int = Field(default=1, ge=1, le=100, description="Minimum connections")
    max_size: int = Field(default=5, ge=1, le=100, description="Maximum connections")
    max_queries: int = Field(default=50_000, ge=100, description="Queries before recycling")
    max_inactive_connection_lifetime: float = Field(
        default=300.0, ge=0.0, description="Idle timeout (seconds)"
    )

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v: int, info: ValidationInfo) -> int:
        min_size = info.data.get("min_size", 1)
        if v < min_size:
            raise ValueError(f"max_size ({v}) must be >= min_size ({min_size})")
        return v


class PoolTimeoutsConfig(BaseModel):
    """Client-side pool timeouts (seconds)."""

    acquisition: float = Field(default=10.0, ge=0.1, description="Connection acquisition timeout")


class PoolRetryConfig(BaseModel):
    """Backoff between connection attempts.

    Exponential: ``initial_delay * 2**attempt``; linear:
    ``initial_delay * (attempt + 1)``; both capped at ``max_delay``.
    """

    max_attempts: int = Field(default=3, ge=1, le=10, description="Max retry attempts")
    initial_delay: float = Field(default=1.0, ge=0.01, description="Initial retry delay")
    max_delay: float = Field(default=10.0, ge=0.01, description="Maximum retry delay")
    exponential_backoff: bool = Field(default=True, description="Use exponential backoff")

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        initial_delay = info.data.get("initial_delay", 1.0)
        if v < initial_delay:
            raise ValueError(f"max_delay ({v}) must be >= initial_delay ({initial_delay})")
        return v


class ServerSettingsConfig(BaseModel):
    """PostgreSQL session settings applied to every pooled connection.

    ``statement_timeout`` is in milliseconds (PostgreSQL convention), ``0``
    disables it.
    """

    application_name: str = Field(default="nostrsync", description="Application name")
    timezone: str = Field(default="UTC", description="Timezone")
    statement_timeout: int = Field(
        default=60_000, ge=0, description="Max statement time in milliseconds (0=unlimited)"
    )


class PoolConfig(BaseModel):
    """Everything [Pool][nostrsync.core.pool.Pool] needs, grouped by concern."""

    database: DatabaseConfig = Field(default_factory=lambda: DatabaseConfig.model_validate({}))
    limits: PoolLimitsConfig = Field(default_factory=PoolLimitsConfig)
    timeouts: PoolTimeoutsConfig = Field(default_factory=PoolTimeoutsConfig)
    retry: PoolRetryConfig = Field(default_factory=PoolRetryConfig)
    server_settings: ServerSettingsConfig = Field(default_factory=ServerSettingsConfig)


# ---------------------------------------------------------------------------
# Pool Class
# ---------------------------------------------------------------------------


class Pool:
    """Async PostgreSQL connection pool.

    Created disconnected; [connect()][nostrsync.core.pool.Pool.connect] (or
    ``async with``) opens it. Query helpers retry on lost connections only.

    Note:
        Reconciliation code never talks to ``Pool`` directly; it goes through
        [CacheSession][nostrsync.core.store.CacheSession] so every statement
        has a name and a typed result.
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        self._config = config or PoolConfig()
        self._pool: asyncpg.Pool[asyncpg.Record] | None = None
        self._is_connected = False
        self._connection_lock = asyncio.Lock()
        self._logger = Logger("pool")

    @classmethod
    def from_yaml(cls, config_path: str) -> Pool:
        """Build a disconnected pool from a YAML file."""
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> Pool:
        """Build a disconnected pool from a mapping of
        [PoolConfig][nostrsync.core.pool.PoolConfig] fields."""
        return cls(config=PoolConfig(**config_dict))

    def _retry_delay(self, attempt: int) -> float:
        retry = self._config.retry
        if retry.exponential_backoff:
            delay = retry.initial_delay * (2**attempt)
        else:
            delay = retry.initial_delay * (attempt + 1)
        return float(min(delay, retry.max_delay))

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the asyncpg pool, retrying with backoff.

        Idempotent and serialized by an internal lock.

        Raises:
            ConnectionPoolError: When every attempt failed.
        """
        async with self._connection_lock:
            if self._is_connected:
                return

            db = self._config.database
            settings = self._config.server_settings
            limits = self._config.limits
            self._logger.info(
                "connection_starting", host=db.host, port=db.port, database=db.database
            )

            for attempt in range(self._config.retry.max_attempts):
                try:
                    self._pool = await asyncpg.create_pool(
                        host=db.host,
                        port=db.port,
                        database=db.database,
                        user=db.user,
                        password=db.password.get_secret_value(),
                        min_size=limits.min_size,
                        max_size=limits.max_size,
                        max_queries=limits.max_queries,
                        max_inactive_connection_lifetime=limits.max_inactive_connection_lifetime,
                        timeout=self._config.timeouts.acquisition,
                        init=_init_connection,
                        server_settings={
                            "application_name": settings.application_name,
                            "timezone": settings.timezone,
                            "statement_timeout": str(settings.statement_timeout),
                        },
                    )
                except (asyncpg.PostgresError, OSError, ConnectionError) as e:
                    if attempt + 1 >= self._config.retry.max_attempts:
                        self._logger.error("connection_failed", attempts=attempt + 1, error=str(e))
                        raise ConnectionPoolError(
                            f"Failed to connect after {attempt + 1} attempts: {e}"
                        ) from e
                    delay = self._retry_delay(attempt)
                    self._logger.warning(
                        "connection_retry", attempt=attempt + 1, delay=delay, error=str(e)
                    )
                    await asyncio.sleep(delay)
                else:
                    self._is_connected = True
                    self._logger.info("connection_established")
                    return

    async def close(self) -> None:
        """Close the pool. Safe to call repeatedly or before ``connect()``."""
        async with self._connection_lock:
            if self._pool is None:
                return
            try:
                await self._pool.close()
                self._logger.info("connection_closed")
            finally:
                self._pool = None
                self._is_connected = False

    # -------------------------------------------------------------------------
    # Connection Acquisition
    # -------------------------------------------------------------------------

    def acquire(self) -> AbstractAsyncContextManager[asyncpg.Connection[asyncpg.Record]]:
        """Borrow a connection for the duration of an ``async with`` block.

        Raises:
            ConnectionPoolError: If the pool is not connected.
        """
        if not self._is_connected or self._pool is None:
            raise ConnectionPoolError("Pool not connected. Call connect() first.")
        return cast(
            "AbstractAsyncContextManager[asyncpg.Connection[asyncpg.Record]]",
            self._pool.acquire(),
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection[asyncpg.Record]]:
        """Borrow a connection inside a transaction.

        Commits when the block exits normally, rolls back when it raises.

        Raises:
            ConnectionPoolError: If the pool is not connected.
        """
        async with self.acquire() as conn, conn.transaction():
            yield conn

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    async def _execute_with_retry(
        self,
        operation: Literal["fetch", "fetchrow", "fetchval", "execute"],
        query: str,
        args: tuple[Any, ...],
        timeout: float | None,  # noqa: ASYNC109
        **kwargs: Any,
    ) -> Any:
        """Run *operation* on a fresh connection, retrying lost connections.

        Each attempt acquires a new connection so a broken socket is not
        reused.

        Raises:
            ConnectionPoolError: When the connection kept failing.
        """
        max_attempts = self._config.retry.max_attempts
        for attempt in range(max_attempts):
            try:
                async with self.acquire() as conn:
                    method = getattr(conn, operation)
                    return await method(query, *args, timeout=timeout, **kwargs)
            except (asyncpg.InterfaceError, asyncpg.ConnectionDoesNotExistError) as e:
                if attempt + 1 >= max_attempts:
                    self._logger.error(
                        "query_failed", operation=operation, attempts=max_attempts, error=str(e)
                    )
                    raise ConnectionPoolError(
                        f"{operation} failed after {max_attempts} attempts: {e}"
                    ) from e
                delay = self._retry_delay(attempt)
                self._logger.warning(
                    "query_retry", operation=operation, attempt=attempt + 1, delay_s=delay
                )
                await asyncio.sleep(delay)
        raise ConnectionPoolError(f"{operation} was not attempted")

    async def fetch(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> list[asyncpg.Record]:
        """Return all rows of *query*."""
        result = await self._execute_with_retry("fetch", query, args, timeout)
        return cast("list[asyncpg.Record]", result)

    async def fetchrow(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> asyncpg.Record | None:
        """Return the first row of *query*, or ``None``."""
        result = await self._execute_with_retry("fetchrow", query, args, timeout)
        return cast("asyncpg.Record | None", result)

    async def fetchval(
        self, query: str, *args: Any, column: int = 0, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any:
        """Return one value of the first row of *query*, or ``None``."""
        return await self._execute_with_retry("fetchval", query, args, timeout, column=column)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:  # noqa: ASYNC109
        """Run *query* and return the command tag (e.g. ``"UPDATE 1"``)."""
        result = await self._execute_with_retry("execute", query, args, timeout)
        return cast("str", result)

    # -------------------------------------------------------------------------
    # Properties / Context Manager
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def config(self) -> PoolConfig:
        return self._config

    async def __aenter__(self) -> Pool:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        db = self._config.database
        return f"Pool(host={db.host}, database={db.database}, connected={self._is_connected})"
